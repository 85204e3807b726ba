"""YAML loading for partover config files.

A config file may reference environment variables (``${VAR}``,
``${env:VAR}`` or ``${VAR:-default}``), pull in other files through
``imports`` and carry per-environment overrides, either inline under
``environments`` or in a sibling ``env.<name>.yaml``.
"""

import os
import re
from typing import Any, Dict, List, Optional, Tuple

import yaml

from partover.utils.logging import logger

ENV_PATTERN = re.compile(r"\$\{(?:env:)?(?P<name>[A-Za-z0-9_]+)(?::-(?P<default>[^}]*))?\}")

# Lists under these keys accumulate across imports instead of being replaced
APPENDED_LISTS = ("tables",)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        elif key in APPENDED_LISTS and isinstance(current, list) and isinstance(value, list):
            merged[key] = current + value
        else:
            merged[key] = value
    return merged


def _expand_env(text: str, source: str) -> str:
    def lookup(match: "re.Match[str]") -> str:
        name, default = match.group("name"), match.group("default")
        value = os.environ.get(name, default)
        if value is None:
            logger.error("Missing required environment variable", variable=name, file=source)
            raise ValueError(f"Missing environment variable: {name}")
        return value

    return ENV_PATTERN.sub(lookup, text)


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()
    try:
        parsed = yaml.safe_load(_expand_env(raw, path))
    except yaml.YAMLError as e:
        logger.error("YAML parsing failed", path=path, error=str(e))
        raise
    return parsed or {}


def _import_paths(data: Dict[str, Any], base_dir: str) -> List[str]:
    imports = data.pop("imports", None) or []
    if isinstance(imports, str):
        imports = [imports]
    return [p if os.path.isabs(p) else os.path.join(base_dir, p) for p in imports]


def _environment_overrides(data: Dict[str, Any], env: str, base_dir: str) -> List[Tuple[str, Dict]]:
    overrides = []
    inline = (data.get("environments") or {}).get(env)
    if inline:
        overrides.append(("environments", inline))

    env_file = os.path.join(base_dir, f"env.{env}.yaml")
    if os.path.exists(env_file):
        overrides.append((env_file, _load(env_file, None, ())))
    return overrides


def _load(path: str, env: Optional[str], chain: Tuple[str, ...]) -> Dict[str, Any]:
    abs_path = os.path.abspath(path)
    if abs_path in chain:
        cycle = " -> ".join(chain + (abs_path,))
        raise ValueError(f"Circular config import: {cycle}")
    if not os.path.exists(abs_path):
        logger.error("Configuration file not found", path=path, imported_from=chain[-1] if chain else None)
        raise FileNotFoundError(f"YAML file not found: {path}")

    data = _read_yaml(abs_path)
    base_dir = os.path.dirname(abs_path)

    for import_path in _import_paths(data, base_dir):
        data = _deep_merge(data, _load(import_path, env, chain + (abs_path,)))

    if env:
        for source, override in _environment_overrides(data, env, base_dir):
            logger.debug("Applying environment override", env=env, source=source, keys=list(override))
            data = _deep_merge(data, override)

    data.pop("environments", None)
    return data


def load_yaml_with_env(path: str, env: Optional[str] = None) -> Dict[str, Any]:
    """Load a YAML config with variable expansion, imports and overrides.

    Imports are merged in order, each on top of the importing file, with
    ``tables`` lists concatenated. For ``env``, the inline
    ``environments.<env>`` block is applied first, then ``env.<env>.yaml``
    from the same directory.

    Raises:
        FileNotFoundError: The file or one of its imports does not exist.
        ValueError: A referenced variable is unset with no default, or
            imports form a cycle.
        yaml.YAMLError: A file is not valid YAML.
    """
    data = _load(path, env, ())
    logger.debug("Configuration loaded", path=path, env=env, keys=list(data))
    return data
