"""Local filesystem table store.

Layout on disk::

    <path>/_manifest.json        current table version (the pointer table)
    <path>/_commit.lock          single-writer lock
    <path>/data/<unit_id>/...    explicit partitions, one file per unit version
    <path>/data/_segments/...    clustered segments for predicate layouts

Data files are immutable. A commit writes new files, then replaces the
manifest with ``os.replace``; that rename is the only moment readers can see
a change.
"""

import copy
import json
import os
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from partover.commit_log import OPERATION_PURGE
from partover.config import LayoutKind, TableConfig
from partover.exceptions import LayoutMismatch, ManifestConflict, TableNotFound
from partover.layout import PartitionKey, PhysicalUnit, PredicateRegion
from partover.storage.base import (
    AbortCheck,
    BuildAborted,
    StagedCommit,
    TableSnapshot,
    TableStore,
    UnitReplacement,
    UnitVersion,
)
from partover.utils.logging import logger

MANIFEST_FILE = "_manifest.json"
LOCK_FILE = "_commit.lock"
DATA_DIR = "data"
SEGMENT_DIR = "_segments"
FORMAT_VERSION = 1


def _write_parquet(table: pa.Table, path: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        pq.write_table(table, f)
        f.flush()
        os.fsync(f.fileno())


def _write_json(data: Dict[str, Any], path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)
        f.flush()
        os.fsync(f.fileno())


class LocalTableSnapshot(TableSnapshot):
    def __init__(self, store: "LocalTableStore", manifest: Dict[str, Any]):
        super().__init__(store.model, store.columns)
        self.store = store
        self.manifest = manifest

    @property
    def sequence(self) -> int:
        return self.manifest["sequence"]

    def unit_ids(self) -> List[str]:
        return sorted(self.manifest["units"])

    def unit_file(self, key: PartitionKey) -> Optional[str]:
        """Absolute path of the file backing an explicit unit."""
        entry = self.manifest["units"].get(self.model.unit_for(key).unit_id)
        if not entry or "file" not in entry:
            return None
        return self.store._abs(entry["file"])

    def segment_files(self) -> List[str]:
        return [self.store._abs(s["file"]) for s in self.manifest.get("segments", [])]

    def _read(self, relative: str) -> pa.Table:
        return pq.read_table(self.store._abs(relative), schema=self.store.schema)

    def _to_frame(self, tables: List[pa.Table]) -> pd.DataFrame:
        if not tables:
            return self._empty_frame()
        return pa.concat_tables(tables).to_pandas()

    def read_unit(self, key: PartitionKey) -> pd.DataFrame:
        unit = self.model.unit_for(key)
        if unit.kind == LayoutKind.EXPLICIT:
            entry = self.manifest["units"].get(unit.unit_id)
            if not entry:
                return self._empty_frame()
            return self._to_frame([self._read(entry["file"])])

        tables = []
        for segment in self.manifest["segments"]:
            if unit.unit_id not in segment["units"]:
                continue
            table = self._read(segment["file"])
            tables.append(table.filter(unit.arrow_mask(table)))
        return self._to_frame(tables)

    def read_table(self) -> pd.DataFrame:
        if self.model.kind == LayoutKind.EXPLICIT:
            files = [self.manifest["units"][uid]["file"] for uid in self.unit_ids()]
        else:
            files = [s["file"] for s in self.manifest["segments"]]
        return self._to_frame([self._read(f) for f in files])


class LocalTableStore(TableStore):
    """Parquet files plus a JSON manifest swapped atomically by rename."""

    def __init__(self, config: TableConfig):
        super().__init__(config)
        self.path = config.path
        self.manifest_path = os.path.join(self.path, MANIFEST_FILE)

    @property
    def lock_path(self) -> str:
        return os.path.join(self.path, LOCK_FILE)

    def _abs(self, relative: str) -> str:
        return os.path.join(self.path, relative)

    def _new_file(self, directory: str, prefix: str, sequence: int) -> str:
        name = f"{prefix}-{sequence:010d}-{uuid.uuid4().hex[:12]}.parquet"
        return os.path.join(DATA_DIR, directory, name)

    # ------------------------------------------------------------------
    # manifest
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return os.path.exists(self.manifest_path)

    def _initial_manifest(self) -> Dict[str, Any]:
        manifest = {
            "format_version": FORMAT_VERSION,
            "table": self.name,
            "layout": self.layout.value,
            "key_columns": list(self.model.key_columns),
            "columns": {k: v.value for k, v in self.config.columns.items()},
            "sequence": 0,
            "updated_at": None,
            "units": {},
            "removed_units": {},
        }
        if self.layout == LayoutKind.PREDICATE:
            manifest["segments"] = []
        return manifest

    def _check_layout(self, manifest: Dict[str, Any]) -> None:
        if manifest["layout"] != self.layout.value or list(manifest["key_columns"]) != list(
            self.model.key_columns
        ):
            raise LayoutMismatch(
                f"table '{self.name}' was created as {manifest['layout']} on "
                f"{manifest['key_columns']}, configured as {self.layout.value}",
                key_columns=self.model.key_columns,
            )

    def load_manifest(self) -> Dict[str, Any]:
        if not self.exists():
            raise TableNotFound(self.name, self.path)
        with open(self.manifest_path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
        self._check_layout(manifest)
        return manifest

    def create(self) -> None:
        if self.exists():
            self.load_manifest()
            logger.debug("Table already exists", table=self.name, path=self.path)
            return

        os.makedirs(os.path.join(self.path, DATA_DIR), exist_ok=True)
        tmp_path = f"{self.manifest_path}.{uuid.uuid4().hex[:12]}.tmp"
        _write_json(self._initial_manifest(), tmp_path)
        os.replace(tmp_path, self.manifest_path)
        logger.info(
            "Table created",
            table=self.name,
            layout=self.layout.value,
            key_columns=list(self.model.key_columns),
            path=self.path,
        )

    def current_sequence(self) -> int:
        if not self.exists():
            return 0
        return self.load_manifest()["sequence"]

    def snapshot(self) -> LocalTableSnapshot:
        return LocalTableSnapshot(self, self.load_manifest())

    def unit_versions(self) -> List[UnitVersion]:
        manifest = self.load_manifest()
        versions = [
            UnitVersion.from_dict(self.name, unit_id, entry)
            for unit_id, entry in manifest["units"].items()
        ]
        versions.extend(
            UnitVersion.from_dict(self.name, unit_id, entry)
            for unit_id, entry in manifest.get("removed_units", {}).items()
        )
        return sorted(versions, key=lambda v: (v.sequence, v.unit_id))

    # ------------------------------------------------------------------
    # commit protocol
    # ------------------------------------------------------------------

    def build(
        self,
        replacements: Sequence[UnitReplacement],
        removals: Sequence[PhysicalUnit],
        sequence: int,
        committed_at: str,
        should_abort: AbortCheck = None,
    ) -> StagedCommit:
        manifest = self.load_manifest()
        new_manifest = copy.deepcopy(manifest)
        staged = StagedCommit(
            table=self.name,
            sequence=sequence,
            base_sequence=manifest["sequence"],
            committed_at=committed_at,
            versions=self.staged_versions(replacements, removals, sequence, committed_at),
        )

        def check_abort():
            if should_abort is not None and should_abort():
                raise BuildAborted("cancelled by caller")

        try:
            if self.layout == LayoutKind.EXPLICIT:
                self._build_explicit(new_manifest, replacements, staged, check_abort)
            else:
                self._build_predicate(new_manifest, replacements, removals, staged, check_abort)

            for version in staged.versions:
                if version.operation == OPERATION_PURGE:
                    new_manifest["units"].pop(version.unit_id, None)
                    new_manifest["removed_units"][version.unit_id] = version.to_dict()
                else:
                    new_manifest["removed_units"].pop(version.unit_id, None)
                    entry = new_manifest["units"].setdefault(version.unit_id, {})
                    entry.update(version.to_dict())

            new_manifest["sequence"] = sequence
            new_manifest["updated_at"] = committed_at

            check_abort()
            tmp_path = f"{self.manifest_path}.{sequence:010d}-{uuid.uuid4().hex[:12]}.tmp"
            staged.staged_files.append(tmp_path)
            _write_json(new_manifest, tmp_path)
            staged.payload["manifest_tmp"] = tmp_path
        except BaseException:
            self.discard(staged)
            raise

        logger.debug(
            "Commit staged",
            table=self.name,
            sequence=sequence,
            units=len(staged.versions),
            files=len(staged.staged_files) - 1,
        )
        return staged

    def _build_explicit(self, manifest, replacements, staged, check_abort) -> None:
        for rep in replacements:
            check_abort()
            relative = self._new_file(rep.unit.relative_path, "part", staged.sequence)
            absolute = self._abs(relative)
            staged.staged_files.append(absolute)
            _write_parquet(self.batch_table([rep.batch]), absolute)
            manifest["units"].setdefault(rep.unit.unit_id, {})["file"] = relative

    def _build_predicate(self, manifest, replacements, removals, staged, check_abort) -> None:
        regions: List[PredicateRegion] = [rep.unit for rep in replacements] + list(removals)
        targeted = {region.unit_id for region in regions}

        segments = []
        for segment in manifest["segments"]:
            check_abort()
            if not targeted.intersection(segment["units"]):
                # untouched segments keep their existing file
                segments.append(segment)
                continue

            table = pq.read_table(self._abs(segment["file"]), schema=self.schema)
            matched = None
            for region in regions:
                if region.unit_id not in segment["units"]:
                    continue
                mask = region.arrow_mask(table)
                matched = mask if matched is None else pc.or_(matched, mask)
            remaining = table.filter(pc.invert(matched))

            if remaining.num_rows:
                relative = self._new_file(SEGMENT_DIR, "seg", staged.sequence)
                absolute = self._abs(relative)
                staged.staged_files.append(absolute)
                _write_parquet(remaining, absolute)
                segments.append(
                    {
                        "file": relative,
                        "row_count": remaining.num_rows,
                        "units": [u for u in segment["units"] if u not in targeted],
                    }
                )

        if replacements:
            check_abort()
            relative = self._new_file(SEGMENT_DIR, "seg", staged.sequence)
            absolute = self._abs(relative)
            staged.staged_files.append(absolute)
            new_rows = self.batch_table([rep.batch for rep in replacements])
            _write_parquet(new_rows, absolute)
            segments.append(
                {
                    "file": relative,
                    "row_count": new_rows.num_rows,
                    "units": [rep.unit.unit_id for rep in replacements],
                }
            )

        manifest["segments"] = segments

    def swap(self, staged: StagedCommit) -> None:
        current = self.load_manifest()
        if current["sequence"] != staged.base_sequence:
            raise ManifestConflict(self.name, staged.base_sequence, current["sequence"])
        os.replace(staged.payload["manifest_tmp"], self.manifest_path)
        logger.debug("Manifest swapped", table=self.name, sequence=staged.sequence)

    def discard(self, staged: StagedCommit) -> None:
        for path in staged.staged_files:
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                # unreferenced files are harmless; vacuum removes them later
                logger.warning("Could not remove staged file", path=path, error=str(e))
        staged.staged_files.clear()

    def vacuum(self, retention_seconds: float) -> List[str]:
        # staged files of an in-flight commit are unreferenced until its swap
        with self.commit_lock():
            removed = self._remove_unreferenced(retention_seconds)
        logger.info("Vacuum complete", table=self.name, removed_files=len(removed))
        return removed

    def _remove_unreferenced(self, retention_seconds: float) -> List[str]:
        manifest = self.load_manifest()
        files = [e["file"] for e in manifest["units"].values() if "file" in e]
        files.extend(s["file"] for s in manifest.get("segments", []))
        referenced = {os.path.normpath(self._abs(f)) for f in files}

        cutoff = time.time() - retention_seconds
        candidates = []
        for root, _, files in os.walk(os.path.join(self.path, DATA_DIR)):
            candidates.extend(os.path.join(root, name) for name in files)
        candidates.extend(
            os.path.join(self.path, name)
            for name in os.listdir(self.path)
            if name.startswith(MANIFEST_FILE + ".") and name.endswith(".tmp")
        )

        removed = []
        for path in candidates:
            if os.path.normpath(path) in referenced:
                continue
            if os.path.getmtime(path) > cutoff:
                continue
            os.remove(path)
            removed.append(path)
        return removed
