import os

from setuptools import find_packages, setup

# Modules to compile
# Only the hot path of a commit: key extraction, grouping and planning.
modules = [
    "partover/layout.py",
    "partover/aggregator.py",
    "partover/planner.py",
]

# Compilation is opt-in (PARTOVER_COMPILE=1) so 'pip install -e .' stays pure Python.
ext_modules = []
if os.environ.get("PARTOVER_COMPILE") == "1":
    try:
        from mypyc.build import mypycify

        ext_modules = mypycify(modules)
    except (ImportError, RuntimeError):
        # Fallback to pure Python if mypyc is not present or fails
        ext_modules = []

setup(
    name="partover",
    version="0.3.0",
    description="Partition-aware incremental overwrite for local and Delta Lake tables",
    packages=find_packages(include=["partover", "partover.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.24",
        "pandas>=2.0",
        "pyarrow>=14.0",
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "rich>=13.0",
        "portalocker>=2.7",
        "deltalake>=0.22",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    ext_modules=ext_modules,
)
