"""
Version information for the application metrics aggregator.

The installed distribution metadata is authoritative; a source checkout that
was never installed falls back to the ``[project]`` table of pyproject.toml.
"""

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

DISTRIBUTION_NAME = "appmetrics-aggregator"


def _read_pyproject_version() -> str:
    pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
    try:
        with open(pyproject_path, "rb") as f:
            return tomllib.load(f)["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "0.0.0-dev"


try:
    __version__ = version(DISTRIBUTION_NAME)
except PackageNotFoundError:
    __version__ = _read_pyproject_version()

# Schema version of the JSON views (separate from package version)
__snapshot_schema_version__ = "1.0.0"
