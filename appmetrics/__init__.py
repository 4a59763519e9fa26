"""
Application metrics aggregation package.

This package hosts the aggregation engine (orchestrator, calculator, cache),
the source connectors, and the thin HTTP layer that exposes the dashboard
views.
"""

from .__version__ import __snapshot_schema_version__, __version__

__all__ = ["__version__", "__snapshot_schema_version__"]
