"""
Shared utilities for the aggregation engine.

Modules
-------
validation
    Float validation and sanitization for upstream values
timestamps
    Timestamp parsing and conversion utilities
statistics
    Least-squares fit and numeric helpers used by derived metrics
aggregation
    Aggregation strategies, bucketing of samples onto a range grid, and
    dimension grouping for breakdowns
"""

__all__ = []
