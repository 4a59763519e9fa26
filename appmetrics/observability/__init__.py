"""Observability utilities: logging setup.

This module configures standard logging and, if available, integrates
`structlog` for structured logs. The dependency on `structlog` is optional to
keep the base runtime lightweight.

Every record emitted through the root handler carries the correlation id of
the request being served (``req_id``), so fan-out logs from the orchestrator
and connectors can be tied back to one HTTP request.
"""

from __future__ import annotations

import importlib
import logging

from ..utils.correlation import get_request_id

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(req_id)s] - %(message)s"

# Third-party loggers that are noisy at DEBUG and rarely useful here
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class RequestIdFilter(logging.Filter):
    """Populate ``record.req_id`` from the current request context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "req_id", None):
            record.req_id = get_request_id() or "-"
        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging.

    Parameters
    ----------
    level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".

    Behavior
    --------
    - Initializes Python's logging with the requested level.
    - Adds the request correlation id to every record of the root handlers.
    - Keeps HTTP client transport loggers at WARNING unless DEBUG is requested.
    - If `structlog` is installed, configures it with a filtering bound logger.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
    logging.getLogger("appmetrics").setLevel(numeric_level)

    if numeric_level > logging.DEBUG:
        for logger_name in _QUIET_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    try:  # optional structlog
        structlog = importlib.import_module("structlog")
        structlog.configure(
            wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        )
    except ModuleNotFoundError:  # pragma: no cover
        pass
