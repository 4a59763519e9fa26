"""Command-line interface to start the metrics aggregation server.

This CLI loads the application configuration, builds the connectors and the
aggregation service, and serves the HTTP API under uvicorn. ``--check``
validates the configuration and exits without serving.

Usage
-----
    appmetrics --config config.json --port 8080
    appmetrics --config config.json --check
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from ..config.models import AppConfig, ConfigError, EnvSettings
from ..connectors import build_connector
from ..observability import setup_logging
from .http import create_app, load_config

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="appmetrics", description="Application metrics aggregation server"
    )
    parser.add_argument(
        "--config", help="Path to JSON app config (default: $APPMETRICS_CONFIG)"
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
        ],
        help="Logging level (overrides environment)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (once sets DEBUG)",
    )
    parser.add_argument(
        "--host", default="127.0.0.1", help="HTTP bind host (default 127.0.0.1)"
    )
    parser.add_argument("--port", type=int, default=8080, help="HTTP port")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate the configuration and exit",
    )
    return parser


def check_config(config: AppConfig) -> List[str]:
    """Return a list of problems that would degrade every request.

    Connectors are built (not called) so that bad connector types or
    unreadable fixtures surface here instead of at request time.
    """
    problems: List[str] = []
    if not config.applications:
        problems.append("no applications configured")
    for domain, connector_config in config.connectors.items():
        try:
            connector = build_connector(domain, connector_config)
        except KeyError as exc:
            problems.append(str(exc.args[0]) if exc.args else str(exc))
            continue
        if not connector.is_configured():
            problems.append(f"connector for '{domain.value}' is not configured")
    for app_id, profile in config.applications.items():
        for domain in profile.configured_domains():
            if domain not in config.connectors:
                problems.append(
                    f"application '{app_id}' uses '{domain.value}' "
                    "but no connector serves it"
                )
    return problems


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint for running the aggregation server."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = EnvSettings()
    if args.config:
        settings = settings.model_copy(update={"config": args.config})

    # Determine effective log level
    effective_level = args.log_level or (
        "DEBUG" if args.verbose > 0 else settings.log_level.upper()
    )
    # Apply early so subsequent imports use configured level
    setup_logging(effective_level)

    try:
        config = load_config(settings)
    except ConfigError as exc:
        logger.error("cli.config_error", extra={"error": str(exc)})
        print(f"error: {exc}", file=sys.stderr)
        return 2

    if args.check:
        problems = check_config(config)
        for problem in problems:
            print(f"warning: {problem}", file=sys.stderr)
        print(
            f"configuration OK: {len(config.applications)} application(s), "
            f"{len(config.connectors)} connector(s) in {Path(settings.config or '')}"
        )
        return 0

    app = create_app(config, settings=settings)
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=effective_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
