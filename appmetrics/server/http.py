"""HTTP server exposing the aggregation views via FastAPI.

Endpoints implement a thin HTTP transport over :class:`AggregationService`.
Authentication (optional bearer token) and CORS are configurable via
environment variables; errors are returned as structured JSON payloads of the
form ``{"detail": {"detail", "error_type", "available_options"}}``.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .. import __snapshot_schema_version__, __version__
from ..aggregation.models import (
    AggregatedSnapshot,
    ApplicationInfo,
    BreakdownView,
    ProjectionView,
    TimeSeriesView,
    ViewEnvelope,
)
from ..aggregation.service import (
    AggregationService,
    AggregationUnavailable,
    InvalidViewRequest,
    UnknownApplication,
)
from ..config.models import AppConfig, ConfigError, EnvSettings
from ..connectors import build_connectors, get_available_connector_types
from ..domain.models import Domain, Granularity
from ..domain.timerange import InvalidRangeToken
from ..observability import setup_logging
from ..utils.correlation import CORRELATION_HEADER, get_request_id, set_request_id

logger = logging.getLogger(__name__)

RANGE_EXAMPLES = ["1h", "24h", "7d", "30d", "last_week", "mtd"]


class CorrelationIdMiddleware(BaseHTTPMiddleware):  # pylint: disable=too-few-public-methods
    """Attach a correlation id to every request and log its completion.

    The id comes from the ``x-correlation-id`` header or is generated, is
    stored in a context variable for connector logs, and is echoed back in
    the response headers.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        req_id = set_request_id(request.headers.get(CORRELATION_HEADER))
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "http.request.failed",
                extra={
                    "req_id": req_id,
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "duration_ms": int((time.time() - start_time) * 1000),
                },
                exc_info=True,
            )
            raise
        response.headers[CORRELATION_HEADER] = req_id
        logger.debug(
            "http.request.completed",
            extra={
                "req_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": int((time.time() - start_time) * 1000),
            },
        )
        return response


class HealthResponse(BaseModel):
    """Simple health/readiness response model."""

    status: str


class ErrorResponse(BaseModel):
    """Structured JSON error response for HTTP endpoints.

    Fields
    ------
    detail: str
        Human-readable explanation of the error.
    error_type: str
        Machine-readable error classification.
    available_options: list[str] | None
        Optional list of valid options when the error is about an invalid
        input value (e.g., unknown application id or metric).
    issues: list[str] | None
        Per-source failure lines when an aggregation is unavailable.
    """

    detail: str = Field(..., description="Human-readable error detail")
    error_type: str = Field(..., description="Machine-readable error type")
    available_options: List[str] | None = Field(
        default=None, description="Optional list of valid alternative options"
    )
    issues: List[str] | None = Field(
        default=None, description="Failed sources behind an unavailable view"
    )


class CapabilitiesResponse(BaseModel):
    """Server capabilities summary for diagnostics and clients."""

    version: str
    snapshot_schema_version: str
    http_auth: str
    cors_origins: List[str]
    views: List[str]
    domains: Dict[str, bool]
    connector_types: List[str]
    granularities: List[str]
    applications: List[str]


class InvalidateResponse(BaseModel):
    app_id: Optional[str] = None
    entries_removed: int


def _error(status_code: int, err: ErrorResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": err.model_dump(exclude_none=True)},
    )


def _make_auth_dependency(expected: Optional[str]):
    """Return a dependency function that enforces optional bearer token."""

    def _auth_dependency(authorization: str | None = Header(default=None)) -> None:
        if expected is None:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        token = authorization.split(" ", 1)[1]
        if token != expected:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)

    return _auth_dependency


def _get_service(request: Request) -> AggregationService:
    return request.app.state.service


def _register_health(app: FastAPI) -> None:
    """Register health and readiness endpoints."""

    @app.get("/health", response_model=HealthResponse, summary="Liveness probe")
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=HealthResponse, summary="Readiness probe")
    async def ready(request: Request) -> HealthResponse:
        service = _get_service(request)
        if not service.connectors:
            return HealthResponse(status="no_connectors")
        return HealthResponse(status="ready")


def _register_capabilities(app: FastAPI, settings: EnvSettings) -> None:
    """Register server capabilities endpoint."""

    @app.get(
        "/capabilities",
        response_model=CapabilitiesResponse,
        summary="Server capabilities summary",
    )
    async def capabilities(request: Request) -> CapabilitiesResponse:
        service = _get_service(request)
        connectors = service.connectors
        return CapabilitiesResponse(
            version=__version__,
            snapshot_schema_version=__snapshot_schema_version__,
            http_auth="enabled" if settings.http_token else "disabled",
            cors_origins=settings.cors_origin_list(),
            views=["snapshot", "timeseries", "breakdown", "projection"],
            domains={
                d.value: d in connectors and connectors[d].is_configured()
                for d in Domain
            },
            connector_types=get_available_connector_types(),
            granularities=[g.value for g in Granularity.ordered()],
            applications=[a.app_id for a in service.list_applications()],
        )


def _register_views(app: FastAPI, auth_dep: Any) -> None:
    """Register the application view endpoints under ``/api``."""
    error_responses: Dict[int | str, Dict[str, Any]] = {
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    }

    @app.get(
        "/api/apps",
        response_model=List[ApplicationInfo],
        dependencies=[Depends(auth_dep)],
        summary="Configured applications",
    )
    async def list_apps(request: Request) -> List[ApplicationInfo]:
        return _get_service(request).list_applications()

    @app.get(
        "/api/apps/{app_id}/snapshot",
        response_model=ViewEnvelope[AggregatedSnapshot],
        responses=error_responses,
        dependencies=[Depends(auth_dep)],
        summary="Dashboard snapshot of one application",
    )
    async def snapshot(
        app_id: str,
        request: Request,
        range_token: str = Query("24h", alias="range"),
    ):
        return await _get_service(request).get_snapshot(app_id, range_token)

    @app.get(
        "/api/apps/{app_id}/timeseries/{domain}",
        response_model=ViewEnvelope[TimeSeriesView],
        responses=error_responses,
        dependencies=[Depends(auth_dep)],
        summary="One metric as a time series",
    )
    async def timeseries(
        app_id: str,
        domain: str,
        request: Request,
        range_token: str = Query("24h", alias="range"),
        metric: Optional[str] = Query(None),
        granularity: Optional[str] = Query(None),
    ):
        return await _get_service(request).get_time_series(
            app_id, domain, range_token, metric=metric, granularity=granularity
        )

    @app.get(
        "/api/apps/{app_id}/breakdown/{domain}",
        response_model=ViewEnvelope[BreakdownView],
        responses=error_responses,
        dependencies=[Depends(auth_dep)],
        summary="Ranked sub-components of one metric",
    )
    async def breakdown(
        app_id: str,
        domain: str,
        request: Request,
        range_token: str = Query("24h", alias="range"),
        metric: Optional[str] = Query(None),
        limit: Optional[int] = Query(None),
    ):
        return await _get_service(request).get_breakdown(
            app_id, domain, range_token, metric=metric, limit=limit
        )

    @app.get(
        "/api/apps/{app_id}/projection",
        response_model=ViewEnvelope[ProjectionView],
        responses=error_responses,
        dependencies=[Depends(auth_dep)],
        summary="Month-end cost projection",
    )
    async def projection(
        app_id: str,
        request: Request,
        range_token: str = Query("mtd", alias="range"),
    ):
        return await _get_service(request).get_projection(app_id, range_token)


def _register_admin(app: FastAPI, auth_dep: Any, admin_subjects: List[str]) -> None:
    """Register admin endpoints; callers must be a configured admin subject."""
    allowed = frozenset(admin_subjects)

    @app.post(
        "/admin/cache/invalidate",
        response_model=InvalidateResponse,
        responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        dependencies=[Depends(auth_dep)],
        summary="Drop cached views",
    )
    async def invalidate_cache(
        request: Request,
        app_id: Optional[str] = Query(None),
        x_admin_subject: Optional[str] = Header(default=None),
    ) -> InvalidateResponse:
        if not x_admin_subject or x_admin_subject not in allowed:
            logger.warning(
                "http.admin.forbidden",
                extra={"req_id": get_request_id(), "subject": x_admin_subject},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=ErrorResponse(
                    detail="admin subject required",
                    error_type="forbidden",
                ).model_dump(exclude_none=True),
            )
        removed = _get_service(request).invalidate_cache(app_id)
        logger.info(
            "http.admin.cache_invalidated",
            extra={"subject": x_admin_subject, "app_id": app_id, "removed": removed},
        )
        return InvalidateResponse(app_id=app_id, entries_removed=removed)


def _register_error_handlers(app: FastAPI) -> None:
    """Map domain exceptions and framework errors onto structured payloads."""

    @app.exception_handler(InvalidRangeToken)
    async def invalid_range_handler(_request: Request, exc: InvalidRangeToken):
        return _error(
            400,
            ErrorResponse(
                detail=str(exc),
                error_type="invalid_range_token",
                available_options=RANGE_EXAMPLES,
            ),
        )

    @app.exception_handler(UnknownApplication)
    async def unknown_app_handler(_request: Request, exc: UnknownApplication):
        return _error(
            404,
            ErrorResponse(
                detail=str(exc),
                error_type="unknown_application",
                available_options=exc.available,
            ),
        )

    @app.exception_handler(InvalidViewRequest)
    async def invalid_view_handler(_request: Request, exc: InvalidViewRequest):
        return _error(
            400,
            ErrorResponse(
                detail=exc.detail,
                error_type="invalid_view_request",
                available_options=exc.available_options or None,
            ),
        )

    @app.exception_handler(AggregationUnavailable)
    async def unavailable_handler(_request: Request, exc: AggregationUnavailable):
        return _error(
            503,
            ErrorResponse(
                detail="A required data source failed and no cached result exists.",
                error_type="aggregation_unavailable",
                issues=exc.issues,
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: Exception):
        return _error(
            400, ErrorResponse(detail=str(exc), error_type="validation_error")
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException):
        # Pass through existing HTTP errors but ensure structured payload
        detail = getattr(exc, "detail", "")
        if isinstance(detail, dict) and {"detail", "error_type"} <= detail.keys():
            return JSONResponse(status_code=exc.status_code, content={"detail": detail})
        return _error(
            exc.status_code,
            ErrorResponse(detail=str(detail) or "HTTP error", error_type="http_error"),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception):
        # Avoid leaking internals; log server-side, return generic error
        logger.error(
            "http.unhandled_exception",
            extra={"req_id": get_request_id()},
            exc_info=exc,
        )
        return _error(
            500,
            ErrorResponse(
                detail="Internal error. See server logs for request id.",
                error_type="internal_server_error",
            ),
        )


def _log_startup_memory() -> None:
    process = psutil.Process()
    mem_info = process.memory_info()
    logger.info(
        "http.startup.memory",
        extra={
            "rss_mb": round(mem_info.rss / 1024 / 1024, 1),
            "vms_mb": round(mem_info.vms / 1024 / 1024, 1),
        },
    )


def load_config(settings: EnvSettings) -> AppConfig:
    """Load the configuration file named by ``APPMETRICS_CONFIG``.

    Raises
    ------
    ConfigError
        If no path is configured or the file is invalid.
    """
    if not settings.config:
        raise ConfigError(
            "no configuration file given; set APPMETRICS_CONFIG or pass --config"
        )
    return AppConfig.load(Path(settings.config))


def create_app(
    config: Optional[AppConfig] = None,
    *,
    service: Optional[AggregationService] = None,
    settings: Optional[EnvSettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config: AppConfig, optional
        Loaded configuration; read from ``APPMETRICS_CONFIG`` when omitted.
    service: AggregationService, optional
        Prebuilt service (tests); built from ``config`` when omitted.
    settings: EnvSettings, optional
        Environment settings; read from the environment when omitted.

    Raises
    ------
    ConfigError
        If the configuration is missing or invalid.
    """
    settings = settings or EnvSettings()
    # Respect prior logging configuration from CLI; otherwise use env setting
    if not logging.getLogger().hasHandlers():
        setup_logging(settings.log_level)

    if config is None:
        config = load_config(settings)
    if service is None:
        service = AggregationService.from_config(
            config, build_connectors(config.connectors)
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("http.startup")
        try:
            _log_startup_memory()
        except (psutil.Error, OSError):  # pragma: no cover
            logger.debug("http.startup.memory_unavailable")
        try:
            yield
        finally:
            logger.info("http.shutdown")
            await service.aclose()

    app = FastAPI(title="App Metrics Aggregator", version=__version__, lifespan=lifespan)
    app.state.service = service
    app.state.config = config

    cors_origins = settings.cors_origin_list()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_middleware(CorrelationIdMiddleware)

    auth_dep = _make_auth_dependency(settings.http_token or None)
    _register_error_handlers(app)
    _register_health(app)
    _register_capabilities(app, settings)
    _register_views(app, auth_dep)
    _register_admin(app, auth_dep, config.admin_subjects)

    logger.info(
        "http.startup.settings",
        extra={
            "log_level": settings.log_level,
            "config_path": settings.config,
            "http_auth": "enabled" if settings.http_token else "disabled",
            "cors_origins": cors_origins,
            "applications": [a.app_id for a in service.list_applications()],
            "domains": [d.value for d in service.connectors],
        },
    )
    return app
