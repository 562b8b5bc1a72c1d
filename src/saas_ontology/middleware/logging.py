"""Structured logging setup and request logging middleware."""
import logging
import re
import sys
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from saas_ontology.config import settings

REQUEST_ID_HEADER = "X-Request-ID"

# Probes and scrapes would drown the request log
UNLOGGED_PATHS = ("/health", "/metrics")

_ORGANIZATION_PATH = re.compile(r"^/v1/analytics/(?P<organization_id>[^/]+)/")


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    Output is JSON lines in production and a coloured console elsewhere.
    SQLAlchemy engine logging stays at WARNING unless ``settings.debug`` is set.
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.app_env == "production"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)


def request_id_for(request: Request) -> str:
    """Request id bound by the middleware, the caller's header, or a fresh one."""
    bound = getattr(request.state, "request_id", None)
    if bound:
        return bound
    return request.headers.get(REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:12]}"


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every API request with its duration.

    Binds ``request_id`` (taken from ``X-Request-ID`` when the caller sends
    one) and, for analytics routes, ``organization_id`` into the structlog
    context, so pipeline logs emitted during a refresh carry both.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request_id_for(request)
        request.state.request_id = request_id

        context = {"request_id": request_id, "path": request.url.path, "method": request.method}
        match = _ORGANIZATION_PATH.match(request.url.path)
        if match:
            context["organization_id"] = match.group("organization_id")

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)

        logger = structlog.get_logger(__name__)
        quiet = request.url.path.startswith(UNLOGGED_PATHS)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("request_failed", exc_info=exc)
            raise

        if not quiet:
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
