# daemon/threatflow/logging.py

import logging
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from structlog.contextvars import bind_contextvars, merge_contextvars, reset_contextvars

from threatflow.config import Settings

# SDK and transport loggers that log every request at INFO
_CHATTY_LIBRARIES = ("httpx", "httpcore", "anthropic", "openai")


def setup_logging(settings: Settings):
    """
    Route stdlib logging (uvicorn, the provider SDKs) and structlog through
    one renderer. ``THREATFLOW_LOG_FORMAT=console`` gives coloured
    key/value lines for local work; anything else emits JSON.
    """
    level_name = settings.log_level.upper() if isinstance(settings.log_level, str) else "INFO"
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)
    if level > logging.DEBUG:
        for name in _CHATTY_LIBRARIES:
            logging.getLogger(name).setLevel(logging.WARNING)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags every log line of a request with its id and logs how long it took.

    For event streams the time covers only the response head; the relay
    keeps running after ``call_next`` returns.
    """
    async def dispatch(self, request, call_next):
        reset_contextvars()
        # honour a caller-supplied id so a UI can correlate its own logs
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_contextvars(request_id=req_id, path=request.url.path, method=request.method)
        started = time.perf_counter()
        response = await call_next(request)
        structlog.get_logger("server.http").info(
            "Request handled",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        response.headers["X-Request-ID"] = req_id
        return response
