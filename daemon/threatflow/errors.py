# threatflow/errors.py
from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import traceback
import structlog

logger = structlog.get_logger(__name__)


# ---- domain errors ----------------------------------------------------------

class ThreatFlowError(Exception):
    """Base class for every error raised by the gateway and its providers."""
    code = "THREATFLOW_ERR"
    status_code = 500


class CapabilityNotImplemented(ThreatFlowError, NotImplementedError):
    code = "NOT_IMPLEMENTED"
    status_code = 501

    def __init__(self, capability: str, provider: str):
        super().__init__(f"{capability}() must be implemented by {provider} provider")
        self.capability = capability
        self.provider = provider


class InvalidInput(ThreatFlowError, ValueError):
    code = "INVALID_INPUT"
    status_code = 400


class UpstreamError(ThreatFlowError):
    code = "UPSTREAM_ERR"
    status_code = 502

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.upstream_status = status_code


class UnknownProvider(ThreatFlowError, LookupError):
    code = "UNKNOWN_PROVIDER"
    status_code = 400

    def __init__(self, provider_id: str, supported: list[str]):
        super().__init__(f"Unknown provider: {provider_id}. Supported: {', '.join(supported)}")
        self.provider_id = provider_id
        self.supported = supported


class Unconfigured(ThreatFlowError):
    code = "UNCONFIGURED"
    status_code = 503


# ---- HTTP envelope ----------------------------------------------------------

class ErrorDetail(BaseModel):
    code: str
    msg: str

class ErrorEnvelope(BaseModel):
    error: ErrorDetail


def _envelope(status_code: int, code: str, msg: str) -> JSONResponse:
    envelope = ErrorEnvelope(error=ErrorDetail(code=code, msg=msg))
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def add_global_error_handlers(app):
    @app.exception_handler(ThreatFlowError)
    async def threatflow_exc_handler(request: Request, exc: ThreatFlowError):
        if exc.status_code >= 500:
            logger.error("Request failed", code=exc.code, detail=str(exc), exc_info=exc)
        else:
            logger.warning("Request rejected", code=exc.code, detail=str(exc))
        return _envelope(exc.status_code, exc.code, str(exc))

    @app.exception_handler(HTTPException)
    async def http_exc_handler(request: Request, exc: HTTPException):
        logger.error("HTTP error", exc_info=exc)
        return _envelope(exc.status_code, getattr(exc, "code", "HTTP_ERROR"), str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):
        raw_errors = exc.errors()
        logger.warning("Validation error", errors=raw_errors)
        formatted_errors = []
        for error in raw_errors:
            field = ".".join(map(str, error.get('loc', []))) # Join location path
            message = error.get('msg', 'Unknown error')
            formatted_errors.append(f"Field '{field}': {message}")
        return _envelope(422, "VALIDATION_ERR", "; ".join(formatted_errors))

    @app.exception_handler(Exception)
    async def generic_exc_handler(request: Request, exc: Exception):
        # Log full stack for ops
        logger.error("Unhandled exception", stack=traceback.format_exc())
        return _envelope(500, "UNEXPECTED_ERR", "An internal server error occurred")
