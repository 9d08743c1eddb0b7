from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import StreamingResponse
from threatflow import providers
from threatflow.gateway import StreamGateway
from threatflow.models import ProvidersResponse, StreamRequest, VisionAnalysisRequest
from threatflow.errors import add_global_error_handlers
from threatflow.logging import setup_logging, RequestIDMiddleware
import structlog
import uvicorn

from threatflow.config import get_config, set_config

# load settings before anything resolves a provider
set_config()
gateway = StreamGateway()

# ---- structured logging setup ----
setup_logging(get_config())
struct_logger = structlog.get_logger("server.lifespan") # Logger for lifespan events

# ---- Lifespan context manager ----
@asynccontextmanager
async def lifespan(app: FastAPI):
    available = [d.id for d in providers.list_available()]
    struct_logger.info("Starting up...", providers=available, default=providers.resolve_default())
    if not available:
        struct_logger.warning("No AI provider is configured; analysis requests will be rejected")
    yield
    struct_logger.info("Shutting down...")

app = FastAPI(title="ThreatFlow Daemon", lifespan=lifespan)

# install our unified handlers *after* app creation
add_global_error_handlers(app)
app.add_middleware(RequestIDMiddleware)

# ---- HTTP endpoints ----
@app.get("/health")
def health_check():
    return {"status": "ok"}

@app.get("/api/providers")
def list_providers():
    available = providers.list_available()
    response = ProvidersResponse(
        providers=available,
        default_provider=providers.resolve_default(),
        has_configured_providers=bool(available),
    )
    return response.model_dump(by_alias=True)

@app.post("/api/ai-stream")
async def ai_stream(body: StreamRequest):
    # resolution errors surface as JSON before the event stream opens
    provider = gateway.resolve(body.provider, body.model)
    logger = structlog.get_logger("server.ai_stream")
    logger.info("Starting analysis stream", provider=provider.id, chars=len(body.text), images=len(body.images))
    return StreamingResponse(
        gateway.sse(provider, body.to_analysis(), body.images),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

@app.post("/api/vision-analysis")
async def vision_analysis(body: VisionAnalysisRequest):
    provider = gateway.resolve(body.provider, body.model)
    result = await gateway.analyze_vision(provider, body.to_vision())
    return result.model_dump(by_alias=True, exclude_none=True)


@app.post("/admin/reload-config")
async def reload_config():
    """
    Re-reads the process environment so new keys or models take effect.
    """
    logger = structlog.get_logger("server.reload_config")
    logger.info("Reloading configuration.")
    set_config()
    logger.info("Configuration reloaded.", providers=[d.id for d in providers.list_available()])
    return {"message": "Configuration reloaded successfully"}


# ---- Server execution ----
def serve(host: str = '127.0.0.1', port: int = 16005):
    # disable uvicorn's own access logs in favor of our structured output
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_config=None, # Keep this to prevent uvicorn's default logging setup
        access_log=False,
    )
