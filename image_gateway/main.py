import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from image_gateway.api.v1.router import api_v1_router
from image_gateway.core.config import settings, validate_settings_for_production
from image_gateway.core.exceptions import GatewayError, RateLimitedError
from image_gateway.core.logging import setup_logging
from image_gateway.core.metrics import PrometheusMiddleware, metrics_response
from image_gateway.core.middleware import RequestLoggingMiddleware
from image_gateway.core.sentry import init_sentry
from image_gateway.gateway.orchestrator import ImageGateway

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting Image Gateway...")

    gateway = ImageGateway.from_settings(settings, allow_keyless=settings.app_env != "production")
    gateway.start()
    app.state.gateway = gateway

    yield

    # Shutdown
    await gateway.close()
    logger.info("Image Gateway shut down")


app = FastAPI(
    title="Image Gateway",
    description="Rate-limited, cached, key-rotating gateway to image generation providers",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
        headers=headers,
    )


# Log unhandled exceptions with their traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Request logging + metrics middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


@app.get("/api/v1/health")
async def health(request: Request):
    gateway: ImageGateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        return JSONResponse(status_code=503, content={"status": "starting"})
    stats = gateway.get_stats()
    return {
        "status": "ok",
        "queue_running": gateway.queue.is_running,
        "queue_length": stats["queue_length"],
        "active_keys": stats["active_keys"],
        "total_keys": stats["total_keys"],
    }
