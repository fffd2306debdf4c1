"""
CampusMind API - FastAPI application.

Hosts the admission-control layer and the flashcard scheduling endpoints.
"""

from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from src.core import RateLimitPolicy, get_settings
from src.core.metrics import get_metrics
from src.core.rate_limiter import (
    RateLimitExceeded,
    create_rate_limiter,
    reset_rate_limiter,
    set_rate_limiter,
)
from src.storage import get_key_value_store, reset_key_value_store

from .rate_limit import (
    RateLimitHeadersMiddleware,
    RateLimitMiddleware,
    enforce_rate_limit,
    rate_limit_exceeded_handler,
    skip_throttle,
)
from .routes import flashcards, ops

logger = structlog.get_logger()
settings = get_settings()


# =============================================================
# LIFESPAN
# =============================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info(
        "starting_campusmind_api",
        env=settings.env,
        redis_enabled=settings.use_redis,
        rate_limit_backend=settings.rate_limit_backend,
    )

    store = None
    try:
        store = await get_key_value_store()
        if getattr(app.state, "rate_limiter", None) is None:
            limiter = create_rate_limiter(settings, store)
            set_rate_limiter(limiter)
            app.state.rate_limiter = limiter

        logger.info("key_store_ready", backend=store.backend)

        yield

    finally:
        logger.info("shutting_down_campusmind_api")

        if store:
            await store.close()

        # Reset singletons so hot-reload creates fresh state
        reset_key_value_store()
        reset_rate_limiter()
        app.state.rate_limiter = None


# =============================================================
# APP
# =============================================================

app = FastAPI(
    title="CampusMind",
    description="Student productivity API",
    version="0.1.0",
    lifespan=lifespan,
    dependencies=[Depends(enforce_rate_limit)],
)
app.state.rate_limiter = None

# Rate limiting
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(RateLimitHeadersMiddleware)

if settings.ip_rate_limit_enabled:
    app.add_middleware(
        RateLimitMiddleware,
        policy=RateLimitPolicy(
            window_ms=settings.ip_rate_limit_window_ms,
            max_requests=settings.ip_rate_limit_max,
            key_prefix="ip",
        ),
    )

# CORS middleware - configurable via CAMPUSMIND_ALLOWED_ORIGINS
_origins = [
    o.strip()
    for o in settings.allowed_origins.split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)


# =============================================================
# ERROR SANITIZATION
# =============================================================


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions - log details, return generic message."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


app.include_router(flashcards.router, prefix="/flashcards", tags=["flashcards"])
app.include_router(ops.router, prefix="/ops", tags=["ops"])


# =============================================================
# PUBLIC ENDPOINTS (not throttled)
# =============================================================


@app.get("/health")
@skip_throttle
async def health_check():
    """Health check endpoint (never throttled, for monitoring)."""
    checks = {"api": "ok", "key_store": "unknown"}
    backend = "unknown"

    try:
        store = await get_key_value_store()
        stats = await store.get_stats()
        backend = stats["backend"]
        checks["key_store"] = f"ok ({backend})"
    except Exception as e:
        checks["key_store"] = f"error: {type(e).__name__}"

    healthy = all("ok" in str(v) for v in checks.values())

    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "key_store_backend": backend,
        "checks": checks,
    }


@app.get("/metrics")
@skip_throttle
async def prometheus_metrics():
    """Prometheus metrics endpoint (public - standard for scraping)."""
    if not settings.metrics_enabled:
        return PlainTextResponse(content="", status_code=404)

    return PlainTextResponse(
        content=get_metrics().prometheus_format(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
