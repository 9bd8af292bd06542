"""
OpenTV - FastAPI Backend

Browse publicly listed IPTV channels from the iptv-org catalog and check
which of their streams currently work.
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from opentv.config import get_settings
from opentv.models.metadata import SyncStatus
from opentv.routers import channels, probe, streams
from opentv.services.catalog import CatalogStore, StoreUnavailable
from opentv.services.probe_cache import ProbeCache
from opentv.services.probe_scheduler import ProbeScheduler
from opentv.services.query_engine import InvalidCursor, QueryEngine
from opentv.services.stream_prober import build_prober

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()

# Rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"]
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    logger.info("Starting OpenTV backend...")
    settings = get_settings()

    catalog = CatalogStore(settings.database_path)
    await catalog.initialize()
    logger.info(f"Catalog initialized at {settings.database_path}")

    probe_cache = ProbeCache(
        settings.probe_cache_path,
        max_entries=settings.probe_cache_max_entries,
        working_ttl=timedelta(hours=settings.probe_working_ttl_hours),
        failed_ttl=timedelta(hours=settings.probe_failed_ttl_hours),
        refresh_hour_utc=settings.refresh_hour_utc,
    )
    probe_cache.load()
    await probe_cache.evict_expired()

    engine = QueryEngine(catalog)
    scheduler = None
    if settings.probing_enabled:
        prober = build_prober(settings.probe_strategy, timeout=settings.probe_timeout_seconds)
        scheduler = ProbeScheduler(
            prober,
            probe_cache,
            engine.get_streams,
            max_concurrent=settings.max_concurrent_probes,
            probe_timeout=settings.probe_timeout_seconds,
        )
        await scheduler.start()
    else:
        logger.info("Stream probing disabled")

    app.state.catalog = catalog
    app.state.engine = engine
    app.state.probe_cache = probe_cache
    app.state.scheduler = scheduler

    yield

    if scheduler:
        await scheduler.close()
    logger.info("Shutting down OpenTV backend...")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="IPTV channel directory with stream liveness probing",
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(channels.router)
app.include_router(streams.router)
app.include_router(probe.router)


# API endpoints
@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/api/stats")
async def get_stats(request: Request):
    """Get catalog statistics and last sync outcome."""
    catalog: CatalogStore = request.app.state.catalog
    stats = await catalog.get_stats()
    last_sync = await catalog.get_sync_status()
    scheduler = request.app.state.scheduler

    return {
        **stats,
        "last_sync": SyncStatus(**last_sync).model_dump(mode="json") if last_sync else None,
        "probe_cache_entries": len(request.app.state.probe_cache),
        "probing": scheduler.get_stats() if scheduler else None,
    }


# Error handlers
@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    """Catalog database unreachable: tell clients to retry."""
    logger.error(f"Catalog unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Channel catalog is temporarily unavailable, please retry"},
        headers={"Retry-After": "30"}
    )


@app.exception_handler(InvalidCursor)
async def invalid_cursor_handler(request: Request, exc: InvalidCursor):
    """Cursor was tampered with or reused with another filter."""
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "opentv.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
