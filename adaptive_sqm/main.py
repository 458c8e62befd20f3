"""Adaptive SQM: adaptive bandwidth-shaping controller.

FastAPI entry point with lifespan management and background module start-up.
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.router import api_router
from .config import get_config
from .database import close_engine, create_tables, get_session_factory
from .dependencies import (
    get_baseline_store,
    get_controller,
    get_latency_monitor,
    get_registry,
    get_sampler,
    get_scheduler,
)
from .middleware.error_handler import register_error_handlers
from .middleware.request_id import RequestIDMiddleware
from .utils.logging import get_logger, setup_logging

config = get_config()
setup_logging(
    debug=config.debug,
    log_dir=config.log_dir,
    log_max_bytes=config.log_max_bytes,
    log_backup_count=config.log_backup_count,
)
logger = get_logger("adaptive_sqm.main")


def _schedule_retention(scheduler, factory) -> None:
    from .maintenance.retention import RetentionManager

    manager = RetentionManager(db_session_factory=factory, config=config)
    interval = config.retention_cleanup_interval_hours * 3600

    async def _cleanup():
        logger.info("retention_cleanup_starting")
        await manager.run_cleanup(now=scheduler.clock.now())

    scheduler.schedule_periodic("retention", lambda now: interval, _cleanup)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("adaptive_sqm_starting", host=config.host, port=config.port, gateway=config.gateway_host)

    await create_tables(config)
    factory = get_session_factory(config)

    registry = get_registry()
    store = get_baseline_store()
    await registry.initialize()
    await store.initialize()

    # Wires the registry teardown hook
    get_controller()
    for runtime in registry.runtimes():
        if store.has_baseline(runtime.link_id):
            runtime.has_rate_source = True

    sampler = get_sampler()
    latency_monitor = get_latency_monitor()
    await sampler.start()
    await latency_monitor.start()

    scheduler = get_scheduler()
    _schedule_retention(scheduler, factory)

    logger.info("adaptive_sqm_started", links=len(registry), jobs=scheduler.job_names())

    yield

    # --- Shutdown ---
    logger.info("adaptive_sqm_stopping")
    await sampler.stop()
    await latency_monitor.stop()
    await scheduler.shutdown()
    await close_engine()
    logger.info("adaptive_sqm_stopped")


app = FastAPI(
    title="ADAPTIVE-SQM",
    description="Adaptive bandwidth-shaping controller",
    version=__version__,
    lifespan=lifespan,
)

register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

# Request ID: added last so it runs first
app.add_middleware(RequestIDMiddleware)

app.include_router(api_router)


@app.get("/health")
async def health():
    """Module health and link count."""
    sampler = get_sampler()
    latency_monitor = get_latency_monitor()
    return {
        "status": "healthy",
        "version": __version__,
        "links": len(get_registry()),
        "modules": {
            "sampler": await sampler.health_check(),
            "latency_monitor": await latency_monitor.health_check(),
        },
        "jobs": get_scheduler().job_names(),
    }


def main() -> None:
    """Run the controller server."""
    uvicorn.run(
        "adaptive_sqm.main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )


if __name__ == "__main__":
    main()
