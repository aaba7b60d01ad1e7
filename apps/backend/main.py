# apps/backend/main.py
import logging
from typing import Optional

from fastapi import FastAPI

from apps.backend.routes.health import router as health_router
from apps.backend.routes.keepalive_status import router as keepalive_status_router
from apps.backend.services.admin.logger import setup_logging
from apps.backend.services.keepalive.keepalive import KeepAliveScheduler
from apps.backend.services.settings import KeepAliveSettings, load_keepalive_settings

log = logging.getLogger("keepalive.backend")


def build_keepalive(settings: KeepAliveSettings, **kwargs) -> KeepAliveScheduler:
    keepalive = KeepAliveScheduler(**kwargs)
    keepalive.set_endpoints(settings.endpoints)
    keepalive.set_external_endpoints(settings.external_endpoints)
    keepalive.set_interval(settings.interval_ms)
    return keepalive


def create_app(settings: Optional[KeepAliveSettings] = None, **keepalive_kwargs) -> FastAPI:
    settings = settings or load_keepalive_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="Keepalive Backend",
        description="Host process that keeps itself and its hosting tier awake",
    )
    app.state.settings = settings
    app.state.keepalive = None

    # -------------------------------------------------------------------
    # Routers
    # -------------------------------------------------------------------
    app.include_router(health_router)
    app.include_router(keepalive_status_router)

    @app.get("/")
    async def root():
        return {
            "status": "Keepalive Online",
            "routes": [
                "/api/health",
                "/api/status",
                "/keepalive/status",
            ],
        }

    # -------------------------------------------------------------------
    # Startup / shutdown
    # -------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        if not settings.enabled:
            log.info("Keep-alive disabled (KEEPALIVE_ENABLED=false)")
            return
        keepalive = build_keepalive(settings, **keepalive_kwargs)
        app.state.keepalive = keepalive
        keepalive.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        keepalive = app.state.keepalive
        if keepalive is not None:
            keepalive.shutdown()

    return app


app = create_app()
