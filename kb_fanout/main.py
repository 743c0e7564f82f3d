"""
Knowledge-base fan-out service

Entry point for the FastAPI application.
"""

from typing import Optional

import structlog
from fastapi import FastAPI

from kb_fanout.api.realtime import router as realtime_router
from kb_fanout.core.config import Settings, get_settings
from kb_fanout.core.database import init_db
from kb_fanout.core.logging import configure_logging
from kb_fanout.core.redis import close_redis
from kb_fanout.services.container import Services, build_services

log = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Knowledge Base Fan-out",
        description="Realtime fan-out and notification scheduling for domain events.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services or build_services(settings)

    app.include_router(realtime_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: the event worker is consuming."""
        pending = app.state.services.bus.queue.qsize()
        return {"status": "ready", "pending_events": pending}

    @app.on_event("startup")
    async def on_startup():
        svc: Services = app.state.services
        log.info("fanout.starting", debug=settings.debug)
        if settings.debug:
            await init_db(svc.engine)
        if hasattr(svc.registry, "start"):
            await svc.registry.start()
        await svc.worker.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        svc: Services = app.state.services
        log.info("fanout.shutting_down")
        await svc.worker.stop()
        if hasattr(svc.registry, "stop"):
            await svc.registry.stop()
        if hasattr(svc.mailer, "close"):
            await svc.mailer.close()
        await close_redis()
        await svc.engine.dispose()

    return app


def run() -> None:
    """CLI entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
