"""
AgentKB Provisioning Service - Main Application Entry Point
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from agentkb.api import router
from agentkb.config import settings
from agentkb.container import Services, build_services
from agentkb.logging_config import configure_logging
from agentkb.scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application; ``services`` is injected by tests, built from settings otherwise."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        configure_logging(settings.log_level, settings.log_json)
        owned = services is None
        app.state.services = services or build_services(settings)
        svc = app.state.services
        logger.info("%s starting up", svc.settings.app_name)

        scheduler = start_scheduler(svc)

        if svc.settings.resume_indexing_on_startup:
            try:
                resumed = await svc.indexer.resume_pending()
                if resumed:
                    logger.info("Resumed indexing for %d users", len(resumed))
            except Exception as e:
                logger.error("Could not resume pending indexing runs: %s", e)

        yield

        # Shutdown
        logger.info("%s shutting down", svc.settings.app_name)
        stop_scheduler(scheduler)
        if owned:
            await svc.aclose()
        else:
            await svc.provision_registry.shutdown()
            await svc.index_registry.shutdown()

    app = FastAPI(
        title=settings.app_name,
        description="Per-user agent and knowledge-base provisioning on DigitalOcean GenAI",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("agentkb.main:app", host="0.0.0.0", port=8000, reload=settings.debug)


if __name__ == "__main__":
    run()
