import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from pythonjsonlogger.json import JsonFormatter

from querygate.api.router import api_router
from querygate.core.config import Settings, get_settings, settings as default_settings
from querygate.core.database import build_engine
from querygate.core.skill import GuardedQuerySkill

logger = logging.getLogger(__name__)

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configure_logging(settings: Settings) -> None:
    """Root handler on stdout, human-readable or JSON depending on config."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.logging.format == "json":
        handler.setFormatter(
            JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.logging.level.upper())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    # Build the skill on startup and shut it down (audit drain, engine dispose) on exit
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        engine = build_engine(settings)
        app.state.skill = GuardedQuerySkill(settings, engine)
        logger.info(
            "%s ready (mode=%s, isolation=%s, cache=%s, audit=%s)",
            app.state.skill.capability_id(),
            settings.security.mode,
            settings.execution.isolation_level,
            settings.cache.enabled,
            settings.audit.enabled,
        )

        yield
        await app.state.skill.safe_shutdown()

    app = FastAPI(title="QueryGate Skill API", lifespan=lifespan)
    if settings is not default_settings:
        app.dependency_overrides[get_settings] = lambda: settings

    # Include the master router containing all our endpoints
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


app = create_app()
