"""CTMS main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ctms import __version__
from ctms.api import router, ws_router
from ctms.api.deps import validate_auth_config
from ctms.api.errors import install_exception_handlers
from ctms.config import settings
from ctms.db.base import close_db, init_db
from ctms.tasks.side_effects import start_side_effects, stop_side_effects

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("ctms")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting CTMS server...")
    logger.info(f"Environment: {settings.env.value}")

    # Validate authentication configuration (fail fast if insecure)
    validate_auth_config()

    await init_db()
    logger.info("Database initialized")

    await start_side_effects()

    yield

    logger.info("Shutting down CTMS server...")
    # Flush committed mutations' notify/broadcast/audit jobs before the pool goes away
    await stop_side_effects()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="CTMS",
    description="Collaborative task management backend",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)

install_exception_handlers(app)

app.include_router(router)
app.include_router(ws_router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "ctms.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
