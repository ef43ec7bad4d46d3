"""
Main entry point for the roomsync backend.
Configures lifespan events and mounts routers.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomsync.api.routes import router as api_router
from roomsync.config.settings import settings
from roomsync.services.store import store_service

# Setup Logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# pylint: disable=redefined-outer-name
# pylint: disable=unused-argument
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application Lifecycle Manager.
    Opens the room database on startup and releases it on shutdown.
    """
    logger.info("Starting %s...", settings.app_name)
    store_service.initialize(settings.db_name)

    yield

    logger.info("Shutting down %s...", settings.app_name)
    store_service.shutdown()


def create_app() -> FastAPI:
    """Factory to create the app."""
    application = FastAPI(
        title=settings.app_name,
        description="Shared room chat backend: room directory, message store and change feed",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict this
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_router, prefix="/api")

    return application


app = create_app()


def run() -> None:
    """Console entry point: serves the app with uvicorn."""
    uvicorn.run("roomsync.main:app", host="0.0.0.0", port=settings.server_port)
