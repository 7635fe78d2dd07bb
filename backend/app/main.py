"""FastAPI application bootstrap."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routers import health, jobs, uploads
from app.core.config import get_settings
from app.workers.broker import BrokerConnection

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Connects lazily on the first publish or readiness check.
    app.state.broker = BrokerConnection()
    try:
        yield
    finally:
        app.state.broker.shutdown()


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and include top-level routers."""
    app = FastAPI(title="Roster Importer", version="0.1.0", lifespan=lifespan)

    settings = get_settings()
    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(uploads.router, prefix="/api/uploads", tags=["uploads"])
    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])

    return app


app = create_app()
