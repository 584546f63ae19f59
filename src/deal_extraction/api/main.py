"""FastAPI application for the deal extraction pipeline service."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from deal_extraction.pipeline.service import ExtractionPipelineService

from .config import get_settings
from .routes.health import router as health_router
from .routes.pipeline import router as pipeline_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline service at startup, shut it down cleanly."""
    settings = get_settings()

    logger.info("lifespan.startup", document_root=settings.DOCUMENT_ROOT)

    # Same wiring as scripts and library callers; Postgres stays optional
    service = await ExtractionPipelineService.from_config(settings)
    service.start_eviction(settings.EVICTION_INTERVAL_SECONDS)

    # Store on app.state for request handlers
    app.state.service = service

    logger.info(
        "lifespan.ready",
        clarification_store=service.clarification_store is not None,
    )
    yield

    # Shutdown
    logger.info("lifespan.shutdown")
    await service.close()


app = FastAPI(
    title="deal-extraction-pipeline",
    description="Staged document extraction for deals with clarification checkpoints and SSE progress",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(pipeline_router)
