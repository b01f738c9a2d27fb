"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from catalog_ingest.api.routes import categories, imports
from catalog_ingest.config import settings
from catalog_ingest.db.models import Base
from catalog_ingest.db.session import engine
from catalog_ingest.logging_config import setup_logging
from catalog_ingest.worker.scheduler import setup_scheduler

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    logger.info("Starting catalog ingestion service...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    yield

    logger.info("Shutting down...")
    if scheduler:
        scheduler.shutdown()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Catalog Ingest",
    description="Import app listings and categories into the catalog",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(imports.router)
app.include_router(categories.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "catalog_ingest.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
