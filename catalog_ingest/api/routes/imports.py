"""Import job API endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_ingest.api.deps import get_database, require_admin_api_key
from catalog_ingest.ingest.import_orchestrator import (
    create_import_job,
    get_job,
    import_orchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/import",
    tags=["import"],
    dependencies=[Depends(require_admin_api_key)],
)


class StartImportRequest(BaseModel):
    """Request model for starting an import."""
    limit: Optional[int] = None
    importAll: bool = False


class StartImportResponse(BaseModel):
    jobId: str


class JobResponse(BaseModel):
    """Response model for an import job."""
    id: str
    type: str
    status: str
    progress: int
    total: int
    error: Optional[str]
    createdAt: datetime
    updatedAt: datetime


@router.post("", response_model=StartImportResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    request: StartImportRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_database),
):
    """
    Create an import job and run it in the background.

    Poll ``GET /api/admin/import?jobId=...`` for progress.
    """
    if not request.importAll and request.limit is None:
        raise HTTPException(
            status_code=400,
            detail="Must provide a numeric limit when not importing all",
        )
    if request.limit is not None and request.limit <= 0:
        raise HTTPException(status_code=400, detail="limit must be positive")

    try:
        job = await create_import_job(db)
    except SQLAlchemyError as e:
        logger.error(f"Failed to create import job: {e}")
        raise HTTPException(status_code=500, detail="Failed to start import")

    logger.info(f"Created import job {job.id} (limit={request.limit}, importAll={request.importAll})")
    background_tasks.add_task(
        import_orchestrator.run,
        job.id,
        limit=request.limit,
        import_all=request.importAll,
    )
    return StartImportResponse(jobId=job.id)


@router.get("", response_model=JobResponse)
async def get_import_job(
    jobId: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_database),
):
    """Get an import job's status."""
    if not jobId:
        raise HTTPException(status_code=400, detail="Missing jobId")

    job = await get_job(db, jobId)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobResponse(
        id=job.id,
        type=job.type,
        status=job.status,
        progress=job.progress,
        total=job.total,
        error=job.error,
        createdAt=job.created_at,
        updatedAt=job.updated_at,
    )
