"""Category sync API endpoints."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from catalog_ingest.api.deps import require_admin_api_key
from catalog_ingest.ingest.category_sync import CategorySync
from catalog_ingest.ingest.errors import FetchError
from catalog_ingest.ingest.types import SyncReport

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/categories",
    tags=["categories"],
    dependencies=[Depends(require_admin_api_key)],
)


class SyncRequest(BaseModel):
    """Request model for category sync."""
    url: str


class CategoryChangeResponse(BaseModel):
    type: str
    name: str
    parentName: Optional[str] = None
    description: Optional[str] = None
    oldValues: Optional[Dict[str, Any]] = None


class SyncReportResponse(BaseModel):
    """Response model for a sync or preview report."""
    changes: List[CategoryChangeResponse]
    summary: Dict[str, int]


def get_category_sync() -> CategorySync:
    return CategorySync()


def _to_response(report: SyncReport) -> SyncReportResponse:
    return SyncReportResponse(
        changes=[
            CategoryChangeResponse(
                type=c.type,
                name=c.name,
                parentName=c.parent_name,
                description=c.description,
                oldValues=c.old_values,
            )
            for c in report.changes
        ],
        summary=report.summary,
    )


@router.post("/sync/preview", response_model=SyncReportResponse)
async def preview_category_sync(
    request: SyncRequest,
    category_sync: CategorySync = Depends(get_category_sync),
):
    """Show what a category sync would change; nothing is written."""
    try:
        report = await category_sync.preview_sync(request.url)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FetchError as e:
        logger.error(f"Category preview fetch failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return _to_response(report)


@router.post("/sync", response_model=SyncReportResponse)
async def run_category_sync(
    request: SyncRequest,
    category_sync: CategorySync = Depends(get_category_sync),
):
    """Apply the source's category tree to the catalog."""
    try:
        report = await category_sync.sync(request.url)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FetchError as e:
        logger.error(f"Category sync fetch failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return _to_response(report)
