"""
Read-only sync monitoring endpoints
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db
from catalog_sync.dashboard import sync_dashboard
from catalog_sync.error_log import ErrorLog
from catalog_sync.resolver import RelationshipResolver
from schemas.api import DeferredReportResponse, SyncDashboardRow, SyncErrorEntry

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.get("/dashboard", response_model=List[SyncDashboardRow])
async def get_dashboard(db: AsyncSession = Depends(get_db)):
    """Per-entity-type progress, freshness and backlog."""
    return await sync_dashboard(db)


@router.get("/errors", response_model=List[SyncErrorEntry])
async def get_errors(
    limit: int = Query(50, ge=1, le=500),
    sync_type: Optional[str] = Query(None, description="Filter by sync type, e.g. product_sync"),
    db: AsyncSession = Depends(get_db),
):
    errors = await ErrorLog(db).recent(limit=limit, sync_type=sync_type)
    return [SyncErrorEntry.model_validate(error) for error in errors]


@router.get("/deferred/report", response_model=DeferredReportResponse)
async def get_deferred_report(
    abandoned_only: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    """Deferred relationships that are still unresolved."""
    entries = await RelationshipResolver(db).repair_report(include_pending=not abandoned_only)
    return DeferredReportResponse(
        total=len(entries),
        abandoned=sum(1 for entry in entries if entry.abandoned),
        entries=entries,
    )
