"""
On-demand maintenance routines (the same routines the scheduler runs)
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db
from catalog_sync.dispatcher import SyncDispatcher
from catalog_sync.recovery import RecoverySupervisor
from catalog_sync.resolver import RelationshipResolver
from core.config import settings
from core.exceptions import SyncException, UnknownEntityTypeError
from models.deferred import DeferredRelationship
from schemas.api import (
    BacklogResponse,
    ProcessDeferredResponse,
    QueueTasksResponse,
    RepairResponse,
    ResetStuckSyncsResponse,
)
from schemas.sync import QueuePolicy
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/maintenance", tags=["Maintenance"])


@router.post("/reset-stuck-syncs", response_model=ResetStuckSyncsResponse)
async def reset_stuck_syncs(
    hours_threshold: Optional[float] = Query(None, gt=0),
    db: AsyncSession = Depends(get_db),
):
    hours = hours_threshold or settings.STUCK_HOURS_THRESHOLD
    results = await RecoverySupervisor(db).reset_stuck_syncs(hours)
    return ResetStuckSyncsResponse(hours_threshold=hours, results=results)


@router.post("/process-deferred", response_model=ProcessDeferredResponse)
async def process_deferred(
    until_fixpoint: bool = Query(True),
    batch_size: Optional[int] = Query(None, ge=1, le=10000),
    db: AsyncSession = Depends(get_db),
):
    resolver = RelationshipResolver(db)
    if until_fixpoint:
        resolved = await resolver.process_until_fixpoint(batch_size)
    else:
        resolved = await resolver.process_deferred(batch_size)

    remaining = (await db.execute(
        select(func.count()).select_from(DeferredRelationship)
    )).scalar_one()
    return ProcessDeferredResponse(resolved=resolved, remaining=remaining)


@router.post("/repair-product-relationships", response_model=RepairResponse)
async def repair_product_relationships(db: AsyncSession = Depends(get_db)):
    resolver = RelationshipResolver(db)
    summaries = [
        await resolver.repair_product_relationships(),
        await resolver.repair_brand_relationships(),
    ]
    return RepairResponse(summaries=summaries)


@router.post("/repair-category-parents", response_model=RepairResponse)
async def repair_category_parents(db: AsyncSession = Depends(get_db)):
    summary = await RelationshipResolver(db).repair_category_parent_relationships()
    return RepairResponse(summaries=[summary])


@router.post("/clear-response-backlog", response_model=BacklogResponse)
async def clear_response_backlog(db: AsyncSession = Depends(get_db)):
    report = await RecoverySupervisor(db).clear_response_backlog()
    return BacklogResponse(**report.model_dump())


@router.post("/queue-sync-tasks", response_model=QueueTasksResponse)
async def queue_sync_tasks(
    policy: str = Query("smart", description="smart, steady, aggressive or products"),
    entity_type: Optional[List[str]] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    dispatcher = SyncDispatcher(db)
    try:
        if policy == "smart":
            result = await dispatcher.smart_sync_requester(entity_type)
        elif policy == QueuePolicy.STEADY.value:
            result = await dispatcher.queue_sync_tasks(entity_type)
        elif policy == QueuePolicy.AGGRESSIVE.value:
            result = await dispatcher.queue_sync_tasks_aggressive(entity_type)
        elif policy == "products":
            result = await dispatcher.queue_products_aggressively()
        else:
            raise HTTPException(status_code=400, detail=f"Unknown policy: {policy}")
    except UnknownEntityTypeError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except SyncException as e:
        logger.error(f"Queueing failed: {e}", extra={"error_context": e.to_dict()})
        raise HTTPException(status_code=409, detail=e.message)

    return QueueTasksResponse(
        policy=policy,
        queued=result.queued,
        tasks=result.tasks,
        skipped=result.skipped,
    )
