"""
Read-only per-entity-type sync overview (the ``sync_dashboard`` view).
"""

from typing import List
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.timeutils import epoch_seconds
from catalog_sync.registry import ENTITY_SPECS
from models.deferred import DeferredRelationship
from models.queue import QueueMessage
from models.sync_state import SyncState
from schemas.api import SyncDashboardRow

logger = logging.getLogger(__name__)


async def sync_dashboard(db: AsyncSession) -> List[SyncDashboardRow]:
    """One row per entity type that has a sync state."""
    states = (await db.execute(select(SyncState).order_by(SyncState.entity_type))).scalars().all()

    queued = dict((await db.execute(
        select(QueueMessage.message_group, func.count())
        .where(QueueMessage.queue_name == settings.SYNC_QUEUE_NAME)
        .group_by(QueueMessage.message_group)
    )).all())

    deferred = {
        entity_type: count
        for entity_type, count in (await db.execute(
            select(DeferredRelationship.entity_type, func.count())
            .where(DeferredRelationship.abandoned.is_(False))
            .group_by(DeferredRelationship.entity_type)
        )).all()
    }

    now = epoch_seconds()
    rows = []
    for state in states:
        model = ENTITY_SPECS[state.entity_type].model
        items_synced = (await db.execute(select(func.count()).select_from(model))).scalar_one()

        minutes = None
        if state.last_sync_timestamp is not None:
            minutes = round((now - state.last_sync_timestamp) / 60, 1)

        rows.append(SyncDashboardRow(
            entity_type=state.entity_type,
            current_page=state.current_page,
            items_synced=items_synced,
            last_sync_at=state.last_sync_timestamp,
            last_sync_status=state.last_sync_status,
            minutes_since_last_sync=minutes,
            chunk_status=state.chunk_status,
            total_pages=state.total_pages,
            sync_count=state.sync_count,
            queued_tasks=queued.get(state.entity_type.value, 0),
            pending_deferred=deferred.get(state.entity_type, 0),
        ))

    return rows
