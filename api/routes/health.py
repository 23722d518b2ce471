"""
Health check endpoint with database and sync state status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, SyncStateInfo
from models.base import ChunkStatus
from models.sync_state import SyncState
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Sync state summary for every entity type
    """

    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    sync_states = []
    failed = 0

    if db_connected:
        try:
            result = await db.execute(select(SyncState).order_by(SyncState.entity_type))
            for state in result.scalars().all():
                if state.chunk_status == ChunkStatus.ERROR:
                    failed += 1
                sync_states.append(SyncStateInfo.model_validate(state))
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch sync states: {str(e)}")

    return HealthCheckResponse(
        database_connected=db_connected,
        sync_states=sync_states,
        total_entity_types=len(sync_states),
        failed_entity_types=failed,
    )
