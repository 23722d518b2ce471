"""
Append-only error log backed by the sync_errors table
"""

from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.exceptions import SyncException
from core.timeutils import utcnow
from models.sync_error import SyncError

logger = logging.getLogger(__name__)


class ErrorLog:
    """
    Record failures for diagnosis.

    Rows are only ever inserted. ``record`` flushes but does not commit, so
    an error written inside a larger unit of work lands with it.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def record(
        self,
        sync_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> SyncError:
        error = SyncError(
            sync_type=sync_type,
            error_message=message,
            error_data=data or {},
            created_at=utcnow(),
        )
        self.db.add(error)
        await self.db.flush()
        return error

    async def record_exception(self, sync_type: str, exc: Exception) -> SyncError:
        if isinstance(exc, SyncException):
            return await self.record(sync_type, exc.message, exc.to_dict())
        return await self.record(
            sync_type,
            str(exc),
            {"error_type": type(exc).__name__, "message": str(exc)},
        )

    async def recent(self, limit: int = 50, sync_type: Optional[str] = None) -> List[SyncError]:
        query = select(SyncError).order_by(SyncError.created_at.desc(), SyncError.id.desc())
        if sync_type:
            query = query.where(SyncError.sync_type == sync_type)
        result = await self.db.execute(query.limit(limit))
        return list(result.scalars().all())
