"""
Recovery Supervisor: the only component allowed to force another
component's state back.

- reset_stuck_syncs: chunks left fetching/processing past a threshold go
  back to idle so the dispatcher can queue them again
- clear_response_backlog: staged responses are processed, and the ones that
  keep failing are abandoned with a sync_errors entry
"""

from datetime import timedelta
from typing import List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.timeutils import utcnow
from catalog_sync.error_log import ErrorLog
from catalog_sync.processor import ResponseProcessor
from catalog_sync.state import SyncStateTracker
from models.base import EntityType
from models.sync_response import SyncResponse
from schemas.sync import BacklogReport, StuckSyncReport

logger = logging.getLogger(__name__)


class RecoverySupervisor:
    def __init__(
        self,
        db_session: AsyncSession,
        tracker: Optional[SyncStateTracker] = None,
        processor: Optional[ResponseProcessor] = None,
        error_log: Optional[ErrorLog] = None,
    ):
        self.db = db_session
        self.error_log = error_log or ErrorLog(db_session)
        self.tracker = tracker or SyncStateTracker(db_session)
        self.processor = processor or ResponseProcessor(
            db_session, tracker=self.tracker, error_log=self.error_log
        )

    async def reset_stuck_syncs(self, hours_threshold: Optional[float] = None) -> List[StuckSyncReport]:
        """
        Reset every sync state that has been fetching or processing for
        longer than ``hours_threshold`` hours.

        Returns:
            One report per entity type; ``was_stuck`` is True only for the
            rows that were reset
        """
        hours = settings.STUCK_HOURS_THRESHOLD if hours_threshold is None else hours_threshold
        cutoff = utcnow() - timedelta(hours=hours)

        await self.tracker.ensure_states()
        reports = []
        for entity_type in EntityType:
            was_stuck = await self.tracker.reset_if_stuck(entity_type, cutoff)
            if was_stuck:
                logger.warning(f"Reset stuck sync for {entity_type.value} (no progress for {hours}h)")
            reports.append(StuckSyncReport(entity_type=entity_type, was_stuck=was_stuck))

        return reports

    async def clear_response_backlog(self, max_attempts: Optional[int] = None, limit: Optional[int] = None) -> BacklogReport:
        max_attempts = max_attempts or settings.RESPONSE_MAX_ATTEMPTS
        report = BacklogReport()

        result = await self.db.execute(
            select(SyncResponse)
            .where(SyncResponse.processed.is_(False), SyncResponse.attempts >= max_attempts)
            .execution_options(populate_existing=True)
        )
        for response in result.scalars().all():
            response.processed = True
            response.processed_at = utcnow()
            response.error_message = (
                f"Abandoned after {response.attempts} attempts: {response.error_message or 'unknown error'}"
            )[:2000]
            await self.error_log.record(
                f"{response.entity_type.value}_sync",
                f"Abandoned staged response for page {response.page}",
                {
                    "response_id": response.id,
                    "entity_type": response.entity_type.value,
                    "page": response.page,
                    "attempts": response.attempts,
                },
            )
            report.abandoned += 1
        await self.db.commit()

        stats = await self.processor.process_pending_responses(limit=limit)
        report.processed = stats["processed"]
        report.failed = stats["failed"]
        report.remaining = await self.processor.pending_count()

        logger.info(
            f"Response backlog: processed={report.processed} failed={report.failed} "
            f"abandoned={report.abandoned} remaining={report.remaining}"
        )
        return report
