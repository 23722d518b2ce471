"""
Queueing policies: decide which entity types and pages are due and enqueue them.

steady      at most one page in flight per entity type
aggressive  several pages ahead, only when nothing is in flight for the
            entity type, capped at AGGRESSIVE_MAX_IN_FLIGHT and total_pages

``smart_sync_requester`` arbitrates between the two per entity type: the
aggressive policy runs only when the entity type is idle (nothing queued,
chunk not fetching or processing) and at least AGGRESSIVE_BACKLOG_THRESHOLD
known pages remain; everything else goes through the steady policy.
"""

from typing import Iterable, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import RequestBuildError
from core.timeutils import epoch_seconds
from catalog_sync.queue import TaskQueue
from catalog_sync.registry import resolve_entity_type
from catalog_sync.requests import resolve_format
from catalog_sync.state import SyncStateTracker, ACTIVE_STATUSES
from models.base import EntityType
from models.sync_state import SyncState
from schemas.sync import DispatchResult, QueuePolicy, SyncTask

logger = logging.getLogger(__name__)


class SyncDispatcher:
    def __init__(
        self,
        db_session: AsyncSession,
        queue: Optional[TaskQueue] = None,
        tracker: Optional[SyncStateTracker] = None,
        max_in_flight: Optional[int] = None,
        backlog_threshold: Optional[int] = None,
        resync_interval_hours: Optional[float] = None,
    ):
        self.db = db_session
        self.queue = queue or TaskQueue(db_session)
        self.tracker = tracker or SyncStateTracker(db_session)
        self.max_in_flight = max_in_flight or settings.AGGRESSIVE_MAX_IN_FLIGHT
        self.backlog_threshold = backlog_threshold or settings.AGGRESSIVE_BACKLOG_THRESHOLD
        self.resync_interval_hours = (
            settings.RESYNC_INTERVAL_HOURS if resync_interval_hours is None else resync_interval_hours
        )

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def queue_sync_tasks(self, entity_types: Optional[Iterable] = None) -> DispatchResult:
        """Steady policy: the next page of every idle entity type."""
        result = DispatchResult()
        for entity_type in await self._entity_types(entity_types):
            await self._queue_steady(entity_type, result)
        self._log(QueuePolicy.STEADY, result)
        return result

    async def queue_sync_tasks_aggressive(self, entity_types: Optional[Iterable] = None) -> DispatchResult:
        """Aggressive policy: several pages ahead for every idle entity type."""
        result = DispatchResult()
        for entity_type in await self._entity_types(entity_types):
            await self._queue_aggressive(entity_type, result)
        self._log(QueuePolicy.AGGRESSIVE, result)
        return result

    async def queue_products_aggressively(self) -> DispatchResult:
        return await self.queue_sync_tasks_aggressive([EntityType.PRODUCT])

    async def smart_sync_requester(self, entity_types: Optional[Iterable] = None) -> DispatchResult:
        """Pick a policy per entity type and enqueue accordingly."""
        result = DispatchResult()
        for entity_type in await self._entity_types(entity_types):
            state = await self.tracker.get_state(entity_type)
            in_flight = await self.queue.in_flight(entity_type.value)
            if self.should_drain_aggressively(state, in_flight):
                await self._queue_aggressive(entity_type, result)
            else:
                await self._queue_steady(entity_type, result)
        logger.info(f"Smart requester queued {result.queued} task(s); skipped {len(result.skipped)}")
        return result

    def should_drain_aggressively(self, state: SyncState, in_flight: int) -> bool:
        if in_flight > 0 or state.chunk_status in ACTIVE_STATUSES:
            return False
        if not state.has_more_pages or not state.total_pages:
            return False
        return state.total_pages - state.current_page >= self.backlog_threshold

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _entity_types(self, entity_types: Optional[Iterable]) -> List[EntityType]:
        await self.tracker.ensure_states()
        if entity_types is None:
            return list(EntityType)
        return [resolve_entity_type(entity_type) for entity_type in entity_types]

    def _resync_due(self, state: SyncState) -> bool:
        if state.last_sync_timestamp is None:
            return True
        age_hours = (epoch_seconds() - state.last_sync_timestamp) / 3600
        return age_hours >= self.resync_interval_hours

    async def _blocked(self, state: SyncState, result: DispatchResult) -> bool:
        key = state.entity_type.value
        if await self.queue.in_flight(key) > 0:
            result.skipped[key] = "in_flight"
            return True
        if state.chunk_status in ACTIVE_STATUSES:
            result.skipped[key] = state.chunk_status.value
            return True
        return False

    async def _queue_steady(self, entity_type: EntityType, result: DispatchResult):
        state = await self.tracker.get_state(entity_type)
        if await self._blocked(state, result):
            return

        if not state.has_more_pages:
            if not self._resync_due(state):
                result.skipped[entity_type.value] = "up_to_date"
                return
            state = await self.tracker.restart_cycle(entity_type)

        await self._enqueue_pages(entity_type, [state.next_page], QueuePolicy.STEADY, result)

    async def _queue_aggressive(self, entity_type: EntityType, result: DispatchResult):
        state = await self.tracker.get_state(entity_type)
        if await self._blocked(state, result):
            return

        if not state.has_more_pages:
            result.skipped[entity_type.value] = "no_more_pages"
            return

        start = state.next_page
        if state.total_pages:
            last = min(start + self.max_in_flight - 1, state.total_pages)
        else:
            # page count unknown until the first page is processed
            last = start
        if last < start:
            result.skipped[entity_type.value] = "no_more_pages"
            return

        await self._enqueue_pages(entity_type, list(range(start, last + 1)), QueuePolicy.AGGRESSIVE, result)

    async def _enqueue_pages(self, entity_type: EntityType, pages: List[int], policy: QueuePolicy, result: DispatchResult):
        try:
            payload_format = resolve_format(entity_type)
        except RequestBuildError as e:
            logger.error(
                f"Cannot queue {entity_type.value}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            result.skipped[entity_type.value] = "request_build_error"
            return

        for page in pages:
            task = SyncTask(entity_type=entity_type, page=page, payload_format=payload_format, policy=policy)
            await self.queue.enqueue(task)
            result.tasks.append(task)

        await self.tracker.mark_dispatched(entity_type, pages[-1])

    def _log(self, policy: QueuePolicy, result: DispatchResult):
        logger.info(
            f"{policy.value.capitalize()} policy queued {result.queued} task(s): "
            + ", ".join(f"{t.entity_type.value}#{t.page}" for t in result.tasks)
        )
