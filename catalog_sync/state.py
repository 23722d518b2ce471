"""
Sync State Tracker: per-entity-type cursor and chunk status.

Every write is a compare-and-set on ``updated_at``::

    UPDATE sync_state SET ..., updated_at = :new
    WHERE entity_type = :entity_type AND updated_at = :expected

A writer that loses the race reloads the row and re-plans its change, up to
STATE_CAS_MAX_RETRIES times. ``updated_at`` strictly increases on every
write, so two writers can never both succeed against the same snapshot.

Chunk lifecycle::

    idle -> fetching -> processing -> done | error -> idle (next cycle)

A fetching or processing chunk only goes back to idle through
``reset_if_stuck``, which the recovery supervisor owns.

Late arrivals (a response for page N processed after the row already moved
on) reach their target by walking each intermediate hop; a hop is never
skipped.
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import StateConflictError, StateTransitionError
from core.timeutils import utcnow, epoch_seconds
from catalog_sync.registry import resolve_entity_type
from catalog_sync.sql import upsert
from models.base import ChunkStatus, EntityType, SyncResultStatus
from models.sync_state import SyncState

logger = logging.getLogger(__name__)

# FETCHING and PROCESSING re-enter themselves when several pages of the same
# entity type are in flight at once
ALLOWED_TRANSITIONS: Dict[ChunkStatus, Tuple[ChunkStatus, ...]] = {
    ChunkStatus.IDLE: (ChunkStatus.FETCHING,),
    ChunkStatus.FETCHING: (ChunkStatus.FETCHING, ChunkStatus.PROCESSING, ChunkStatus.ERROR),
    ChunkStatus.PROCESSING: (ChunkStatus.PROCESSING, ChunkStatus.DONE, ChunkStatus.ERROR),
    ChunkStatus.DONE: (ChunkStatus.IDLE,),
    ChunkStatus.ERROR: (ChunkStatus.IDLE,),
}

# forced resets, only taken by reset_if_stuck
RECOVERY_TRANSITIONS: Dict[ChunkStatus, Tuple[ChunkStatus, ...]] = {
    ChunkStatus.IDLE: (),
    ChunkStatus.FETCHING: (ChunkStatus.IDLE,),
    ChunkStatus.PROCESSING: (ChunkStatus.IDLE,),
    ChunkStatus.DONE: (),
    ChunkStatus.ERROR: (),
}

ACTIVE_STATUSES = (ChunkStatus.FETCHING, ChunkStatus.PROCESSING)

# (target status or None to keep it, column values) or None for no write
Plan = Optional[Tuple[Optional[ChunkStatus], Dict[str, Any]]]


def plan_path(
    current: ChunkStatus,
    target: ChunkStatus,
    walk: bool = False,
    transitions: Dict[ChunkStatus, Tuple[ChunkStatus, ...]] = ALLOWED_TRANSITIONS,
) -> List[ChunkStatus]:
    """
    Statuses to pass through to reach ``target``, ending with ``target``.

    Raises:
        StateTransitionError: not a direct transition and walking is off
    """
    if target in transitions[current]:
        return [target]
    if not walk:
        raise StateTransitionError(
            f"Invalid chunk transition {current.value} -> {target.value}",
            context={"from_status": current.value, "to_status": target.value}
        )

    # shortest path through the lifecycle graph
    parents = {current: None}
    queue = deque([current])
    while queue:
        node = queue.popleft()
        for nxt in transitions[node]:
            if nxt in parents:
                continue
            parents[nxt] = node
            if nxt == target:
                path = [nxt]
                while parents[path[-1]] != current:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            queue.append(nxt)

    raise StateTransitionError(
        f"No chunk transition path {current.value} -> {target.value}",
        context={"from_status": current.value, "to_status": target.value}
    )


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class SyncStateTracker:
    """
    Sole writer of sync_state rows.

    Each public write commits the session on success. Callers that stage
    other writes in the same session get them committed atomically with the
    state change.
    """

    def __init__(self, db_session: AsyncSession, max_retries: Optional[int] = None):
        self.db = db_session
        self.max_retries = max_retries or settings.STATE_CAS_MAX_RETRIES

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def ensure_states(self) -> List[SyncState]:
        """Create the missing sync_state rows, one per entity type."""
        now = utcnow()
        await upsert(
            self.db,
            SyncState,
            [self._initial_row(entity_type, now) for entity_type in EntityType],
            index_elements=["entity_type"],
        )
        await self.db.commit()
        return await self.list_states()

    async def get_state(self, entity_type) -> SyncState:
        entity_type = resolve_entity_type(entity_type)
        state = await self._load(entity_type)
        if state is None:
            await upsert(
                self.db,
                SyncState,
                [self._initial_row(entity_type, utcnow())],
                index_elements=["entity_type"],
            )
            await self.db.commit()
            state = await self._load(entity_type)
        return state

    async def list_states(self) -> List[SyncState]:
        result = await self.db.execute(
            select(SyncState)
            .order_by(SyncState.entity_type)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def current_cursor(self, entity_type) -> int:
        """Highest page processed in the current pass (0 before the first)."""
        state = await self.get_state(entity_type)
        return state.current_page

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def begin_fetch(self, entity_type, page: Optional[int] = None) -> SyncState:
        """
        Mark the chunk as fetching. A finished chunk passes through idle first;
        a chunk already processing another page stays processing.
        """
        def plan(state: SyncState) -> Plan:
            if state.chunk_status == ChunkStatus.PROCESSING:
                return None, {}
            return ChunkStatus.FETCHING, {}

        return await self._transition(entity_type, plan, walk=True)

    async def begin_processing(self, entity_type, page: Optional[int] = None) -> SyncState:
        return await self._transition(entity_type, lambda s: (ChunkStatus.PROCESSING, {}), walk=True)

    async def advance(
        self,
        entity_type,
        completed_page: int,
        has_more_pages: bool,
        succeeded: int = 0,
        failed: int = 0,
        total_pages: Optional[int] = None,
    ) -> SyncState:
        """
        Record a processed page and mark the chunk done.

        ``current_page`` only moves forward: a page that completes after a
        higher one keeps the higher cursor and does not overwrite
        ``has_more_pages``.
        """
        if completed_page < 1:
            raise ValueError(f"completed_page must be >= 1, got {completed_page}")

        def plan(state: SyncState) -> Plan:
            is_latest = completed_page >= state.current_page
            more = has_more_pages if is_latest else state.has_more_pages
            if failed:
                result_status = SyncResultStatus.PARTIAL
            elif more:
                result_status = SyncResultStatus.IN_PROGRESS
            else:
                result_status = SyncResultStatus.COMPLETED

            values = {
                "current_page": max(state.current_page, completed_page),
                "dispatched_page": max(state.dispatched_page, completed_page),
                "has_more_pages": more,
                "last_sync_status": result_status.value,
                "last_sync_timestamp": epoch_seconds(),
                "last_batch_succeeded": succeeded,
                "last_batch_failed": failed,
                "total_items_synced": state.total_items_synced + succeeded,
            }
            if total_pages is not None:
                values["total_pages"] = total_pages
            return ChunkStatus.DONE, values

        state = await self._transition(entity_type, plan, walk=True)
        logger.info(
            f"Advanced {state.entity_type.value} to page {state.current_page} "
            f"(completed={completed_page}, has_more={state.has_more_pages}, "
            f"succeeded={succeeded}, failed={failed})"
        )
        return state

    async def mark_result(self, entity_type, status, timestamp: Optional[int] = None) -> SyncState:
        """Record the outcome of a pass without touching the cursor."""
        status_value = status.value if isinstance(status, SyncResultStatus) else str(status)
        stamp = timestamp if timestamp is not None else epoch_seconds()
        return await self._transition(
            entity_type,
            lambda s: (None, {"last_sync_status": status_value, "last_sync_timestamp": stamp}),
        )

    async def mark_error(self, entity_type, message: Optional[str] = None) -> SyncState:
        """
        Move an active chunk to ``error``.

        The dispatch cursor falls back to the processed cursor so the failed
        page is requested again.
        """
        def plan(state: SyncState) -> Plan:
            return ChunkStatus.ERROR, {
                "dispatched_page": state.current_page,
                "last_sync_status": SyncResultStatus.FAILED.value,
                "last_sync_timestamp": epoch_seconds(),
            }

        state = await self._transition(entity_type, plan)
        logger.warning(f"Sync state for {state.entity_type.value} marked error: {message}")
        return state

    async def mark_dispatched(self, entity_type, page: int) -> SyncState:
        """Record that pages up to ``page`` are queued; a finished chunk goes idle."""
        def plan(state: SyncState) -> Plan:
            target = ChunkStatus.IDLE if state.chunk_status in (ChunkStatus.DONE, ChunkStatus.ERROR) else None
            return target, {"dispatched_page": max(state.dispatched_page, page)}

        return await self._transition(entity_type, plan)

    async def restart_cycle(self, entity_type) -> SyncState:
        """
        Start a new pass from page 1.

        ``sync_count`` increments, so (sync_count, current_page) keeps
        increasing even though the page cursor starts over.
        """
        def plan(state: SyncState) -> Plan:
            if state.chunk_status in ACTIVE_STATUSES:
                raise StateTransitionError(
                    f"Cannot restart {state.entity_type.value} while {state.chunk_status.value}",
                    context={"entity_type": state.entity_type.value, "chunk_status": state.chunk_status.value}
                )
            target = ChunkStatus.IDLE if state.chunk_status != ChunkStatus.IDLE else None
            return target, {
                "sync_count": state.sync_count + 1,
                "current_page": 0,
                "dispatched_page": 0,
                "has_more_pages": True,
            }

        state = await self._transition(entity_type, plan)
        logger.info(f"Started sync pass {state.sync_count} for {state.entity_type.value}")
        return state

    async def reset_if_stuck(self, entity_type, older_than: datetime) -> bool:
        """
        Force an active chunk that has not moved since ``older_than`` back to idle.

        Returns True when the row was reset. Only the recovery supervisor
        calls this.
        """
        outcome = {"reset": False}

        def plan(state: SyncState) -> Plan:
            outcome["reset"] = False
            if state.chunk_status not in ACTIVE_STATUSES or state.updated_at >= older_than:
                return None
            outcome["reset"] = True
            return ChunkStatus.IDLE, {
                "dispatched_page": state.current_page,
                "last_sync_status": SyncResultStatus.RESET.value,
            }

        await self._transition(entity_type, plan, transitions=RECOVERY_TRANSITIONS)
        return outcome["reset"]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _initial_row(entity_type: EntityType, now: datetime) -> Dict[str, Any]:
        return {
            "entity_type": entity_type,
            "current_page": 0,
            "dispatched_page": 0,
            "has_more_pages": True,
            "chunk_status": ChunkStatus.IDLE,
            "sync_count": 0,
            "last_batch_succeeded": 0,
            "last_batch_failed": 0,
            "total_items_synced": 0,
            "created_at": now,
            "updated_at": now,
        }

    async def _load(self, entity_type: EntityType) -> Optional[SyncState]:
        result = await self.db.execute(
            select(SyncState)
            .where(SyncState.entity_type == entity_type)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _compare_and_set(
        self,
        entity_type: EntityType,
        expected: datetime,
        values: Dict[str, Any],
    ) -> Optional[datetime]:
        new_updated_at = _next_timestamp(expected)
        result = await self.db.execute(
            update(SyncState)
            .where(
                SyncState.entity_type == entity_type,
                SyncState.updated_at == expected,
            )
            .values(updated_at=new_updated_at, **values)
            .execution_options(synchronize_session=False)
        )
        return new_updated_at if result.rowcount == 1 else None

    async def _transition(
        self,
        entity_type,
        planner: Callable[[SyncState], Plan],
        walk: bool = False,
        transitions: Dict[ChunkStatus, Tuple[ChunkStatus, ...]] = ALLOWED_TRANSITIONS,
    ) -> SyncState:
        entity_type = resolve_entity_type(entity_type)

        for attempt in range(self.max_retries):
            state = await self.get_state(entity_type)
            plan = planner(state)
            if plan is None:
                return state

            target, values = plan
            path = plan_path(state.chunk_status, target, walk, transitions) if target is not None else []
            expected = state.updated_at

            # intermediate hops first, each one its own compare-and-set
            for hop in path[:-1]:
                expected = await self._compare_and_set(entity_type, expected, {"chunk_status": hop})
                if expected is None:
                    break
            else:
                if target is not None:
                    values = {**values, "chunk_status": target}
                if await self._compare_and_set(entity_type, expected, values) is not None:
                    await self.db.commit()
                    return await self._load(entity_type)

            logger.debug(
                f"Sync state compare-and-set lost for {entity_type.value} "
                f"(attempt {attempt + 1}/{self.max_retries})"
            )

        raise StateConflictError(
            f"Sync state for {entity_type.value} kept changing under concurrent writers",
            context={"entity_type": entity_type.value, "attempts": self.max_retries},
            max_retries=self.max_retries
        )
