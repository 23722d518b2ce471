"""
Sync worker: takes one task off the queue and carries it through
fetch, staging and ingestion.

    dequeue -> begin_fetch -> build_request -> fetch -> stage response
            -> ack -> process_response (ingest + advance)

Failure handling:
- retryable (network, timeout, 5xx, 429, lost state race): nack with
  exponential backoff until MAX_TASK_ATTEMPTS, then archive
- non-retryable (auth, 404, bad request, unknown entity type): archive now
- every archive writes a sync_errors row and marks the chunk as error
"""

from typing import Any, Dict, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import (
    NonRetryableError,
    RateLimitError,
    RetryableError,
    StateConflictError,
    StateTransitionError,
    SyncException,
)
from catalog_sync.client import MedipimClient
from catalog_sync.error_log import ErrorLog
from catalog_sync.processor import ResponseProcessor
from catalog_sync.queue import TaskQueue
from catalog_sync.requests import build_request
from catalog_sync.state import SyncStateTracker
from schemas.sync import ReceivedTask

logger = logging.getLogger(__name__)


def retry_delay(attempts: int, base: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Exponential backoff in seconds for the given delivery count (1-based)."""
    base = base or settings.TASK_RETRY_BASE_DELAY_SECONDS
    maximum = maximum or settings.TASK_RETRY_MAX_DELAY_SECONDS
    return min(base * (2 ** max(attempts - 1, 0)), maximum)


class SyncWorker:
    def __init__(
        self,
        db_session: AsyncSession,
        client: Optional[MedipimClient] = None,
        queue: Optional[TaskQueue] = None,
        tracker: Optional[SyncStateTracker] = None,
        processor: Optional[ResponseProcessor] = None,
        error_log: Optional[ErrorLog] = None,
        max_attempts: Optional[int] = None,
    ):
        self.db = db_session
        self.client = client or MedipimClient()
        self.queue = queue or TaskQueue(db_session)
        self.error_log = error_log or ErrorLog(db_session)
        self.tracker = tracker or SyncStateTracker(db_session)
        self.processor = processor or ResponseProcessor(
            db_session, tracker=self.tracker, error_log=self.error_log
        )
        self.max_attempts = max_attempts or settings.MAX_TASK_ATTEMPTS

    async def process_sync_task(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Process at most one task.

        Returns:
            None when no task arrived within ``timeout``, otherwise a dict with
            msg_id, entity_type, page and status (processed, ingest_failed,
            retrying, archived)
        """
        received = await self.queue.dequeue(timeout=timeout)
        if received is None:
            return None

        task = received.task
        outcome = {"msg_id": received.msg_id, "entity_type": task.entity_type.value, "page": task.page}
        logger.info(
            f"Processing {task.entity_type.value} page {task.page} "
            f"(msg {received.msg_id}, attempt {received.attempts})"
        )

        try:
            await self.tracker.begin_fetch(task.entity_type, task.page)
            request = build_request(task.entity_type, task.page, task.payload_format)
            body = await self.client.fetch(request)
            response = await self.processor.stage_response(request, body, queue_msg_id=received.msg_id)

        except RetryableError as e:
            await self.db.rollback()
            outcome["status"] = await self._retry_or_archive(received, e)
            return outcome

        except NonRetryableError as e:
            await self.db.rollback()
            await self._archive(received, e)
            outcome["status"] = "archived"
            return outcome

        # the response is durable; the task is done even if ingestion fails later
        await self.queue.ack(received.msg_id)

        result = await self.processor.process_response(response)
        if result is None:
            outcome["status"] = "ingest_failed"
            return outcome

        outcome.update(status="processed", **result.model_dump())
        return outcome

    async def process_sync_tasks_batch(self, max_tasks: Optional[int] = None, timeout: float = 0) -> Dict[str, int]:
        """Drain up to ``max_tasks`` tasks; stops early when the queue is empty."""
        max_tasks = max_tasks or settings.WORKER_BATCH_SIZE
        stats = {"processed": 0, "ingest_failed": 0, "retrying": 0, "archived": 0}

        for _ in range(max_tasks):
            outcome = await self.process_sync_task(timeout=timeout)
            if outcome is None:
                break
            stats[outcome["status"]] += 1

        logger.info(f"Worker batch finished: {stats}")
        return stats

    async def _retry_or_archive(self, received: ReceivedTask, error: RetryableError) -> str:
        if received.attempts >= self.max_attempts:
            error.context["attempts"] = received.attempts
            await self._archive(received, error)
            return "archived"

        delay = retry_delay(received.attempts)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)

        logger.warning(
            f"Retrying {received.task.entity_type.value} page {received.task.page} in {delay}s "
            f"(attempt {received.attempts}/{self.max_attempts}): {error.message}",
            extra={"error_context": error.to_dict()}
        )
        await self.queue.nack(received.msg_id, delay)
        return "retrying"

    async def _archive(self, received: ReceivedTask, error: SyncException):
        task = received.task
        error.context.update({"msg_id": received.msg_id, "page": task.page, "entity_type": task.entity_type.value})
        logger.error(
            f"Giving up on {task.entity_type.value} page {task.page}: {error.message}",
            extra={"error_context": error.to_dict()}
        )

        await self.error_log.record_exception(f"{task.entity_type.value}_sync", error)
        await self.queue.archive(received.msg_id, f"{type(error).__name__}: {error.message}")

        try:
            await self.tracker.mark_error(task.entity_type, error.message)
        except (StateTransitionError, StateConflictError) as e:
            logger.warning(
                f"Could not mark {task.entity_type.value} as error: {e.message}",
                extra={"error_context": e.to_dict()}
            )
