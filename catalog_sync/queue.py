"""
Durable task queue with pgmq semantics, stored in the relational database.

- send: insert a message, optionally invisible for ``delay_seconds``
- read: claim visible messages (vt <= now) with SKIP LOCKED, push their vt
  forward by the visibility timeout and bump ``read_ct``
- delete (ack) / set_vt (nack) / archive

A worker that crashes after ``read`` never acks; its message becomes
visible again once vt passes, which gives at-least-once delivery.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional
import asyncio
import logging

from pydantic import ValidationError
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import QueueError
from core.timeutils import utcnow
from catalog_sync.error_log import ErrorLog
from models.queue import QueueMessage, ArchivedQueueMessage
from schemas.sync import SyncTask, ReceivedTask

logger = logging.getLogger(__name__)


class TaskQueue:
    """Queue of sync tasks; ``message_group`` is the entity type."""

    def __init__(
        self,
        db_session: AsyncSession,
        queue_name: Optional[str] = None,
        visibility_timeout: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.db = db_session
        self.queue_name = queue_name or settings.SYNC_QUEUE_NAME
        self.visibility_timeout = visibility_timeout or settings.QUEUE_VISIBILITY_TIMEOUT_SECONDS
        self.poll_interval = settings.QUEUE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval

    # ------------------------------------------------------------------
    # pgmq primitives
    # ------------------------------------------------------------------

    async def send(self, message: Dict[str, Any], delay_seconds: int = 0, group: Optional[str] = None) -> int:
        """Insert a message and return its msg_id."""
        now = utcnow()
        row = QueueMessage(
            queue_name=self.queue_name,
            message_group=group,
            message=message,
            read_ct=0,
            enqueued_at=now,
            vt=now + timedelta(seconds=delay_seconds),
        )
        self.db.add(row)
        await self.db.flush()
        msg_id = row.msg_id
        await self.db.commit()
        logger.debug(f"Sent message {msg_id} to {self.queue_name} (group={group}, delay={delay_seconds}s)")
        return msg_id

    async def read(self, qty: int = 1, visibility_timeout: Optional[int] = None) -> List[QueueMessage]:
        """Claim up to ``qty`` visible messages."""
        now = utcnow()
        vt = now + timedelta(seconds=visibility_timeout or self.visibility_timeout)

        result = await self.db.execute(
            select(QueueMessage.msg_id)
            .where(QueueMessage.queue_name == self.queue_name, QueueMessage.vt <= now)
            .order_by(QueueMessage.msg_id)
            .limit(qty)
            .with_for_update(skip_locked=True)
        )
        ids = list(result.scalars().all())
        if not ids:
            await self.db.commit()
            return []

        await self.db.execute(
            update(QueueMessage)
            .where(QueueMessage.msg_id.in_(ids))
            .values(vt=vt, read_ct=QueueMessage.read_ct + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(QueueMessage)
            .where(QueueMessage.msg_id.in_(ids))
            .order_by(QueueMessage.msg_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def delete(self, msg_id: int) -> bool:
        result = await self.db.execute(
            delete(QueueMessage).where(
                QueueMessage.queue_name == self.queue_name,
                QueueMessage.msg_id == msg_id,
            )
        )
        await self.db.commit()
        return result.rowcount == 1

    async def set_vt(self, msg_id: int, delay_seconds: int) -> bool:
        result = await self.db.execute(
            update(QueueMessage)
            .where(QueueMessage.queue_name == self.queue_name, QueueMessage.msg_id == msg_id)
            .values(vt=utcnow() + timedelta(seconds=delay_seconds))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def archive(self, msg_id: int, reason: Optional[str] = None) -> bool:
        """Move a message to the archive table."""
        result = await self.db.execute(
            select(QueueMessage)
            .where(QueueMessage.queue_name == self.queue_name, QueueMessage.msg_id == msg_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return False

        self.db.add(ArchivedQueueMessage(
            msg_id=row.msg_id,
            queue_name=row.queue_name,
            message_group=row.message_group,
            message=row.message,
            read_ct=row.read_ct,
            enqueued_at=row.enqueued_at,
            archived_at=utcnow(),
            archive_reason=reason[:2000] if reason else None,
        ))
        await self.db.delete(row)
        await self.db.commit()
        logger.warning(f"Archived message {msg_id} from {self.queue_name}: {reason}")
        return True

    # ------------------------------------------------------------------
    # Task API
    # ------------------------------------------------------------------

    async def enqueue(self, task: SyncTask, delay_seconds: int = 0) -> int:
        return await self.send(
            task.model_dump(mode="json"),
            delay_seconds=delay_seconds,
            group=task.entity_type.value,
        )

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[ReceivedTask]:
        """
        Wait up to ``timeout`` seconds for a task.

        Messages that are not valid sync tasks are archived and skipped.
        Returns None when the timeout elapses.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout or 0)

        while True:
            messages = await self.read(qty=1)
            if messages:
                message = messages[0]
                try:
                    task = SyncTask.model_validate(message.message)
                except ValidationError as e:
                    await self._reject(message, e)
                    continue
                return ReceivedTask(msg_id=message.msg_id, read_ct=message.read_ct, task=task)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ack(self, msg_id: int) -> bool:
        acked = await self.delete(msg_id)
        if not acked:
            logger.warning(f"Ack for unknown message {msg_id} in {self.queue_name}")
        return acked

    async def nack(self, msg_id: int, requeue_delay: int = 0) -> bool:
        """Make a message visible again after ``requeue_delay`` seconds."""
        requeued = await self.set_vt(msg_id, requeue_delay)
        if not requeued:
            raise QueueError(
                f"Cannot requeue unknown message {msg_id}",
                context={"queue_name": self.queue_name, "msg_id": msg_id, "operation": "set_vt"}
            )
        return requeued

    async def in_flight(self, group: Optional[str] = None) -> int:
        """Messages queued or being processed, optionally for one group."""
        query = select(func.count()).select_from(QueueMessage).where(QueueMessage.queue_name == self.queue_name)
        if group is not None:
            query = query.where(QueueMessage.message_group == group)
        return (await self.db.execute(query)).scalar_one()

    async def depth(self) -> int:
        return await self.in_flight()

    async def depth_by_group(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(QueueMessage.message_group, func.count())
            .where(QueueMessage.queue_name == self.queue_name)
            .group_by(QueueMessage.message_group)
        )
        return {group: count for group, count in result.all() if group is not None}

    async def _reject(self, message: QueueMessage, error: ValidationError):
        reason = f"Invalid sync task: {error.errors()[0]['msg'] if error.errors() else error}"
        await ErrorLog(self.db).record(
            "sync_queue",
            reason,
            {"msg_id": message.msg_id, "message": message.message},
        )
        await self.archive(message.msg_id, reason)
