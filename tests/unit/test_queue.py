"""
Tests for the durable task queue (visibility timeout, ack/nack, archive)
"""

import pytest
from datetime import timedelta
from sqlalchemy import select, update, func
from catalog_sync.queue import TaskQueue
from core.exceptions import QueueError
from core.timeutils import utcnow
from models.base import EntityType
from models.queue import ArchivedQueueMessage, QueueMessage
from models.sync_error import SyncError
from schemas.sync import PayloadFormat, QueuePolicy, SyncTask


def make_queue(db_session, **kwargs):
    return TaskQueue(db_session, queue_name="test_tasks", visibility_timeout=60, poll_interval=0.01, **kwargs)


async def expire_visibility(db_session, msg_id):
    """Simulate the visibility timeout passing (e.g. the worker crashed)."""
    await db_session.execute(
        update(QueueMessage)
        .where(QueueMessage.msg_id == msg_id)
        .values(vt=utcnow() - timedelta(seconds=1))
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()


@pytest.mark.asyncio
async def test_enqueue_and_dequeue(db_session):
    queue = make_queue(db_session)
    task = SyncTask(entity_type=EntityType.BRAND, page=3, payload_format=PayloadFormat.SIMPLE)

    msg_id = await queue.enqueue(task)
    received = await queue.dequeue(timeout=0)

    assert received.msg_id == msg_id
    assert received.attempts == 1
    assert received.task.entity_type == EntityType.BRAND
    assert received.task.page == 3
    assert received.task.policy == QueuePolicy.STEADY
    assert await queue.depth_by_group() == {"brand": 1}


@pytest.mark.asyncio
async def test_read_message_is_invisible_until_timeout(db_session):
    queue = make_queue(db_session)
    msg_id = await queue.enqueue(SyncTask(entity_type=EntityType.MEDIA, page=1))

    first = await queue.dequeue(timeout=0)
    assert first is not None
    assert await queue.dequeue(timeout=0) is None

    await expire_visibility(db_session, msg_id)
    redelivered = await queue.dequeue(timeout=0)

    assert redelivered.msg_id == msg_id
    assert redelivered.attempts == 2


@pytest.mark.asyncio
async def test_ack_removes_message(db_session):
    queue = make_queue(db_session)
    await queue.enqueue(SyncTask(entity_type=EntityType.MEDIA, page=1))
    received = await queue.dequeue(timeout=0)

    assert await queue.ack(received.msg_id) is True
    assert await queue.depth() == 0
    assert await queue.ack(received.msg_id) is False


@pytest.mark.asyncio
async def test_nack_makes_message_visible_again(db_session):
    queue = make_queue(db_session)
    await queue.enqueue(SyncTask(entity_type=EntityType.MEDIA, page=1))
    received = await queue.dequeue(timeout=0)

    await queue.nack(received.msg_id, requeue_delay=0)
    again = await queue.dequeue(timeout=0)

    assert again.msg_id == received.msg_id
    assert again.attempts == 2


@pytest.mark.asyncio
async def test_nack_with_delay_hides_message(db_session):
    queue = make_queue(db_session)
    await queue.enqueue(SyncTask(entity_type=EntityType.MEDIA, page=1))
    received = await queue.dequeue(timeout=0)

    await queue.nack(received.msg_id, requeue_delay=120)

    assert await queue.dequeue(timeout=0) is None
    assert await queue.in_flight("media") == 1


@pytest.mark.asyncio
async def test_nack_unknown_message(db_session):
    with pytest.raises(QueueError):
        await make_queue(db_session).nack(999, 10)


@pytest.mark.asyncio
async def test_delayed_send(db_session):
    queue = make_queue(db_session)

    await queue.enqueue(SyncTask(entity_type=EntityType.BRAND, page=1), delay_seconds=300)

    assert await queue.dequeue(timeout=0) is None


@pytest.mark.asyncio
async def test_dequeue_waits_up_to_timeout(db_session):
    assert await make_queue(db_session).dequeue(timeout=0.05) is None


@pytest.mark.asyncio
async def test_messages_are_delivered_in_order(db_session):
    queue = make_queue(db_session)
    for page in (1, 2, 3):
        await queue.enqueue(SyncTask(entity_type=EntityType.PRODUCT, page=page))

    pages = [(await queue.dequeue(timeout=0)).task.page for _ in range(3)]

    assert pages == [1, 2, 3]


@pytest.mark.asyncio
async def test_queues_are_isolated_by_name(db_session):
    await make_queue(db_session).enqueue(SyncTask(entity_type=EntityType.BRAND, page=1))
    other = TaskQueue(db_session, queue_name="other_tasks")

    assert await other.depth() == 0
    assert await other.dequeue(timeout=0) is None


@pytest.mark.asyncio
async def test_archive_moves_message(db_session):
    queue = make_queue(db_session)
    msg_id = await queue.enqueue(SyncTask(entity_type=EntityType.BRAND, page=2))
    await queue.dequeue(timeout=0)

    assert await queue.archive(msg_id, "AuthenticationError: denied") is True

    assert await queue.depth() == 0
    archived = (await db_session.execute(select(ArchivedQueueMessage))).scalar_one()
    assert archived.msg_id == msg_id
    assert archived.read_ct == 1
    assert archived.message["page"] == 2
    assert archived.archive_reason == "AuthenticationError: denied"


@pytest.mark.asyncio
async def test_invalid_message_is_archived_and_skipped(db_session):
    queue = make_queue(db_session)
    await queue.send({"entity_type": "vitamins", "page": 1}, group="vitamins")
    valid_id = await queue.enqueue(SyncTask(entity_type=EntityType.BRAND, page=1))

    received = await queue.dequeue(timeout=0)

    assert received.msg_id == valid_id
    archived = (await db_session.execute(select(func.count()).select_from(ArchivedQueueMessage))).scalar_one()
    assert archived == 1
    error = (await db_session.execute(select(SyncError))).scalar_one()
    assert error.sync_type == "sync_queue"
    assert error.error_data["message"]["entity_type"] == "vitamins"
