"""
Tests for the queueing policies and the smart requester
"""

import pytest
from catalog_sync.dispatcher import SyncDispatcher
from catalog_sync.queue import TaskQueue
from catalog_sync.state import SyncStateTracker
from core.exceptions import UnknownEntityTypeError
from core.timeutils import epoch_seconds
from models.base import ChunkStatus, EntityType
from schemas.sync import PayloadFormat, QueuePolicy


def make_dispatcher(db_session, **kwargs):
    queue = TaskQueue(db_session, queue_name="test_tasks", poll_interval=0)
    options = {"max_in_flight": 5, "backlog_threshold": 10, "resync_interval_hours": 24}
    options.update(kwargs)
    return SyncDispatcher(db_session, queue=queue, **options)


async def set_progress(db_session, entity_type, current_page, total_pages=None, has_more=True, last_sync=None):
    tracker = SyncStateTracker(db_session)
    await tracker.advance(entity_type, current_page, has_more, total_pages=total_pages)
    await tracker.mark_dispatched(entity_type, current_page)
    if last_sync is not None:
        await tracker.mark_result(entity_type, "completed", timestamp=last_sync)


@pytest.mark.asyncio
async def test_steady_policy_queues_first_page_for_every_entity_type(db_session):
    dispatcher = make_dispatcher(db_session)

    result = await dispatcher.queue_sync_tasks()

    assert result.queued == len(EntityType)
    assert {t.entity_type for t in result.tasks} == set(EntityType)
    assert all(t.page == 1 and t.policy == QueuePolicy.STEADY for t in result.tasks)
    assert all(t.payload_format == PayloadFormat.SIMPLE for t in result.tasks)

    state = await SyncStateTracker(db_session).get_state(EntityType.BRAND)
    assert state.dispatched_page == 1


@pytest.mark.asyncio
async def test_steady_policy_keeps_one_page_in_flight(db_session):
    dispatcher = make_dispatcher(db_session)
    await dispatcher.queue_sync_tasks([EntityType.BRAND])

    result = await dispatcher.queue_sync_tasks([EntityType.BRAND])

    assert result.queued == 0
    assert result.skipped == {"brand": "in_flight"}
    assert await dispatcher.queue.in_flight("brand") == 1


@pytest.mark.asyncio
async def test_steady_policy_continues_from_cursor(db_session):
    await set_progress(db_session, EntityType.MEDIA, 3)

    result = await make_dispatcher(db_session).queue_sync_tasks([EntityType.MEDIA])

    assert [t.page for t in result.tasks] == [4]


@pytest.mark.asyncio
async def test_steady_policy_skips_active_chunk(db_session):
    await SyncStateTracker(db_session).begin_fetch(EntityType.MEDIA)

    result = await make_dispatcher(db_session).queue_sync_tasks(["media"])

    assert result.queued == 0
    assert result.skipped == {"media": ChunkStatus.FETCHING.value}


@pytest.mark.asyncio
async def test_finished_pass_waits_for_resync_interval(db_session):
    await set_progress(db_session, EntityType.BRAND, 4, has_more=False)

    result = await make_dispatcher(db_session).queue_sync_tasks([EntityType.BRAND])

    assert result.queued == 0
    assert result.skipped == {"brand": "up_to_date"}


@pytest.mark.asyncio
async def test_finished_pass_restarts_after_resync_interval(db_session):
    two_days_ago = epoch_seconds() - 48 * 3600
    await set_progress(db_session, EntityType.BRAND, 4, has_more=False, last_sync=two_days_ago)

    result = await make_dispatcher(db_session).queue_sync_tasks([EntityType.BRAND])

    assert [t.page for t in result.tasks] == [1]
    state = await SyncStateTracker(db_session).get_state(EntityType.BRAND)
    assert state.sync_count == 1
    assert state.current_page == 0
    assert state.dispatched_page == 1


@pytest.mark.asyncio
async def test_aggressive_policy_queues_pages_ahead(db_session):
    await set_progress(db_session, EntityType.PRODUCT, 2, total_pages=20)

    result = await make_dispatcher(db_session).queue_sync_tasks_aggressive([EntityType.PRODUCT])

    assert [t.page for t in result.tasks] == [3, 4, 5, 6, 7]
    assert all(t.policy == QueuePolicy.AGGRESSIVE for t in result.tasks)
    state = await SyncStateTracker(db_session).get_state(EntityType.PRODUCT)
    assert state.dispatched_page == 7
    assert state.next_page == 8


@pytest.mark.asyncio
async def test_aggressive_policy_is_capped_by_total_pages(db_session):
    await set_progress(db_session, EntityType.PRODUCT, 2, total_pages=4)

    result = await make_dispatcher(db_session).queue_products_aggressively()

    assert [t.page for t in result.tasks] == [3, 4]


@pytest.mark.asyncio
async def test_aggressive_policy_queues_one_page_until_total_known(db_session):
    result = await make_dispatcher(db_session).queue_products_aggressively()

    assert [(t.entity_type, t.page) for t in result.tasks] == [(EntityType.PRODUCT, 1)]


@pytest.mark.asyncio
async def test_aggressive_policy_waits_for_in_flight_pages(db_session):
    dispatcher = make_dispatcher(db_session)
    await set_progress(db_session, EntityType.PRODUCT, 2, total_pages=20)
    await dispatcher.queue_products_aggressively()

    result = await dispatcher.queue_products_aggressively()

    assert result.queued == 0
    assert result.skipped == {"product": "in_flight"}


@pytest.mark.asyncio
async def test_aggressive_policy_stops_at_end_of_pass(db_session):
    await set_progress(db_session, EntityType.PRODUCT, 4, total_pages=4, has_more=False)

    result = await make_dispatcher(db_session).queue_products_aggressively()

    assert result.queued == 0
    assert result.skipped == {"product": "no_more_pages"}


@pytest.mark.asyncio
async def test_should_drain_aggressively(db_session):
    dispatcher = make_dispatcher(db_session)
    state = await SyncStateTracker(db_session).get_state(EntityType.PRODUCT)

    state.total_pages = None
    assert dispatcher.should_drain_aggressively(state, 0) is False

    state.total_pages, state.current_page = 50, 5
    assert dispatcher.should_drain_aggressively(state, 0) is True
    assert dispatcher.should_drain_aggressively(state, 1) is False

    state.current_page = 45
    assert dispatcher.should_drain_aggressively(state, 0) is False

    state.current_page, state.chunk_status = 5, ChunkStatus.PROCESSING
    assert dispatcher.should_drain_aggressively(state, 0) is False


@pytest.mark.asyncio
async def test_smart_requester_picks_policy_per_entity_type(db_session):
    await set_progress(db_session, EntityType.PRODUCT, 2, total_pages=40)
    await set_progress(db_session, EntityType.BRAND, 2, total_pages=5)

    result = await make_dispatcher(db_session).smart_sync_requester([EntityType.PRODUCT, EntityType.BRAND])

    pages = {}
    for task in result.tasks:
        pages.setdefault(task.entity_type, []).append((task.page, task.policy))
    assert pages[EntityType.PRODUCT] == [(p, QueuePolicy.AGGRESSIVE) for p in range(3, 8)]
    assert pages[EntityType.BRAND] == [(3, QueuePolicy.STEADY)]


@pytest.mark.asyncio
async def test_unknown_entity_type(db_session):
    with pytest.raises(UnknownEntityTypeError):
        await make_dispatcher(db_session).queue_sync_tasks(["vitamins"])


@pytest.mark.asyncio
async def test_pages_lost_to_error_are_requeued(db_session):
    tracker = SyncStateTracker(db_session)
    dispatcher = make_dispatcher(db_session)
    await set_progress(db_session, EntityType.MEDIA, 3)
    await dispatcher.queue_sync_tasks([EntityType.MEDIA])
    await tracker.begin_fetch(EntityType.MEDIA, 4)
    await tracker.mark_error(EntityType.MEDIA, "fetch failed")
    # the failed task was archived
    await dispatcher.queue.archive((await dispatcher.queue.read())[0].msg_id, "gave up")

    result = await dispatcher.queue_sync_tasks([EntityType.MEDIA])

    assert [t.page for t in result.tasks] == [4]
