"""
Tests for the recovery supervisor
"""

import pytest
from datetime import timedelta
from sqlalchemy import select, update
from catalog_sync.processor import ResponseProcessor
from catalog_sync.recovery import RecoverySupervisor
from catalog_sync.requests import build_request
from catalog_sync.state import SyncStateTracker
from core.timeutils import utcnow
from models.base import ChunkStatus, EntityType, SyncResultStatus
from models.sync_error import SyncError
from models.sync_response import SyncResponse
from models.sync_state import SyncState
from tests.factories import make_organization, make_page


async def age_state(db_session, entity_type, hours):
    await db_session.execute(
        update(SyncState)
        .where(SyncState.entity_type == entity_type)
        .values(updated_at=utcnow() - timedelta(hours=hours))
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()


@pytest.mark.asyncio
async def test_reset_stuck_syncs_resets_only_old_active_chunks(db_session):
    tracker = SyncStateTracker(db_session)
    await tracker.advance(EntityType.PRODUCT, 4, True)
    await tracker.mark_dispatched(EntityType.PRODUCT, 6)
    await tracker.begin_processing(EntityType.PRODUCT, 5)
    await age_state(db_session, EntityType.PRODUCT, 3)

    await tracker.begin_fetch(EntityType.BRAND, 1)

    reports = await RecoverySupervisor(db_session).reset_stuck_syncs(hours_threshold=2)

    by_type = {r.entity_type: r.was_stuck for r in reports}
    assert len(reports) == len(EntityType)
    assert by_type[EntityType.PRODUCT] is True
    assert by_type[EntityType.BRAND] is False

    product = await tracker.get_state(EntityType.PRODUCT)
    assert product.chunk_status == ChunkStatus.IDLE
    assert product.last_sync_status == SyncResultStatus.RESET.value
    assert product.current_page == 4
    # pages dispatched past the cursor are requested again
    assert product.next_page == 5

    brand = await tracker.get_state(EntityType.BRAND)
    assert brand.chunk_status == ChunkStatus.FETCHING


@pytest.mark.asyncio
async def test_idle_rows_are_never_stuck(db_session):
    tracker = SyncStateTracker(db_session)
    await tracker.ensure_states()
    await age_state(db_session, EntityType.MEDIA, 48)
    before = (await tracker.get_state(EntityType.MEDIA)).updated_at

    reports = await RecoverySupervisor(db_session).reset_stuck_syncs(hours_threshold=2)

    assert not any(r.was_stuck for r in reports)
    assert (await tracker.get_state(EntityType.MEDIA)).updated_at == before


@pytest.mark.asyncio
async def test_clear_response_backlog(db_session):
    processor = ResponseProcessor(db_session)
    exhausted = await processor.stage_response(
        build_request(EntityType.ORGANIZATION, 1, page_size=1),
        make_page([make_organization(1)], total=3),
    )
    await db_session.execute(
        update(SyncResponse)
        .where(SyncResponse.id == exhausted.id)
        .values(attempts=3, error_message="deadlock detected")
    )
    await db_session.commit()
    await processor.stage_response(
        build_request(EntityType.ORGANIZATION, 2, page_size=1),
        make_page([make_organization(2)], total=3),
    )

    report = await RecoverySupervisor(db_session).clear_response_backlog(max_attempts=3)

    assert (report.abandoned, report.processed, report.failed, report.remaining) == (1, 1, 0, 0)

    abandoned = (await db_session.execute(
        select(SyncResponse)
        .where(SyncResponse.id == exhausted.id)
        .execution_options(populate_existing=True)
    )).scalar_one()
    assert abandoned.processed is True
    assert "deadlock detected" in abandoned.error_message

    error = (await db_session.execute(select(SyncError))).scalar_one()
    assert error.sync_type == "organization_sync"
    assert error.error_data["page"] == 1
