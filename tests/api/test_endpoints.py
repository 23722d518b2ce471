"""
API endpoint tests
"""

import pytest
import pytest_asyncio
import httpx
from api.main import app
from api.dependencies import get_db
from catalog_sync.error_log import ErrorLog
from catalog_sync.processor import ResponseProcessor
from catalog_sync.state import SyncStateTracker
from models.base import EntityType
from tests.factories import make_brand, make_organization


@pytest_asyncio.fixture
async def client(db_session):
    """Create test client with database override"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_root_lists_endpoints(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["dashboard"] == "/sync/dashboard"


@pytest.mark.asyncio
async def test_request_id_and_latency_headers(client):
    response = await client.get("/", headers={"X-Request-ID": "abc-123"})

    assert response.headers["X-Request-ID"] == "abc-123"
    assert int(response.headers["X-API-Latency-ms"]) >= 0

    generated = await client.get("/")
    assert generated.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_health_endpoint_database_connected(client, db_session):
    """Test health endpoint returns database status"""
    await SyncStateTracker(db_session).ensure_states()

    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["total_entity_types"] == len(EntityType)
    assert {s["entity_type"] for s in data["sync_states"]} == {e.value for e in EntityType}


@pytest.mark.asyncio
async def test_health_degraded_when_a_chunk_errors(client, db_session):
    tracker = SyncStateTracker(db_session)
    await tracker.ensure_states()
    await tracker.begin_fetch(EntityType.BRAND)
    await tracker.mark_error(EntityType.BRAND, "boom")

    data = (await client.get("/health")).json()

    assert data["status"] == "degraded"
    assert data["failed_entity_types"] == 1


@pytest.mark.asyncio
async def test_dashboard(client, db_session):
    await SyncStateTracker(db_session).ensure_states()
    processor = ResponseProcessor(db_session)
    await processor.ingest(EntityType.BRAND, [make_brand(1, organizations=[9]), make_brand(2)])
    await SyncStateTracker(db_session).advance(EntityType.BRAND, 1, True, succeeded=2, total_pages=4)

    response = await client.get("/sync/dashboard")

    assert response.status_code == 200
    rows = {row["entity_type"]: row for row in response.json()}
    assert len(rows) == len(EntityType)
    brand = rows["brand"]
    assert brand["items_synced"] == 2
    assert brand["current_page"] == 1
    assert brand["total_pages"] == 4
    assert brand["chunk_status"] == "done"
    assert brand["pending_deferred"] == 1
    assert brand["minutes_since_last_sync"] is not None
    assert rows["media"]["minutes_since_last_sync"] is None


@pytest.mark.asyncio
async def test_errors_endpoint_filters_by_sync_type(client, db_session):
    error_log = ErrorLog(db_session)
    await error_log.record("brand_sync", "first", {"page": 1})
    await error_log.record("product_sync", "second", {"page": 2})
    await db_session.commit()

    response = await client.get("/sync/errors", params={"sync_type": "brand_sync"})

    assert response.status_code == 200
    data = response.json()
    assert [e["error_message"] for e in data] == ["first"]
    assert data[0]["error_data"] == {"page": 1}


@pytest.mark.asyncio
async def test_deferred_report(client, db_session):
    await ResponseProcessor(db_session).ingest(EntityType.BRAND, [make_brand(1, organizations=[9, 10])])

    response = await client.get("/sync/deferred/report")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["abandoned"] == 0
    assert {e["target_id"] for e in data["entries"]} == {"9", "10"}

    abandoned_only = (await client.get("/sync/deferred/report", params={"abandoned_only": True})).json()
    assert abandoned_only["total"] == 0


@pytest.mark.asyncio
async def test_queue_sync_tasks(client):
    response = await client.post(
        "/maintenance/queue-sync-tasks",
        params={"policy": "steady", "entity_type": ["brand", "media"]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["queued"] == 2
    assert {(t["entity_type"], t["page"]) for t in data["tasks"]} == {("brand", 1), ("media", 1)}


@pytest.mark.asyncio
async def test_queue_sync_tasks_rejects_bad_input(client):
    bad_policy = await client.post("/maintenance/queue-sync-tasks", params={"policy": "turbo"})
    bad_entity = await client.post("/maintenance/queue-sync-tasks", params={"entity_type": "vitamins"})

    assert bad_policy.status_code == 400
    assert bad_entity.status_code == 400


@pytest.mark.asyncio
async def test_reset_stuck_syncs(client):
    response = await client.post("/maintenance/reset-stuck-syncs", params={"hours_threshold": 1})

    assert response.status_code == 200
    data = response.json()
    assert data["hours_threshold"] == 1
    assert len(data["results"]) == len(EntityType)
    assert not any(r["was_stuck"] for r in data["results"])


@pytest.mark.asyncio
async def test_process_deferred(client, db_session):
    processor = ResponseProcessor(db_session)
    await processor.ingest(EntityType.BRAND, [make_brand(1, organizations=[9, 10])])
    await processor.ingest(EntityType.ORGANIZATION, [make_organization(9)])

    response = await client.post("/maintenance/process-deferred")

    assert response.status_code == 200
    assert response.json() == {"resolved": 1, "remaining": 1}


@pytest.mark.asyncio
async def test_repair_endpoints(client, db_session):
    await ResponseProcessor(db_session).ingest(EntityType.BRAND, [make_brand(1)])

    products = await client.post("/maintenance/repair-product-relationships")
    categories = await client.post("/maintenance/repair-category-parents")

    assert products.status_code == 200
    assert [s["entity_type"] for s in products.json()["summaries"]] == ["product", "brand"]
    assert products.json()["summaries"][1]["rows_scanned"] == 1
    assert categories.json()["summaries"][0]["entity_type"] == "public_category"


@pytest.mark.asyncio
async def test_clear_response_backlog(client):
    response = await client.post("/maintenance/clear-response-backlog")

    assert response.status_code == 200
    assert response.json() == {"processed": 0, "failed": 0, "abandoned": 0, "remaining": 0}
