import pytest
from unittest.mock import AsyncMock, MagicMock
from core.exceptions import (
    RequestBuildError,
    TransientFetchError,
    UnknownEntityTypeError,
    UnsupportedPayloadFormatError,
)
from catalog_sync.requests import (
    build_request,
    check_sorting_formats,
    probe_entity_request,
    resolve_format,
)
from models.base import EntityType
from schemas.sync import PayloadFormat


def test_simple_body_uses_zero_based_page():
    request = build_request(EntityType.BRAND, 3, page_size=50)

    assert request.endpoint == "brands/query"
    assert request.payload_format == PayloadFormat.SIMPLE
    assert request.body == {
        "filter": {},
        "sorting": {"id": "ASC"},
        "page": {"no": 2, "size": 50},
    }


def test_nested_body():
    request = build_request("product", 1, PayloadFormat.NESTED, page_size=100)

    assert request.entity_type == EntityType.PRODUCT
    assert request.endpoint == "products/query"
    assert request.body["sorting"] == {"id": {"direction": "ASC"}}
    assert request.body["page"] == {"no": 0, "size": 100}


def test_build_request_is_deterministic():
    first = build_request(EntityType.PUBLIC_CATEGORY, 7, page_size=25)
    second = build_request(EntityType.PUBLIC_CATEGORY, 7, page_size=25)

    assert first == second


def test_unknown_entity_type():
    with pytest.raises(UnknownEntityTypeError) as exc_info:
        build_request("vitamins", 1)

    # callers that only handle request build failures still catch it
    assert isinstance(exc_info.value, RequestBuildError)
    assert exc_info.value.context["entity_type"] == "vitamins"


def test_nested_format_rejected_for_simple_only_endpoint():
    with pytest.raises(UnsupportedPayloadFormatError) as exc_info:
        build_request(EntityType.MEDIA, 1, PayloadFormat.NESTED)

    assert exc_info.value.context["supported_formats"] == ["simple"]


def test_unknown_payload_format_string():
    with pytest.raises(UnsupportedPayloadFormatError):
        resolve_format(EntityType.BRAND, "xml")


def test_default_format():
    assert resolve_format(EntityType.ACTIVE_INGREDIENT) == PayloadFormat.SIMPLE
    assert resolve_format(EntityType.ORGANIZATION, "nested") == PayloadFormat.NESTED


@pytest.mark.parametrize("page", [0, -1])
def test_page_must_be_positive(page):
    with pytest.raises(RequestBuildError):
        build_request(EntityType.BRAND, page)


@pytest.mark.asyncio
async def test_probe_bypasses_registry_formats():
    client = MagicMock()
    client.send = AsyncMock(return_value=MagicMock(status_code=400))

    status = await probe_entity_request(client, EntityType.MEDIA, use_nested_format=True)

    assert status == 400
    request = client.send.await_args.args[0]
    assert request.payload_format == PayloadFormat.NESTED
    assert request.body["page"] == {"no": 0, "size": 1}


@pytest.mark.asyncio
async def test_check_sorting_formats_reports_every_entity_type():
    async def send(request):
        if request.payload_format == PayloadFormat.NESTED and request.entity_type == EntityType.MEDIA:
            return MagicMock(status_code=400)
        if request.entity_type == EntityType.PRODUCT_FAMILY:
            raise TransientFetchError("connection refused")
        return MagicMock(status_code=200)

    client = MagicMock()
    client.send = AsyncMock(side_effect=send)

    checks = {check.entity_type: check for check in await check_sorting_formats(client)}

    assert set(checks) == set(EntityType)
    assert checks[EntityType.BRAND].simple_format_works
    assert checks[EntityType.BRAND].nested_format_works
    assert checks[EntityType.MEDIA].simple_format_works
    assert not checks[EntityType.MEDIA].nested_format_works
    assert not checks[EntityType.PRODUCT_FAMILY].simple_format_works
