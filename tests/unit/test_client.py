"""
Tests for the provider HTTP client: status mapping, retries, circuit breaker
"""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from catalog_sync.client import MedipimClient, parse_retry_after
from catalog_sync.requests import build_request
from core.exceptions import (
    AuthenticationError,
    MalformedResponseError,
    RateLimitError,
    RequestBuildError,
    ResourceNotFoundError,
    TransientFetchError,
)
from models.base import EntityType


def make_response(status_code=200, payload=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    response.json.return_value = payload if payload is not None else {"results": []}
    return response


def make_client(**kwargs):
    return MedipimClient(
        api_url="https://api.example.com/v4/",
        api_key_id="key",
        api_secret="secret",
        max_retries=3,
        retry_delay=0,
        **kwargs
    )


@pytest.fixture
def request_page():
    return build_request(EntityType.BRAND, 2, page_size=10)


@pytest.mark.asyncio
async def test_fetch_posts_body_and_returns_json(request_page):
    body = {"results": [{"id": 1}], "meta": {"total": 11}}

    with patch("httpx.AsyncClient") as mock_client:
        post = AsyncMock(return_value=make_response(200, body))
        mock_client.return_value.__aenter__.return_value.post = post

        data = await make_client().fetch(request_page)

    assert data == body
    assert post.await_args.args[0] == "https://api.example.com/v4/brands/query"
    assert post.await_args.kwargs["json"] == {
        "filter": {},
        "sorting": {"id": "ASC"},
        "page": {"no": 1, "size": 10},
    }
    assert isinstance(mock_client.call_args.kwargs["auth"], httpx.BasicAuth)


@pytest.mark.asyncio
async def test_authentication_failure_is_not_retried(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        post = AsyncMock(return_value=make_response(401))
        mock_client.return_value.__aenter__.return_value.post = post

        with pytest.raises(AuthenticationError):
            await make_client().fetch(request_page)

    assert post.await_count == 1


@pytest.mark.asyncio
async def test_not_found(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        mock_client.return_value.__aenter__.return_value.post = AsyncMock(
            return_value=make_response(404)
        )

        with pytest.raises(ResourceNotFoundError):
            await make_client().fetch(request_page)


@pytest.mark.asyncio
async def test_rejected_body_maps_to_request_build_error(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        mock_client.return_value.__aenter__.return_value.post = AsyncMock(
            return_value=make_response(400, text="invalid sorting")
        )

        with pytest.raises(RequestBuildError) as exc_info:
            await make_client().fetch(request_page)

    assert exc_info.value.context["response_body"] == "invalid sorting"


@pytest.mark.asyncio
async def test_server_error_is_retried_then_succeeds(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        post = AsyncMock(side_effect=[
            make_response(503),
            make_response(200, {"results": [{"id": 2}]}),
        ])
        mock_client.return_value.__aenter__.return_value.post = post

        data = await make_client().fetch(request_page)

    assert data == {"results": [{"id": 2}]}
    assert post.await_count == 2


@pytest.mark.asyncio
async def test_persistent_server_error(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        post = AsyncMock(return_value=make_response(500, text="boom"))
        mock_client.return_value.__aenter__.return_value.post = post

        with pytest.raises(TransientFetchError) as exc_info:
            await make_client().fetch(request_page)

    assert post.await_count == 3
    assert exc_info.value.context["status_code"] == 500
    assert exc_info.value.context["entity_type"] == "brand"


@pytest.mark.asyncio
async def test_timeouts_exhaust_retries(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        mock_client.return_value.__aenter__.return_value.post = AsyncMock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        with pytest.raises(TransientFetchError, match="timeout"):
            await make_client().fetch(request_page)


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        post = AsyncMock(return_value=make_response(429, headers={"Retry-After": "0"}))
        mock_client.return_value.__aenter__.return_value.post = post

        with pytest.raises(RateLimitError) as exc_info:
            await make_client().fetch(request_page)

    assert post.await_count == 3
    assert exc_info.value.retry_after == 0


@pytest.mark.asyncio
async def test_rate_limit_with_http_date_retry_after(request_page):
    headers = {"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}
    with patch("httpx.AsyncClient") as mock_client, \
            patch("catalog_sync.client.asyncio.sleep", AsyncMock()) as sleep:
        mock_client.return_value.__aenter__.return_value.post = AsyncMock(
            return_value=make_response(429, headers=headers)
        )

        with pytest.raises(RateLimitError) as exc_info:
            await make_client().fetch(request_page)

    # a date in the past means retry now
    assert exc_info.value.retry_after == 0
    assert sleep.await_count == 2


def test_parse_retry_after():
    assert parse_retry_after("120", 5) == 120
    assert parse_retry_after("1.5", 5) == 2
    assert parse_retry_after(None, 4.2) == 5
    assert parse_retry_after("soon", 7) == 7
    assert parse_retry_after("inf", 7) == 7

    later = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=120), usegmt=True)
    assert 115 <= parse_retry_after(later, 5) <= 120


@pytest.mark.asyncio
async def test_invalid_json_body(request_page):
    response = make_response(200)
    response.json.side_effect = ValueError("Expecting value")

    with patch("httpx.AsyncClient") as mock_client:
        mock_client.return_value.__aenter__.return_value.post = AsyncMock(return_value=response)

        with pytest.raises(MalformedResponseError):
            await make_client().fetch(request_page)


@pytest.mark.asyncio
async def test_non_object_body(request_page):
    with patch("httpx.AsyncClient") as mock_client:
        mock_client.return_value.__aenter__.return_value.post = AsyncMock(
            return_value=make_response(200, [1, 2, 3])
        )

        with pytest.raises(MalformedResponseError, match="JSON object"):
            await make_client().fetch(request_page)


@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_repeated_failures(request_page):
    client = make_client()

    with patch("httpx.AsyncClient") as mock_client:
        post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))
        mock_client.return_value.__aenter__.return_value.post = post

        for _ in range(5):
            with pytest.raises(TransientFetchError):
                await client.fetch(request_page)
        calls_before = post.await_count

        with pytest.raises(TransientFetchError, match="Circuit breaker is open"):
            await client.fetch(request_page)

    assert post.await_count == calls_before
