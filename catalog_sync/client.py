"""
Medipim v4 HTTP client with authentication, rate limiting, and retry logic.

This module provides robust page fetching with:
- HTTP basic authentication (API key id + secret)
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent cascading failures
- Rate limiting protection (HTTP 429 with Retry-After)
- Mapping of HTTP failures onto the sync exception hierarchy
"""

import httpx
import asyncio
import math
from email.utils import parsedate_to_datetime
from typing import Dict, Any, Optional
from datetime import datetime, timedelta, timezone
from core.config import settings
from core.exceptions import (
    TransientFetchError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
    MalformedResponseError,
    RequestBuildError,
)
from core.timeutils import utcnow
from schemas.sync import CatalogRequest
import logging

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str], default: float) -> int:
    """
    Seconds to wait from a Retry-After header (delay-seconds or HTTP-date).

    Unreadable values fall back to ``default``; dates in the past mean 0.
    """
    if value is None:
        return math.ceil(default)
    value = value.strip()
    try:
        return max(0, math.ceil(float(value)))
    except (ValueError, OverflowError):
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning(f"Unreadable Retry-After header: {value!r}")
        return math.ceil(default)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, math.ceil((when - datetime.now(timezone.utc)).total_seconds()))


class MedipimClient:
    """
    POST page queries to the catalog provider.

    Attributes:
        max_retries: Maximum number of attempts per request (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key_id: Optional[str] = None,
        api_secret: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None
    ):
        self.api_url = (api_url or settings.MEDIPIM_API_URL).rstrip("/")
        self.api_key_id = api_key_id or settings.MEDIPIM_API_KEY_ID
        self.api_secret = api_secret or settings.MEDIPIM_API_SECRET
        self.max_retries = max_retries or settings.REQUEST_MAX_RETRIES
        self.retry_delay = settings.REQUEST_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    def url_for(self, endpoint: str) -> str:
        return f"{self.api_url}/{endpoint.lstrip('/')}"

    def _auth(self) -> Optional[httpx.BasicAuth]:
        if self.api_key_id and self.api_secret:
            return httpx.BasicAuth(self.api_key_id, self.api_secret)
        return None

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.api_url}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.api_url}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    async def _post_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: Dict[str, Any],
        context: Dict[str, Any]
    ) -> httpx.Response:
        """
        POST with retry logic and exponential backoff.

        Raises:
            TransientFetchError: network, timeout or 5xx after max retries,
                or the circuit breaker is open
            RateLimitError: still rate limited after max retries
            AuthenticationError: HTTP 401/403
            ResourceNotFoundError: HTTP 404
            RequestBuildError: the provider rejected the request body (400/422)
        """
        if self._is_circuit_open():
            raise TransientFetchError(
                f"Circuit breaker is open for {self.api_url}",
                context={
                    **context,
                    "api_url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            delay = self.retry_delay * (2 ** attempt)

            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")
                response = await client.post(url, json=body, timeout=self.timeout)

            except httpx.TimeoutException as e:
                if not last_attempt:
                    logger.warning(f"Request timeout. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise TransientFetchError(
                    f"Request timeout after {self.max_retries} retries",
                    context={**context, "api_url": url, "timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e
                )

            except httpx.HTTPError as e:
                if not last_attempt:
                    logger.warning(f"Network error. Retrying in {delay} seconds: {e}")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise TransientFetchError(
                    f"Network error after {self.max_retries} retries",
                    context={**context, "api_url": url, "retry_count": attempt + 1},
                    original_exception=e
                )

            status = response.status_code

            if status in (401, 403):
                self._record_failure()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={**context, "status_code": status, "api_url": url}
                )

            if status == 404:
                self._record_failure()
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={**context, "status_code": 404, "api_url": url}
                )

            if status == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"), delay)
                if not last_attempt:
                    logger.warning(f"Rate limited. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                self._record_failure()
                raise RateLimitError(
                    f"Rate limit exceeded for {url}",
                    context={**context, "status_code": 429, "api_url": url, "retry_count": attempt + 1},
                    retry_after=retry_after
                )

            if status >= 500:
                if not last_attempt:
                    logger.warning(
                        f"Server error {status}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise TransientFetchError(
                    f"Server error after {self.max_retries} retries",
                    context={
                        **context,
                        "status_code": status,
                        "api_url": url,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]
                    }
                )

            if status >= 400:
                raise RequestBuildError(
                    f"Provider rejected request to {url}",
                    context={**context, "status_code": status, "api_url": url, "response_body": response.text[:500]}
                )

            self._record_success()
            return response

        raise TransientFetchError("Max retries exceeded", context={**context, "api_url": url})

    async def fetch(self, request: CatalogRequest) -> Dict[str, Any]:
        """
        Fetch one page and return the decoded JSON body.

        Raises:
            MalformedResponseError: body is not a JSON object
            plus everything ``_post_with_retry`` raises
        """
        url = self.url_for(request.endpoint)
        context = {"entity_type": request.entity_type.value, "page": request.page}

        logger.info(f"Fetching {request.entity_type.value} page {request.page} from {url}")

        async with httpx.AsyncClient(timeout=self.timeout, auth=self._auth()) as client:
            response = await self._post_with_retry(client, url, request.body, context)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Failed to parse JSON response",
                context={**context, "api_url": url, "response_body": response.text[:500]},
                original_exception=e
            )

        if not isinstance(data, dict):
            raise MalformedResponseError(
                "Expected a JSON object",
                context={**context, "api_url": url, "body_type": type(data).__name__}
            )
        return data

    async def send(self, request: CatalogRequest) -> httpx.Response:
        """Single POST without retries or status mapping (format probes)."""
        url = self.url_for(request.endpoint)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, auth=self._auth()) as client:
                return await client.post(url, json=request.body, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise TransientFetchError(
                f"Probe request to {url} failed",
                context={"entity_type": request.entity_type.value, "api_url": url},
                original_exception=e
            )
