"""
Custom exceptions for the catalog sync engine with structured error context.

Each exception carries context information that is logged and persisted to
the ``sync_errors`` table via ``to_dict()``.

Exception Hierarchy:
    SyncException (base)
    ├── FetchError
    │   ├── TransientFetchError (retryable)
    │   │   └── RateLimitError
    │   ├── AuthenticationError
    │   ├── ResourceNotFoundError
    │   └── MalformedResponseError
    ├── RequestBuildError
    │   └── UnsupportedPayloadFormatError
    ├── MalformedItemError
    ├── SchemaViolationError
    │   └── UnknownEntityTypeError
    ├── QueueError
    ├── StateTransitionError
    ├── StateConflictError (retryable)
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any

from core.timeutils import utcnow


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (entity type, page, ids, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    - Lost compare-and-set races on sync state
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Unknown entity types or unsupported payload formats
    - Items that fail validation
    """
    pass


# ============================================================================
# Fetch Errors
# ============================================================================

class FetchError(SyncException):
    """
    Base exception for outbound catalog API failures.

    Context should include:
        - api_url: The endpoint that failed
        - entity_type: Entity type being fetched
        - page: Page being fetched
        - status_code: HTTP status code (if applicable)
    """
    pass


class TransientFetchError(RetryableError, FetchError):
    """Network, timeout or server-side failure; the task is requeued with delay."""
    pass


class RateLimitError(TransientFetchError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, FetchError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, FetchError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


class MalformedResponseError(NonRetryableError, FetchError):
    """The provider answered with a body that is not a usable page of results."""
    pass


# ============================================================================
# Request Build Errors
# ============================================================================

class RequestBuildError(NonRetryableError):
    """
    Raised when an outbound request cannot be built.

    Context should include:
        - entity_type: Requested entity type
        - page: Requested page
        - payload_format: Requested payload format (if applicable)
    """
    pass


class UnsupportedPayloadFormatError(RequestBuildError):
    """The payload format is not supported by the entity type's endpoint."""
    pass


# ============================================================================
# Item and Schema Errors
# ============================================================================

class MalformedItemError(NonRetryableError):
    """
    One item in a batch failed to parse or validate; the batch continues.

    Context should include:
        - entity_type: Entity type of the batch
        - item_index: Position of the item in the batch
        - external_id: Item id (if it could be read)
    """
    pass


class SchemaViolationError(NonRetryableError):
    """
    A write or task violates a structural invariant; fatal for that task.

    Context should include:
        - entity_type: Entity type involved
        - field_name: Offending field (if applicable)
    """
    pass


class UnknownEntityTypeError(SchemaViolationError, RequestBuildError):
    """The entity type identifier is not one the engine knows how to sync."""
    pass


# ============================================================================
# Queue and State Errors
# ============================================================================

class QueueError(SyncException):
    """
    Exception raised when a task queue operation fails.

    Context should include:
        - queue_name: Queue involved
        - msg_id: Message id (if applicable)
        - operation: send, read, delete, archive
    """
    pass


class StateTransitionError(NonRetryableError):
    """A chunk status transition outside the allowed lifecycle was requested."""
    pass


class StateConflictError(RetryableError):
    """Compare-and-set on a sync state row kept losing to concurrent writers."""
    pass
