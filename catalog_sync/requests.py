"""
Outbound request builder for the Medipim v4 query endpoints.

``build_request`` is pure: the same (entity type, page, format, page size)
always yields the same body. Pages are 1-based inside the engine and
0-based on the wire.

Body shapes:
    simple: {"filter": {}, "sorting": {"id": "ASC"}, "page": {"no": 0, "size": 100}}
    nested: {"filter": {}, "sorting": {"id": {"direction": "ASC"}}, "page": {...}}
"""

from typing import Any, Dict, List, Optional
import logging

from core.config import settings
from core.exceptions import (
    RequestBuildError,
    UnsupportedPayloadFormatError,
    TransientFetchError,
)
from catalog_sync.registry import ENTITY_SPECS, EntitySpec, get_entity_spec
from schemas.sync import CatalogRequest, FormatCheck, PayloadFormat

logger = logging.getLogger(__name__)


def _sorting(field: str, payload_format: PayloadFormat) -> Dict[str, Any]:
    if payload_format == PayloadFormat.NESTED:
        return {field: {"direction": "ASC"}}
    return {field: "ASC"}


def _body(spec: EntitySpec, page: int, page_size: int, payload_format: PayloadFormat) -> Dict[str, Any]:
    return {
        "filter": {},
        "sorting": _sorting(spec.sort_field, payload_format),
        "page": {"no": page - 1, "size": page_size},
    }


def resolve_format(entity_type, payload_format=None) -> PayloadFormat:
    """
    Validate a payload format against the entity type's endpoint.

    Raises:
        UnknownEntityTypeError: entity type is not registered
        UnsupportedPayloadFormatError: format is unknown or not accepted
    """
    spec = get_entity_spec(entity_type)
    if payload_format is None:
        return spec.default_format

    try:
        fmt = PayloadFormat(payload_format)
    except ValueError:
        fmt = None

    if fmt is None or fmt not in spec.supported_formats:
        raise UnsupportedPayloadFormatError(
            f"Payload format {payload_format!r} is not supported for {spec.entity_type.value}",
            context={
                "entity_type": spec.entity_type.value,
                "payload_format": payload_format,
                "supported_formats": [f.value for f in spec.supported_formats],
            }
        )
    return fmt


def build_request(
    entity_type,
    page: int,
    payload_format: Optional[PayloadFormat] = None,
    page_size: Optional[int] = None,
) -> CatalogRequest:
    """
    Build the provider request for one page of an entity type.

    Args:
        entity_type: Entity type (enum or identifier string)
        page: 1-based page number
        payload_format: Body shape; the entity type's default when omitted
        page_size: Items per page (defaults to PAGE_SIZE)

    Raises:
        RequestBuildError: invalid page or page size, unknown entity type,
            unsupported payload format
    """
    spec = get_entity_spec(entity_type)
    fmt = resolve_format(spec.entity_type, payload_format)
    size = page_size or settings.PAGE_SIZE

    if page < 1 or size < 1:
        raise RequestBuildError(
            "Page and page size must be positive",
            context={"entity_type": spec.entity_type.value, "page": page, "page_size": size}
        )

    return CatalogRequest(
        entity_type=spec.entity_type,
        page=page,
        page_size=size,
        endpoint=spec.endpoint,
        payload_format=fmt,
        body=_body(spec, page, size, fmt),
    )


# ============================================================================
# Format probes
# ============================================================================

async def probe_entity_request(client, entity_type, use_nested_format: bool = False) -> int:
    """
    Send a one-item request in the given format and return the HTTP status.

    The registry's supported formats are deliberately bypassed so the probe
    can report what the provider actually accepts.
    """
    spec = get_entity_spec(entity_type)
    fmt = PayloadFormat.NESTED if use_nested_format else PayloadFormat.SIMPLE
    request = CatalogRequest(
        entity_type=spec.entity_type,
        page=1,
        page_size=1,
        endpoint=spec.endpoint,
        payload_format=fmt,
        body=_body(spec, 1, 1, fmt),
    )
    response = await client.send(request)
    logger.info(
        f"Probe {spec.entity_type.value} ({fmt.value} format): HTTP {response.status_code}"
    )
    return response.status_code


async def check_sorting_formats(client) -> List[FormatCheck]:
    """Probe both payload formats for every entity type."""
    checks = []
    for entity_type in ENTITY_SPECS:
        results = {}
        for nested in (False, True):
            try:
                status = await probe_entity_request(client, entity_type, use_nested_format=nested)
            except TransientFetchError as e:
                logger.warning(
                    f"Probe failed for {entity_type.value}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                status = None
            results[nested] = status == 200

        checks.append(FormatCheck(
            entity_type=entity_type,
            simple_format_works=results[False],
            nested_format_works=results[True],
        ))
    return checks
