"""
Response Processor - ingests provider pages into the catalog tables.

This module provides:
- Per-item upserts keyed by external id (raw_data always replaced)
- Partial failure support: each item runs in its own SAVEPOINT, so one
  malformed item is logged to sync_errors and the batch continues
- Immediate edge writes or deferred relationships via the resolver
- Staging of raw responses (sync_responses) and their later processing
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import json
import logging
import math

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import (
    MalformedItemError,
    MalformedResponseError,
    StateConflictError,
    StateTransitionError,
)
from core.timeutils import utcnow
from catalog_sync.error_log import ErrorLog
from catalog_sync.registry import EntitySpec, get_entity_spec
from catalog_sync.resolver import RelationshipResolver
from catalog_sync.sql import upsert
from catalog_sync.state import SyncStateTracker
from models.sync_response import SyncResponse
from schemas.projections import project, extract_edges, external_id
from schemas.sync import CatalogRequest, IngestResult

logger = logging.getLogger(__name__)


@dataclass
class StoredEntity:
    entity_id: Any
    inserted: bool
    deferred: int


def parse_page(body: Any) -> Tuple[List[Any], Optional[int]]:
    """
    Split a provider page into (items, total).

    Raises:
        MalformedResponseError: the body has no ``results`` list
    """
    if not isinstance(body, dict) or not isinstance(body.get("results"), list):
        raise MalformedResponseError(
            "Response has no results list",
            context={"body_type": type(body).__name__, "keys": sorted(body)[:20] if isinstance(body, dict) else None}
        )
    meta = body.get("meta") or {}
    total = meta.get("total") if isinstance(meta, dict) else None
    if isinstance(total, bool) or not isinstance(total, int):
        total = None
    return body["results"], total


def content_hash(body: Any) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()


class ResponseProcessor:
    """
    Owns catalog row and join row writes.

    Responsibilities:
    - Project raw items and upsert them
    - Delegate edges to the relationship resolver
    - Count inserted / updated / deferred / failed per batch
    - Advance the sync state once a staged page has been ingested
    """

    def __init__(
        self,
        db_session: AsyncSession,
        tracker: Optional[SyncStateTracker] = None,
        resolver: Optional[RelationshipResolver] = None,
        error_log: Optional[ErrorLog] = None,
    ):
        self.db = db_session
        self.error_log = error_log or ErrorLog(db_session)
        self.tracker = tracker or SyncStateTracker(db_session)
        self.resolver = resolver or RelationshipResolver(db_session, error_log=self.error_log)

    # ------------------------------------------------------------------
    # Item ingestion
    # ------------------------------------------------------------------

    async def store_entity(self, entity_type, item: Any, item_index: Optional[int] = None) -> StoredEntity:
        """
        Upsert one raw item and write its edges. Does not commit.

        Raises:
            MalformedItemError: the item fails projection or edge extraction
        """
        spec = get_entity_spec(entity_type)
        try:
            projection = project(spec.entity_type, item)
            edges = extract_edges(spec.entity_type, item)
        except Exception as e:
            # both calls are pure, so any failure here is a property of the item
            raise MalformedItemError(
                f"Invalid {spec.entity_type.value} item",
                context={
                    "entity_type": spec.entity_type.value,
                    "item_index": item_index,
                    "external_id": external_id(item),
                    "reason": str(e)[:500],
                },
                original_exception=e
            )

        row = projection.to_row(item)
        # public_categories.parent is owned by the resolver
        row.pop("parent", None)
        row["synced_at"] = utcnow()

        model = spec.model
        exists = (await self.db.execute(
            select(model.id).where(model.id == row["id"])
        )).scalar_one_or_none() is not None

        await upsert(
            self.db,
            model,
            [row],
            index_elements=["id"],
            update_columns=[column for column in row if column != "id"],
        )

        delta = await self.resolver.sync_edges(spec.entity_type, row["id"], edges)
        return StoredEntity(entity_id=row["id"], inserted=not exists, deferred=delta["deferred"])

    async def ingest(self, entity_type, raw_items: List[Any]) -> IngestResult:
        """
        Ingest a batch of raw items with partial-failure semantics.

        Returns:
            IngestResult with inserted, updated, deferred and failed counts
        """
        spec = get_entity_spec(entity_type)
        result = IngestResult()

        for index, item in enumerate(raw_items):
            try:
                async with self.db.begin_nested():
                    stored = await self.store_entity(spec.entity_type, item, item_index=index)

            except MalformedItemError as e:
                result.failed += 1
                logger.warning(
                    f"Skipping malformed {spec.entity_type.value} item {index}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                await self.error_log.record_exception(spec.sync_type, e)
                continue

            except SQLAlchemyError as e:
                # the savepoint is already rolled back; the item is counted as malformed
                error = MalformedItemError(
                    f"Database rejected {spec.entity_type.value} item",
                    context={
                        "entity_type": spec.entity_type.value,
                        "item_index": index,
                        "external_id": external_id(item),
                    },
                    original_exception=e
                )
                result.failed += 1
                logger.error(
                    f"Failed to store {spec.entity_type.value} item {index}: {e}",
                    extra={"error_context": error.to_dict()}
                )
                await self.error_log.record_exception(spec.sync_type, error)
                continue

            if stored.inserted:
                result.inserted += 1
            else:
                result.updated += 1
            result.deferred += stored.deferred

        await self.db.commit()

        logger.info(
            f"Ingested {len(raw_items)} {spec.entity_type.value} items: "
            f"inserted={result.inserted} updated={result.updated} "
            f"deferred={result.deferred} failed={result.failed}"
        )
        return result

    async def ingest_response(self, entity_type, api_response: Dict[str, Any]) -> IngestResult:
        """Ingest the ``results`` of a provider page without touching sync state."""
        items, _ = parse_page(api_response)
        return await self.ingest(entity_type, items)

    # ------------------------------------------------------------------
    # Staged responses
    # ------------------------------------------------------------------

    async def stage_response(
        self,
        request: CatalogRequest,
        body: Dict[str, Any],
        status_code: int = 200,
        queue_msg_id: Optional[int] = None,
    ) -> SyncResponse:
        response = SyncResponse(
            entity_type=request.entity_type,
            page=request.page,
            request_body=request.body,
            queue_msg_id=queue_msg_id,
            status_code=status_code,
            body=body,
            content_hash=content_hash(body),
            received_at=utcnow(),
            processed=False,
            attempts=0,
        )
        self.db.add(response)
        await self.db.commit()
        return response

    async def process_response(self, response: SyncResponse) -> Optional[IngestResult]:
        """
        Ingest a staged response and advance the sync state.

        The response is marked processed in the same commit as the state
        change. A response whose batch could not be written stays pending
        (attempts + 1) for the backlog cleaner.
        """
        spec = get_entity_spec(response.entity_type)
        response_id = response.id
        page = response.page
        page_size = self._page_size(response)

        try:
            items, total = parse_page(response.body)
        except MalformedResponseError as e:
            e.context.update({"entity_type": spec.entity_type.value, "page": page, "response_id": response_id})
            logger.error(
                f"Malformed response {response_id} for {spec.entity_type.value} page {page}",
                extra={"error_context": e.to_dict()}
            )
            response.processed = True
            response.processed_at = utcnow()
            response.attempts += 1
            response.error_message = e.message
            await self.error_log.record_exception(spec.sync_type, e)
            await self.db.commit()
            await self._mark_error(spec, e.message)
            return None

        await self.tracker.begin_processing(spec.entity_type, page)

        try:
            result = await self.ingest(spec.entity_type, items)
        except SQLAlchemyError as e:
            await self.db.rollback()
            await self._record_pending_failure(response_id, str(e))
            await self._mark_error(spec, f"Batch write failed for page {page}")
            return None

        if total is not None:
            has_more = page * page_size < total
            total_pages = math.ceil(total / page_size) if page_size else None
        else:
            has_more = len(items) == page_size
            total_pages = None

        response.processed = True
        response.processed_at = utcnow()
        response.attempts += 1
        response.error_message = None

        try:
            # commits the response update together with the state change
            await self.tracker.advance(
                spec.entity_type,
                page,
                has_more,
                succeeded=result.succeeded,
                failed=result.failed,
                total_pages=total_pages,
            )
        except StateConflictError as e:
            logger.error(
                f"Could not advance {spec.entity_type.value} after page {page}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            await self.db.rollback()
            await self._record_pending_failure(response_id, e.message)
            return None

        return result

    async def process_pending_responses(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Process staged responses oldest first."""
        query = (
            select(SyncResponse.id)
            .where(SyncResponse.processed.is_(False))
            .order_by(SyncResponse.received_at, SyncResponse.id)
        )
        if limit:
            query = query.limit(limit)
        ids = list((await self.db.execute(query)).scalars().all())

        stats = {"processed": 0, "failed": 0}
        for response_id in ids:
            response = await self._load_response(response_id)
            if response is None or response.processed:
                continue
            result = await self.process_response(response)
            if result is None:
                stats["failed"] += 1
            else:
                stats["processed"] += 1

        if ids:
            logger.info(f"Processed {stats['processed']} staged responses, {stats['failed']} failed")
        return stats

    async def pending_count(self) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(SyncResponse).where(SyncResponse.processed.is_(False))
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _page_size(response: SyncResponse) -> int:
        body = response.request_body or {}
        page = body.get("page") if isinstance(body, dict) else None
        if isinstance(page, dict) and isinstance(page.get("size"), int) and page["size"] > 0:
            return page["size"]
        return settings.PAGE_SIZE

    async def _load_response(self, response_id: int) -> Optional[SyncResponse]:
        result = await self.db.execute(
            select(SyncResponse)
            .where(SyncResponse.id == response_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _record_pending_failure(self, response_id: int, message: str):
        response = await self._load_response(response_id)
        if response is None:
            return
        response.attempts += 1
        response.error_message = message[:2000]
        await self.db.commit()

    async def _mark_error(self, spec: EntitySpec, message: str):
        try:
            await self.tracker.mark_error(spec.entity_type, message)
        except (StateTransitionError, StateConflictError) as e:
            logger.warning(
                f"Could not mark {spec.entity_type.value} as error: {e.message}",
                extra={"error_context": e.to_dict()}
            )
