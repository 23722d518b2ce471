"""
Relationship Resolver: join rows, category parents and deferred edges.

Edges come from each catalog row's ``raw_data``. When the target row exists
the edge is written immediately (join rows use ON CONFLICT DO NOTHING, so
writing an edge twice is harmless). When it does not, a
``deferred_relationships`` row parks the edge until a later pass finds the
target. Deferred rows are deleted once resolved or flagged ``abandoned``
after DEFERRED_MAX_ATTEMPTS; they are never silently dropped.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Tuple
import logging
import uuid

from sqlalchemy import select, update, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.timeutils import utcnow
from catalog_sync.error_log import ErrorLog
from catalog_sync.registry import (
    EdgeSpec,
    edges_for,
    get_edge_spec,
    get_entity_spec,
    resolve_entity_type,
)
from catalog_sync.sql import upsert
from models.base import EntityType
from models.catalog import PublicCategory
from models.deferred import DeferredRelationship
from schemas.projections import extract_edges
from schemas.sync import DeferredReportEntry, RepairSummary

logger = logging.getLogger(__name__)


class RelationshipResolver:
    """
    Owns deferred_relationships end to end and writes every edge.

    ``link_or_defer`` and the repair routines share ``sync_edges``: the
    desired edge set is recomputed from ``raw_data`` and the stored edges
    are brought in line with it.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        error_log: Optional[ErrorLog] = None,
        max_attempts: Optional[int] = None,
        claim_ttl_seconds: Optional[int] = None,
    ):
        self.db = db_session
        self.error_log = error_log or ErrorLog(db_session)
        self.max_attempts = max_attempts or settings.DEFERRED_MAX_ATTEMPTS
        self.claim_ttl = timedelta(
            seconds=claim_ttl_seconds if claim_ttl_seconds is not None else settings.DEFERRED_CLAIM_TTL_SECONDS
        )

    # ------------------------------------------------------------------
    # Edge writes
    # ------------------------------------------------------------------

    async def link_or_defer(self, entity_type, entity_id: Any, raw: Dict[str, Any]) -> Dict[str, int]:
        """Write the edges of one ingested item. Does not commit."""
        entity_type = resolve_entity_type(entity_type)
        return await self.sync_edges(entity_type, entity_id, extract_edges(entity_type, raw))

    async def sync_edges(
        self,
        entity_type: EntityType,
        entity_id: Any,
        edges: Dict[str, List[int]],
    ) -> Dict[str, int]:
        """
        Make the stored edges of one source row match ``edges``.

        Returns counts of inserted, deleted and deferred edges.
        """
        delta = {"inserted": 0, "deleted": 0, "deferred": 0}

        for edge in edges_for(entity_type):
            targets = set(edges.get(edge.relationship_type, []))
            if edge.is_column_edge:
                changes = await self._sync_parent(entity_id, targets)
            else:
                changes = await self._sync_join_rows(edge, entity_id, targets)
            for key, value in changes.items():
                delta[key] += value

        return delta

    async def _existing_ids(self, target: EntityType, ids: Set[int]) -> Set[int]:
        if not ids:
            return set()
        model = get_entity_spec(target).model
        result = await self.db.execute(select(model.id).where(model.id.in_(ids)))
        return set(result.scalars().all())

    async def _sync_join_rows(self, edge: EdgeSpec, entity_id: Any, targets: Set[int]) -> Dict[str, int]:
        join = edge.join_model
        source_col = getattr(join, edge.source_column)
        target_col = getattr(join, edge.target_column)

        linked = set((await self.db.execute(
            select(target_col).where(source_col == entity_id)
        )).scalars().all())
        present = await self._existing_ids(edge.target, targets)
        missing = targets - present

        stale = linked - targets
        if stale:
            await self.db.execute(
                delete(join).where(source_col == entity_id, target_col.in_(stale))
            )

        to_link = present - linked
        if to_link:
            await upsert(
                self.db,
                join,
                [{edge.source_column: entity_id, edge.target_column: target} for target in sorted(to_link)],
                index_elements=[edge.source_column, edge.target_column],
            )

        await self._replace_deferred(edge, entity_id, missing)
        return {"inserted": len(to_link), "deleted": len(stale), "deferred": len(missing)}

    async def _sync_parent(self, entity_id: Any, targets: Set[int]) -> Dict[str, int]:
        edge = get_edge_spec(EntityType.PUBLIC_CATEGORY, "category_parent")
        parent = min(targets) if targets else None

        current = (await self.db.execute(
            select(PublicCategory.parent).where(PublicCategory.id == entity_id)
        )).scalar_one_or_none()

        missing: Set[int] = set()
        new_parent = None
        if parent is not None:
            if await self._existing_ids(EntityType.PUBLIC_CATEGORY, {parent}):
                new_parent = parent
            else:
                missing = {parent}

        if current != new_parent:
            await self.db.execute(
                update(PublicCategory)
                .where(PublicCategory.id == entity_id)
                .values(parent=new_parent)
                .execution_options(synchronize_session=False)
            )

        await self._replace_deferred(edge, entity_id, missing)
        return {
            "inserted": int(new_parent is not None and current != new_parent),
            "deleted": int(current is not None and current != new_parent),
            "deferred": len(missing),
        }

    async def _replace_deferred(self, edge: EdgeSpec, entity_id: Any, missing: Set[int]):
        """Deferred rows for this source and relationship become exactly ``missing``."""
        missing_ids = sorted(str(target) for target in missing)
        await self.db.execute(
            delete(DeferredRelationship).where(
                DeferredRelationship.entity_type == edge.source,
                DeferredRelationship.entity_id == str(entity_id),
                DeferredRelationship.relationship_type == edge.relationship_type,
                DeferredRelationship.target_id.not_in(missing_ids),
            )
        )
        if not missing_ids:
            return

        now = utcnow()
        await upsert(
            self.db,
            DeferredRelationship,
            [
                {
                    "entity_type": edge.source,
                    "entity_id": str(entity_id),
                    "relationship_type": edge.relationship_type,
                    "target_id": target_id,
                    "relationship_data": {
                        "target_type": edge.target.value,
                        "target_id": int(target_id),
                    },
                    "attempts": 0,
                    "abandoned": False,
                    "created_at": now,
                }
                for target_id in missing_ids
            ],
            index_elements=["entity_type", "entity_id", "relationship_type", "target_id"],
        )
        logger.debug(
            f"Deferred {len(missing_ids)} {edge.relationship_type} edge(s) "
            f"for {edge.source.value} {entity_id}"
        )

    # ------------------------------------------------------------------
    # Deferred processing
    # ------------------------------------------------------------------

    async def process_deferred(self, batch_size: Optional[int] = None) -> int:
        """Claim the oldest pending batch and resolve what can be resolved."""
        resolved, _ = await self._process_batch(batch_size or settings.DEFERRED_BATCH_SIZE)
        return resolved

    async def process_until_fixpoint(self, batch_size: Optional[int] = None, max_sweeps: int = 100) -> int:
        """
        Sweep all pending rows repeatedly until a sweep resolves nothing.

        A sweep walks the pending set in id order, one claimed batch at a
        time. Every entry ends up either resolved or still present. A row
        that stays unresolved is charged one attempt per run, however many
        sweeps it takes to reach the fixpoint.
        """
        batch_size = batch_size or settings.DEFERRED_BATCH_SIZE
        total = 0
        charged: Set[int] = set()

        for sweep in range(max_sweeps):
            swept = 0
            after_id = 0
            while True:
                resolved, last_id = await self._process_batch(batch_size, after_id=after_id, charged=charged)
                swept += resolved
                if last_id is None:
                    break
                after_id = last_id

            total += swept
            logger.info(f"Deferred sweep {sweep + 1}: resolved {swept}")
            if swept == 0:
                break

        return total

    async def _claim(self, batch_size: int, after_id: Optional[int]) -> Tuple[str, List[int]]:
        now = utcnow()
        token = str(uuid.uuid4())

        query = (
            select(DeferredRelationship.id)
            .where(
                DeferredRelationship.abandoned.is_(False),
                or_(
                    DeferredRelationship.claimed_at.is_(None),
                    DeferredRelationship.claimed_at < now - self.claim_ttl,
                ),
            )
            .order_by(DeferredRelationship.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        if after_id is not None:
            query = query.where(DeferredRelationship.id > after_id)

        ids = list((await self.db.execute(query)).scalars().all())
        if ids:
            await self.db.execute(
                update(DeferredRelationship)
                .where(DeferredRelationship.id.in_(ids))
                .values(claimed_at=now, claim_token=token)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()
        return token, ids

    async def _process_batch(
        self,
        batch_size: int,
        after_id: Optional[int] = None,
        charged: Optional[Set[int]] = None,
    ) -> Tuple[int, Optional[int]]:
        token, ids = await self._claim(batch_size, after_id)
        if not ids:
            return 0, None

        result = await self.db.execute(
            select(DeferredRelationship)
            .where(DeferredRelationship.claim_token == token)
            .order_by(DeferredRelationship.id)
            .execution_options(populate_existing=True)
        )
        rows = list(result.scalars().all())

        resolved = 0
        now = utcnow()
        for row in rows:
            if await self._resolve(row):
                await self.db.delete(row)
                resolved += 1
                continue

            row.claimed_at = None
            row.claim_token = None
            if charged is not None:
                if row.id in charged:
                    continue
                charged.add(row.id)

            row.attempts += 1
            row.last_attempt_at = now
            if row.attempts >= self.max_attempts:
                row.abandoned = True
                logger.warning(
                    f"Abandoned deferred {row.relationship_type} edge "
                    f"{row.entity_type.value} {row.entity_id} -> {row.target_id} "
                    f"after {row.attempts} attempts"
                )
                await self.error_log.record(
                    "deferred_relationships",
                    f"Deferred {row.relationship_type} edge abandoned after {row.attempts} attempts",
                    {
                        "entity_type": row.entity_type.value,
                        "entity_id": row.entity_id,
                        "relationship_type": row.relationship_type,
                        "target_id": row.target_id,
                    },
                )

        await self.db.commit()
        logger.info(f"Processed {len(rows)} deferred relationships, resolved {resolved}")
        return resolved, max(ids)

    async def _resolve(self, row: DeferredRelationship) -> bool:
        try:
            edge = get_edge_spec(row.entity_type, row.relationship_type)
        except KeyError:
            return False

        source_spec = get_entity_spec(row.entity_type)
        source_id = source_spec.coerce_id(row.entity_id)
        target_id = int(row.target_id)

        if not await self._existing_ids(edge.target, {target_id}):
            return False

        if edge.is_column_edge:
            await self.db.execute(
                update(PublicCategory)
                .where(PublicCategory.id == source_id)
                .values(parent=target_id)
                .execution_options(synchronize_session=False)
            )
        else:
            await upsert(
                self.db,
                edge.join_model,
                [{edge.source_column: source_id, edge.target_column: target_id}],
                index_elements=[edge.source_column, edge.target_column],
            )
        return True

    # ------------------------------------------------------------------
    # Reports and repairs
    # ------------------------------------------------------------------

    async def repair_report(self, include_pending: bool = True) -> List[DeferredReportEntry]:
        """Deferred rows still present, abandoned ones first."""
        query = select(DeferredRelationship).order_by(
            DeferredRelationship.abandoned.desc(), DeferredRelationship.id
        )
        if not include_pending:
            query = query.where(DeferredRelationship.abandoned.is_(True))
        result = await self.db.execute(query)
        return [DeferredReportEntry.model_validate(row) for row in result.scalars().all()]

    async def repair_product_relationships(self, batch_size: int = 500) -> RepairSummary:
        return await self._repair(EntityType.PRODUCT, batch_size)

    async def repair_brand_relationships(self, batch_size: int = 500) -> RepairSummary:
        return await self._repair(EntityType.BRAND, batch_size)

    async def repair_category_parent_relationships(self, batch_size: int = 500) -> RepairSummary:
        return await self._repair(EntityType.PUBLIC_CATEGORY, batch_size)

    async def _repair(self, entity_type: EntityType, batch_size: int) -> RepairSummary:
        """Recompute every edge of ``entity_type`` from ``raw_data``."""
        model = get_entity_spec(entity_type).model
        summary = RepairSummary(entity_type=entity_type)
        last_id = None

        while True:
            query = select(model.id, model.raw_data).order_by(model.id).limit(batch_size)
            if last_id is not None:
                query = query.where(model.id > last_id)
            rows = (await self.db.execute(query)).all()
            if not rows:
                break

            for entity_id, raw in rows:
                summary.rows_scanned += 1
                if not isinstance(raw, dict):
                    continue
                try:
                    edges = extract_edges(entity_type, raw)
                except ValueError as e:
                    summary.failed += 1
                    await self.error_log.record(
                        f"{entity_type.value}_repair",
                        f"Unreadable relationships in raw_data: {e}",
                        {"entity_type": entity_type.value, "entity_id": str(entity_id)},
                    )
                    continue

                delta = await self.sync_edges(entity_type, entity_id, edges)
                summary.edges_inserted += delta["inserted"]
                summary.edges_deleted += delta["deleted"]
                summary.deferred += delta["deferred"]

            await self.db.commit()
            last_id = rows[-1][0]

        logger.info(
            f"Repaired {entity_type.value} relationships: scanned={summary.rows_scanned} "
            f"inserted={summary.edges_inserted} deleted={summary.edges_deleted} "
            f"deferred={summary.deferred} failed={summary.failed}"
        )
        return summary
