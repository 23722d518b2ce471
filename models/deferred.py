from sqlalchemy import Column, String, Integer, Boolean, DateTime, Index
from core.timeutils import utcnow
from models.base import Base, BigIntPK, JSONType, EntityType, enum_values


class DeferredRelationship(Base):
    """
    An edge recorded before its target row exists.

    Lifecycle:
    - Created by the relationship resolver when an ingested item references a
      target that is not in the store yet
    - Claimed in batches (claimed_at + claim_token) by resolver passes
    - Deleted once the join row (or category parent) has been written
    - Flagged ``abandoned`` after too many unsuccessful attempts; abandoned
      rows stay in place and are surfaced by the repair report
    """
    __tablename__ = "deferred_relationships"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Edge source
    entity_type = Column(enum_values(EntityType), nullable=False)
    entity_id = Column(String(64), nullable=False)

    # Edge target
    relationship_type = Column(String(50), nullable=False)
    target_id = Column(String(64), nullable=False)
    relationship_data = Column(JSONType, nullable=False)

    # Resolution tracking
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    claim_token = Column(String(36), nullable=True)
    abandoned = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "idx_deferred_edge",
            "entity_type", "entity_id", "relationship_type", "target_id",
            unique=True,
        ),
        Index("idx_deferred_pending", "abandoned", "created_at"),
    )
