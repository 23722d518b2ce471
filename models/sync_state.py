from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Boolean
from core.timeutils import utcnow
from models.base import Base, EntityType, ChunkStatus, enum_values


class SyncState(Base):
    """
    Pagination cursor and chunk status per entity type.

    Purpose:
    - Resume a sync pass from the last processed page
    - Serialize state transitions per entity type (compare-and-set on updated_at)
    - Feed the sync dashboard and the stuck-sync supervisor

    Design:
    - One row per entity type (entity_type is the primary key)
    - current_page is the highest page processed in the current pass (1-based,
      0 = nothing processed yet) and never decreases within a pass
    - dispatched_page is the highest page enqueued in the current pass
    - updated_at strictly increases on every transition
    """
    __tablename__ = "sync_state"

    entity_type = Column(enum_values(EntityType), primary_key=True)

    # Cursor
    current_page = Column(Integer, nullable=False, default=0)
    dispatched_page = Column(Integer, nullable=False, default=0)
    has_more_pages = Column(Boolean, nullable=False, default=True)
    total_pages = Column(Integer, nullable=True)

    # Status
    chunk_status = Column(enum_values(ChunkStatus), nullable=False, default=ChunkStatus.IDLE, index=True)
    last_sync_status = Column(String(50), nullable=True)
    last_sync_timestamp = Column(BigInteger, nullable=True)  # epoch seconds
    sync_count = Column(Integer, nullable=False, default=0)

    # Statistics
    last_batch_succeeded = Column(Integer, nullable=False, default=0)
    last_batch_failed = Column(Integer, nullable=False, default=0)
    total_items_synced = Column(BigInteger, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    @property
    def next_page(self) -> int:
        """Next page that has not been processed or enqueued in this pass."""
        return max(self.current_page or 0, self.dispatched_page or 0) + 1
