from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, Boolean, Index
from core.timeutils import utcnow
from models.base import Base, BigIntPK, JSONType, EntityType, enum_values


class SyncResponse(Base):
    """
    Raw provider responses staged before ingestion.

    Purpose:
    - Decouple the fetch (queue task) from ingestion: the task is acked once
      its response is durable here
    - Reprocessing capability for the response backlog
    - Debugging and data lineage

    Design Decisions:
    - content_hash detects identical re-fetches of the same page
    - attempts counts ingestion attempts; the backlog cleaner abandons
      responses past RESPONSE_MAX_ATTEMPTS
    """
    __tablename__ = "sync_responses"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Request identification
    entity_type = Column(enum_values(EntityType), nullable=False, index=True)
    page = Column(Integer, nullable=False)
    request_body = Column(JSONType, nullable=True)
    queue_msg_id = Column(BigInteger, nullable=True)

    # Response storage
    status_code = Column(Integer, nullable=True)
    body = Column(JSONType, nullable=False)
    content_hash = Column(String(64), nullable=True, index=True)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    # Processing tracking
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_responses_pending", "processed", "received_at"),
    )
