from sqlalchemy import Column, String, Integer, DateTime, Text, Index
from core.timeutils import utcnow
from models.base import Base, BigIntPK, JSONType


class QueueMessage(Base):
    """
    Durable queue message with pgmq semantics.

    - ``vt`` (visibility time): the message is only readable when vt <= now;
      reading pushes vt forward by the visibility timeout, so a message read
      by a crashed worker becomes visible again automatically
    - ``read_ct`` counts deliveries and doubles as the attempt counter
    - ``message_group`` is the entity type, used to cap work in flight
    """
    __tablename__ = "sync_queue"

    msg_id = Column(BigIntPK, primary_key=True, autoincrement=True)
    queue_name = Column(String(100), nullable=False)
    message_group = Column(String(50), nullable=True)
    message = Column(JSONType, nullable=False)
    read_ct = Column(Integer, nullable=False, default=0)
    enqueued_at = Column(DateTime, nullable=False, default=utcnow)
    vt = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_queue_visible", "queue_name", "vt", "msg_id"),
        Index("idx_queue_group", "queue_name", "message_group"),
        # msg_ids are never reused, even after the newest message is archived
        {"sqlite_autoincrement": True},
    )


class ArchivedQueueMessage(Base):
    """Messages moved out of the live queue after terminal failure."""
    __tablename__ = "sync_queue_archive"

    msg_id = Column(BigIntPK, primary_key=True, autoincrement=False)
    queue_name = Column(String(100), nullable=False, index=True)
    message_group = Column(String(50), nullable=True)
    message = Column(JSONType, nullable=False)
    read_ct = Column(Integer, nullable=False, default=0)
    enqueued_at = Column(DateTime, nullable=False)
    archived_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    archive_reason = Column(Text, nullable=True)
