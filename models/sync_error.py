from sqlalchemy import Column, String, Text, DateTime, Index
from core.timeutils import utcnow
from models.base import Base, BigIntPK, JSONType


class SyncError(Base):
    """
    Append-only record of sync failures for diagnosis.

    Rows are inserted by the error log and never updated or deleted by the
    engine. ``error_data`` holds the structured context of the exception
    (entity type, page, item id, cause).
    """
    __tablename__ = "sync_errors"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sync_type = Column(String(100), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    error_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_sync_errors_type_created", "sync_type", "created_at"),
    )
