"""
Pydantic schemas for sync tasks, outbound requests and maintenance results
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from core.timeutils import utcnow
from models.base import EntityType


class PayloadFormat(str, Enum):
    """Request body shapes accepted by the provider's query endpoints"""
    SIMPLE = "simple"    # "sorting": {"id": "ASC"}
    NESTED = "nested"    # "sorting": {"id": {"direction": "ASC"}}


class QueuePolicy(str, Enum):
    STEADY = "steady"
    AGGRESSIVE = "aggressive"
    RECOVERY = "recovery"
    MANUAL = "manual"


# ============================================================================
# Queue payloads
# ============================================================================

class SyncTask(BaseModel):
    """Message body of one queued page fetch"""
    entity_type: EntityType
    page: int = Field(..., ge=1)
    payload_format: Optional[PayloadFormat] = None
    policy: QueuePolicy = QueuePolicy.STEADY
    enqueued_at: datetime = Field(default_factory=utcnow)


class ReceivedTask(BaseModel):
    """A task as delivered by the queue: message id and delivery count attached"""
    msg_id: int
    read_ct: int
    task: SyncTask

    @property
    def attempts(self) -> int:
        return self.read_ct


# ============================================================================
# Outbound requests
# ============================================================================

class CatalogRequest(BaseModel):
    """Fully built provider request for one page"""
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    page: int
    page_size: int
    endpoint: str
    payload_format: PayloadFormat
    body: Dict[str, Any]


class FormatCheck(BaseModel):
    entity_type: EntityType
    simple_format_works: bool
    nested_format_works: bool


# ============================================================================
# Results
# ============================================================================

class IngestResult(BaseModel):
    """Per-batch ingestion counts"""
    inserted: int = 0
    updated: int = 0
    deferred: int = 0
    failed: int = 0

    @property
    def succeeded(self) -> int:
        return self.inserted + self.updated


class StuckSyncReport(BaseModel):
    entity_type: EntityType
    was_stuck: bool


class BacklogReport(BaseModel):
    processed: int = 0
    failed: int = 0
    abandoned: int = 0
    remaining: int = 0


class RepairSummary(BaseModel):
    entity_type: EntityType
    rows_scanned: int = 0
    edges_inserted: int = 0
    edges_deleted: int = 0
    deferred: int = 0
    failed: int = 0


class DeferredReportEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: EntityType
    entity_id: str
    relationship_type: str
    target_id: str
    attempts: int
    abandoned: bool
    created_at: datetime
    last_attempt_at: Optional[datetime] = None


class DispatchResult(BaseModel):
    """Tasks enqueued by one run of a queueing policy"""
    tasks: List[SyncTask] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)

    @property
    def queued(self) -> int:
        return len(self.tasks)
