"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from core.timeutils import utcnow
from models.base import EntityType, ChunkStatus
from schemas.sync import (
    BacklogReport,
    DeferredReportEntry,
    RepairSummary,
    StuckSyncReport,
    SyncTask,
)


# ============================================================================
# Health Check Schemas
# ============================================================================

class SyncStateInfo(BaseModel):
    """Sync state summary for health check"""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    entity_type: EntityType
    chunk_status: ChunkStatus
    current_page: int
    total_pages: Optional[int] = None
    has_more_pages: bool
    last_sync_status: Optional[str] = None
    last_sync_timestamp: Optional[int] = None
    sync_count: int
    updated_at: datetime


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    sync_states: List[SyncStateInfo] = Field(default_factory=list)
    total_entity_types: int = 0
    failed_entity_types: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.total_entity_types and self.failed_entity_types >= self.total_entity_types:
            self.status = "unhealthy"
        elif self.failed_entity_types:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "healthy",
            "timestamp": "2024-01-15T10:30:00Z",
            "database_connected": True,
            "total_entity_types": 7,
            "failed_entity_types": 0,
            "sync_states": [
                {
                    "entity_type": "product",
                    "chunk_status": "done",
                    "current_page": 42,
                    "total_pages": 180,
                    "has_more_pages": True,
                    "last_sync_status": "in_progress",
                    "last_sync_timestamp": 1705314600,
                    "sync_count": 3,
                    "updated_at": "2024-01-15T10:30:00Z"
                }
            ]
        }
    })


# ============================================================================
# Dashboard Schemas
# ============================================================================

class SyncDashboardRow(BaseModel):
    """One row of the sync_dashboard view"""
    model_config = ConfigDict(use_enum_values=True)

    entity_type: EntityType
    current_page: int
    items_synced: int
    last_sync_at: Optional[int] = Field(None, description="Epoch seconds of the last recorded result")
    last_sync_status: Optional[str] = None
    minutes_since_last_sync: Optional[float] = None
    chunk_status: ChunkStatus
    total_pages: Optional[int] = None
    sync_count: int = 0
    queued_tasks: int = 0
    pending_deferred: int = 0


class SyncErrorEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: Optional[str] = None
    error_message: Optional[str] = None
    error_data: Optional[Dict[str, Any]] = None
    created_at: datetime


class DeferredReportResponse(BaseModel):
    total: int
    abandoned: int
    entries: List[DeferredReportEntry]


# ============================================================================
# Maintenance Schemas
# ============================================================================

class ResetStuckSyncsResponse(BaseModel):
    hours_threshold: float
    results: List[StuckSyncReport]


class ProcessDeferredResponse(BaseModel):
    resolved: int
    remaining: int


class RepairResponse(BaseModel):
    summaries: List[RepairSummary]


class BacklogResponse(BacklogReport):
    pass


class QueueTasksResponse(BaseModel):
    policy: str
    queued: int
    tasks: List[SyncTask]
    skipped: Dict[str, str] = Field(default_factory=dict)
