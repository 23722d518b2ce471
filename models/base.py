from sqlalchemy import BigInteger, Integer, JSON, Enum
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite test databases)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def enum_values(enum_cls):
    """Store enum values (not member names) as VARCHAR."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=50,
        values_callable=lambda members: [m.value for m in members],
    )


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, enum.Enum):
    """Catalog categories synchronized independently"""
    PRODUCT = "product"
    BRAND = "brand"
    ORGANIZATION = "organization"
    PUBLIC_CATEGORY = "public_category"
    MEDIA = "media"
    ACTIVE_INGREDIENT = "active_ingredient"
    PRODUCT_FAMILY = "product_family"


class ChunkStatus(str, enum.Enum):
    """Status of the chunk (page) currently owned by an entity type"""
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class SyncResultStatus(str, enum.Enum):
    """Outcome recorded in sync_state.last_sync_status"""
    IN_PROGRESS = "in_progress"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"
    RESET = "reset"
