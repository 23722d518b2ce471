"""
Naive-UTC time helpers shared by models and sync components.

All timestamps stored by the engine are naive UTC so that they compare
consistently on PostgreSQL ``timestamp`` columns and SQLite text columns.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_seconds(value: Optional[datetime] = None) -> int:
    """Unix epoch seconds for a naive UTC datetime (defaults to now)."""
    value = value or utcnow()
    return int(value.replace(tzinfo=timezone.utc).timestamp())
