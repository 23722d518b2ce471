"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Declarative base, portable column types and shared enums
        (EntityType, ChunkStatus, SyncResultStatus)
    catalog: Catalog rows (products, brands, organizations, public_categories,
        media, active_ingredients, product_families)
    links: Many-to-many join rows between catalog rows
    sync_state: Per-entity-type cursor and chunk status
    sync_error: Append-only error log
    deferred: Relationships waiting for their target row
    queue: Durable task queue and its archive
    sync_response: Raw provider responses staged before ingestion

Database Schema:
    All models inherit from the Base declarative class. JSON columns are
    JSONB on PostgreSQL and JSON on other dialects.

Usage:
    from models import Product, SyncState, DeferredRelationship
    from models.base import EntityType, ChunkStatus

Relationships:
    - Product -> Brand, PublicCategory, Organization, Media, ProductFamily,
      ActiveIngredient (join tables)
    - Brand -> Organization (brand_organizations)
    - PublicCategory -> PublicCategory (parent column)
"""

from models.base import Base, EntityType, ChunkStatus, SyncResultStatus
from models.catalog import (
    Product,
    Brand,
    Organization,
    PublicCategory,
    Media,
    ActiveIngredient,
    ProductFamily,
)
from models.links import (
    ProductBrand,
    ProductCategory,
    ProductMedia,
    ProductOrganization,
    ProductProductFamily,
    ProductActiveIngredient,
    BrandOrganization,
)
from models.sync_state import SyncState
from models.sync_error import SyncError
from models.deferred import DeferredRelationship
from models.queue import QueueMessage, ArchivedQueueMessage
from models.sync_response import SyncResponse

__all__ = [
    "Base",
    "EntityType",
    "ChunkStatus",
    "SyncResultStatus",
    "Product",
    "Brand",
    "Organization",
    "PublicCategory",
    "Media",
    "ActiveIngredient",
    "ProductFamily",
    "ProductBrand",
    "ProductCategory",
    "ProductMedia",
    "ProductOrganization",
    "ProductProductFamily",
    "ProductActiveIngredient",
    "BrandOrganization",
    "SyncState",
    "SyncError",
    "DeferredRelationship",
    "QueueMessage",
    "ArchivedQueueMessage",
    "SyncResponse",
]
