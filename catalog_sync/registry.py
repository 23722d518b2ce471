"""
Static registry of synchronized entity types and the edges between them.

Each entity type maps to one provider query endpoint, one catalog table and
the payload formats the endpoint accepts. Edges describe where a
relationship found in ``raw_data`` is written: a join table, or (for
category parents) a column on the source row.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Dict, Any, List

from core.exceptions import UnknownEntityTypeError
from models.base import EntityType
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
from schemas.projections import (
    REL_BRAND,
    REL_CATEGORY,
    REL_ORGANIZATION,
    REL_MEDIA,
    REL_PRODUCT_FAMILY,
    REL_ACTIVE_INGREDIENT,
    REL_CATEGORY_PARENT,
)
from schemas.sync import PayloadFormat


@dataclass(frozen=True)
class EntitySpec:
    entity_type: EntityType
    endpoint: str
    model: Any
    supported_formats: Tuple[PayloadFormat, ...]
    default_format: PayloadFormat = PayloadFormat.SIMPLE
    sort_field: str = "id"
    id_type: type = int

    @property
    def sync_type(self) -> str:
        """Label used for sync_errors.sync_type"""
        return f"{self.entity_type.value}_sync"

    def coerce_id(self, value: Any) -> Any:
        return self.id_type(value)


@dataclass(frozen=True)
class EdgeSpec:
    source: EntityType
    relationship_type: str
    target: EntityType
    join_model: Optional[Any] = None
    source_column: Optional[str] = None
    target_column: Optional[str] = None

    @property
    def is_column_edge(self) -> bool:
        return self.join_model is None


_BOTH = (PayloadFormat.SIMPLE, PayloadFormat.NESTED)
_SIMPLE_ONLY = (PayloadFormat.SIMPLE,)

ENTITY_SPECS: Dict[EntityType, EntitySpec] = {
    EntityType.PRODUCT: EntitySpec(
        EntityType.PRODUCT, "products/query", Product, _BOTH, id_type=str
    ),
    EntityType.BRAND: EntitySpec(EntityType.BRAND, "brands/query", Brand, _BOTH),
    EntityType.ORGANIZATION: EntitySpec(
        EntityType.ORGANIZATION, "organizations/query", Organization, _BOTH
    ),
    EntityType.PUBLIC_CATEGORY: EntitySpec(
        EntityType.PUBLIC_CATEGORY, "public-categories/query", PublicCategory, _BOTH
    ),
    EntityType.MEDIA: EntitySpec(EntityType.MEDIA, "media/query", Media, _SIMPLE_ONLY),
    EntityType.ACTIVE_INGREDIENT: EntitySpec(
        EntityType.ACTIVE_INGREDIENT, "active-ingredients/query", ActiveIngredient, _SIMPLE_ONLY
    ),
    EntityType.PRODUCT_FAMILY: EntitySpec(
        EntityType.PRODUCT_FAMILY, "product-families/query", ProductFamily, _SIMPLE_ONLY
    ),
}

EDGE_SPECS: Tuple[EdgeSpec, ...] = (
    EdgeSpec(EntityType.PRODUCT, REL_BRAND, EntityType.BRAND,
             ProductBrand, "product_id", "brand_id"),
    EdgeSpec(EntityType.PRODUCT, REL_CATEGORY, EntityType.PUBLIC_CATEGORY,
             ProductCategory, "product_id", "category_id"),
    EdgeSpec(EntityType.PRODUCT, REL_ORGANIZATION, EntityType.ORGANIZATION,
             ProductOrganization, "product_id", "organization_id"),
    EdgeSpec(EntityType.PRODUCT, REL_MEDIA, EntityType.MEDIA,
             ProductMedia, "product_id", "media_id"),
    EdgeSpec(EntityType.PRODUCT, REL_PRODUCT_FAMILY, EntityType.PRODUCT_FAMILY,
             ProductProductFamily, "product_id", "product_family_id"),
    EdgeSpec(EntityType.PRODUCT, REL_ACTIVE_INGREDIENT, EntityType.ACTIVE_INGREDIENT,
             ProductActiveIngredient, "product_id", "active_ingredient_id"),
    EdgeSpec(EntityType.BRAND, REL_ORGANIZATION, EntityType.ORGANIZATION,
             BrandOrganization, "brand_id", "organization_id"),
    # column edge: public_categories.parent
    EdgeSpec(EntityType.PUBLIC_CATEGORY, REL_CATEGORY_PARENT, EntityType.PUBLIC_CATEGORY),
)


def resolve_entity_type(entity_type: Any) -> EntityType:
    """Parse an entity type identifier, raising UnknownEntityTypeError."""
    if isinstance(entity_type, EntityType):
        return entity_type
    try:
        return EntityType(entity_type)
    except ValueError:
        raise UnknownEntityTypeError(
            f"Unknown entity type: {entity_type!r}",
            context={
                "entity_type": entity_type,
                "known": [e.value for e in EntityType],
            }
        )


def get_entity_spec(entity_type: Any) -> EntitySpec:
    return ENTITY_SPECS[resolve_entity_type(entity_type)]


def edges_for(entity_type: Any) -> List[EdgeSpec]:
    source = resolve_entity_type(entity_type)
    return [edge for edge in EDGE_SPECS if edge.source == source]


def get_edge_spec(entity_type: Any, relationship_type: str) -> EdgeSpec:
    for edge in edges_for(entity_type):
        if edge.relationship_type == relationship_type:
            return edge
    raise KeyError(f"No {relationship_type!r} edge for {entity_type}")
