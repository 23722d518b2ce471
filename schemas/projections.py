"""
Pure projections from provider payloads (raw_data) to typed catalog rows.

Every catalog table stores the provider snapshot in ``raw_data``; the other
columns are derived here. The functions in this module have no side effects
so the repair routines can re-run them over stored ``raw_data`` at any time.
"""

from pydantic import BaseModel, Field, ValidationError, field_validator
from typing import Optional, List, Dict, Any, Type

from models.base import EntityType


# ============================================================================
# Relationship types
# ============================================================================

REL_BRAND = "brand"
REL_CATEGORY = "category"
REL_ORGANIZATION = "organization"
REL_MEDIA = "media"
REL_PRODUCT_FAMILY = "product_family"
REL_ACTIVE_INGREDIENT = "active_ingredient"
REL_CATEGORY_PARENT = "category_parent"

# relationship type -> provider keys holding the references (first match wins)
EDGE_KEYS: Dict[EntityType, Dict[str, tuple]] = {
    EntityType.PRODUCT: {
        REL_BRAND: ("brands",),
        REL_CATEGORY: ("publicCategories",),
        REL_ORGANIZATION: ("organizations",),
        REL_MEDIA: ("photos", "media"),
        REL_PRODUCT_FAMILY: ("productFamilies",),
        REL_ACTIVE_INGREDIENT: ("activeIngredients",),
    },
    EntityType.BRAND: {
        REL_ORGANIZATION: ("organizations",),
    },
}


def _localized(value: Any, locale: str = "en") -> Optional[str]:
    """Pick a locale from a provider translation object ({"en": ..., "nl": ...})."""
    if value is None:
        return None
    if isinstance(value, dict):
        picked = value.get(locale)
        return str(picked) if picked is not None else None
    return str(value)


def _ref_id(ref: Any) -> int:
    """Read a numeric id from a reference given as 12, "12" or {"id": 12}."""
    if isinstance(ref, dict):
        ref = ref.get("id")
    if isinstance(ref, bool) or ref is None:
        raise ValueError(f"Invalid reference: {ref!r}")
    try:
        return int(ref)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid reference: {ref!r}")


def _parent_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return _ref_id(value)


def _object(value: Any, field: str) -> Dict[str, Any]:
    """A nested provider object; missing is empty, anything but a mapping is invalid."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field} must be an object, got {type(value).__name__}")
    return value


def _clean_codes(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, int)):
        value = [value]
    if not isinstance(value, list):
        raise ValueError("ean must be a list")
    return [str(code).strip() for code in value if str(code).strip()]


# ============================================================================
# Projection models
# ============================================================================

class CatalogProjection(BaseModel):
    """Base for per-entity projections; ``to_row`` adds the raw snapshot."""

    def to_row(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        row = self.model_dump()
        row["raw_data"] = raw
        return row


class ProductProjection(CatalogProjection):
    id: str = Field(..., min_length=1, max_length=64)
    status: Optional[str] = None
    name_en: Optional[str] = None
    seo_name_en: Optional[str] = None

    ean: List[str] = Field(default_factory=list)
    ean_gtin8: Optional[str] = None
    ean_gtin12: Optional[str] = None
    ean_gtin13: Optional[str] = None
    ean_gtin14: Optional[str] = None

    artg_id: Optional[str] = None
    pbs: Optional[str] = None
    fred: Optional[str] = None
    z_code: Optional[str] = None

    snomed_ctpp: Optional[str] = None
    snomed_mp: Optional[str] = None
    snomed_mpp: Optional[str] = None
    snomed_mpuu: Optional[str] = None
    snomed_tp: Optional[str] = None
    snomed_tpp: Optional[str] = None
    snomed_tpuu: Optional[str] = None

    public_price: Optional[int] = None
    manufacturer_price: Optional[int] = None
    pharmacist_price: Optional[int] = None

    biocide: Optional[bool] = None
    requires_legal_text: Optional[bool] = None
    replacement: Optional[str] = None

    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @field_validator("id", "replacement", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        if isinstance(v, dict):
            v = v.get("id")
        if v is None:
            return v
        v = str(v).strip()
        return v

    @field_validator("ean", mode="before")
    @classmethod
    def clean_ean(cls, v):
        """Ensure ean is a list of code strings"""
        return _clean_codes(v)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "ProductProjection":
        snomed = _object(raw.get("snomed"), "snomed")
        meta = _object(raw.get("meta"), "meta")
        eans = _clean_codes(raw.get("ean"))
        by_length = {}
        for code in eans:
            # first code of each GTIN length wins
            by_length.setdefault(len(code), code)

        return cls(
            id=raw.get("id"),
            status=raw.get("status"),
            name_en=_localized(raw.get("name")),
            seo_name_en=_localized(raw.get("seoName")),
            ean=eans,
            ean_gtin8=by_length.get(8),
            ean_gtin12=by_length.get(12),
            ean_gtin13=by_length.get(13),
            ean_gtin14=by_length.get(14),
            artg_id=raw.get("artgId"),
            pbs=raw.get("pbs"),
            fred=raw.get("fred"),
            z_code=raw.get("zCode"),
            snomed_ctpp=snomed.get("ctpp"),
            snomed_mp=snomed.get("mp"),
            snomed_mpp=snomed.get("mpp"),
            snomed_mpuu=snomed.get("mpuu"),
            snomed_tp=snomed.get("tp"),
            snomed_tpp=snomed.get("tpp"),
            snomed_tpuu=snomed.get("tpuu"),
            public_price=raw.get("publicPrice"),
            manufacturer_price=raw.get("manufacturerPrice"),
            pharmacist_price=raw.get("pharmacistPrice"),
            biocide=raw.get("biocide"),
            requires_legal_text=raw.get("requiresLegalText"),
            replacement=raw.get("replacement"),
            created_at=meta.get("createdAt"),
            updated_at=meta.get("updatedAt"),
        )


class BrandProjection(CatalogProjection):
    id: int
    name: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "BrandProjection":
        return cls(id=raw.get("id"), name=_localized(raw.get("name")))


class OrganizationProjection(CatalogProjection):
    id: int
    name: Optional[str] = None
    type: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "OrganizationProjection":
        return cls(id=raw.get("id"), name=_localized(raw.get("name")), type=raw.get("type"))


class PublicCategoryProjection(CatalogProjection):
    id: int
    name_en: Optional[str] = None
    order_index: Optional[int] = None
    parent: Optional[int] = None

    @field_validator("parent", mode="before")
    @classmethod
    def coerce_parent(cls, v):
        return _parent_id(v)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "PublicCategoryProjection":
        return cls(
            id=raw.get("id"),
            name_en=_localized(raw.get("name")),
            order_index=raw.get("order", raw.get("orderIndex")),
            parent=raw.get("parent"),
        )


class MediaProjection(CatalogProjection):
    id: int
    type: Optional[str] = None
    photo_type: Optional[str] = None
    storage_path: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "MediaProjection":
        return cls(
            id=raw.get("id"),
            type=raw.get("type"),
            photo_type=raw.get("photoType"),
            storage_path=raw.get("storagePath"),
        )


class NamedProjection(CatalogProjection):
    id: int
    name_en: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "NamedProjection":
        return cls(id=raw.get("id"), name_en=_localized(raw.get("name")))


PROJECTIONS: Dict[EntityType, Type[CatalogProjection]] = {
    EntityType.PRODUCT: ProductProjection,
    EntityType.BRAND: BrandProjection,
    EntityType.ORGANIZATION: OrganizationProjection,
    EntityType.PUBLIC_CATEGORY: PublicCategoryProjection,
    EntityType.MEDIA: MediaProjection,
    EntityType.ACTIVE_INGREDIENT: NamedProjection,
    EntityType.PRODUCT_FAMILY: NamedProjection,
}


# ============================================================================
# Pure functions
# ============================================================================

def project(entity_type: EntityType, raw: Any) -> CatalogProjection:
    """
    Project a raw provider item into its typed row.

    Raises:
        ValueError: if the item is not an object or fails validation
            (pydantic's ValidationError is a ValueError)
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Expected an object, got {type(raw).__name__}")
    projection_cls = PROJECTIONS[EntityType(entity_type)]
    return projection_cls.from_raw(raw)


def extract_edges(entity_type: EntityType, raw: Dict[str, Any]) -> Dict[str, List[int]]:
    """
    Relationship targets referenced by a raw item, keyed by relationship type.

    Target ids are de-duplicated and sorted so the result is deterministic.
    The category parent edge is returned under ``category_parent``.
    """
    entity_type = EntityType(entity_type)
    edges: Dict[str, List[int]] = {}

    for relationship_type, keys in EDGE_KEYS.get(entity_type, {}).items():
        refs = None
        for key in keys:
            if raw.get(key) is not None:
                refs = raw[key]
                break
        if refs is None:
            continue
        if not isinstance(refs, list):
            refs = [refs]
        edges[relationship_type] = sorted({_ref_id(ref) for ref in refs})

    if entity_type == EntityType.PUBLIC_CATEGORY:
        parent = _parent_id(raw.get("parent"))
        if parent is not None:
            edges[REL_CATEGORY_PARENT] = [parent]

    return edges


def external_id(raw: Any) -> Optional[str]:
    """Best-effort id of a raw item for error reporting."""
    if isinstance(raw, dict) and raw.get("id") is not None:
        return str(raw["id"])
    return None


__all__ = [
    "CatalogProjection",
    "ProductProjection",
    "BrandProjection",
    "OrganizationProjection",
    "PublicCategoryProjection",
    "MediaProjection",
    "NamedProjection",
    "ValidationError",
    "project",
    "extract_edges",
    "external_id",
]
