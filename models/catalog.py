from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, Text, Index
from core.timeutils import utcnow
from models.base import Base, JSONType


class CatalogRow:
    """
    Columns shared by every catalog table.

    ``raw_data`` is the provider snapshot and the source of truth; every other
    column is a projection of it and can be recomputed by the repair routines.
    """
    raw_data = Column(JSONType, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Product(CatalogRow, Base):
    """
    Products keyed by the provider's string id (e.g. "M0A1B2C3").

    Field mapping (provider -> column):
    - name.en -> name_en
    - seoName.en -> seo_name_en
    - ean[] -> ean, split by length into ean_gtin8/12/13/14
    - snomed.{ctpp,mp,...} -> snomed_*
    - meta.createdAt / meta.updatedAt -> created_at / updated_at (epoch seconds)
    """
    __tablename__ = "products"

    id = Column(String(64), primary_key=True)

    status = Column(String(50), nullable=True, index=True)
    name_en = Column(Text, nullable=True)
    seo_name_en = Column(Text, nullable=True)

    ean = Column(JSONType, nullable=True)
    ean_gtin8 = Column(String(8), nullable=True)
    ean_gtin12 = Column(String(12), nullable=True)
    ean_gtin13 = Column(String(13), nullable=True, index=True)
    ean_gtin14 = Column(String(14), nullable=True)

    artg_id = Column(String(64), nullable=True)
    pbs = Column(String(64), nullable=True)
    fred = Column(String(64), nullable=True)
    z_code = Column(String(64), nullable=True)

    snomed_ctpp = Column(String(64), nullable=True)
    snomed_mp = Column(String(64), nullable=True)
    snomed_mpp = Column(String(64), nullable=True)
    snomed_mpuu = Column(String(64), nullable=True)
    snomed_tp = Column(String(64), nullable=True)
    snomed_tpp = Column(String(64), nullable=True)
    snomed_tpuu = Column(String(64), nullable=True)

    public_price = Column(Integer, nullable=True)
    manufacturer_price = Column(Integer, nullable=True)
    pharmacist_price = Column(Integer, nullable=True)

    biocide = Column(Boolean, nullable=True)
    requires_legal_text = Column(Boolean, nullable=True)
    replacement = Column(String(64), nullable=True)

    # Provider timestamps (epoch seconds)
    created_at = Column(BigInteger, nullable=True)
    updated_at = Column(BigInteger, nullable=True, index=True)


class Brand(CatalogRow, Base):
    __tablename__ = "brands"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(Text, nullable=True)


class Organization(CatalogRow, Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(Text, nullable=True)
    type = Column(String(100), nullable=True)


class PublicCategory(CatalogRow, Base):
    """
    Public categories form a tree through ``parent``.

    ``parent`` is only set once the parent row exists; otherwise the edge is
    parked in deferred_relationships as a ``category_parent`` relationship.
    """
    __tablename__ = "public_categories"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name_en = Column(Text, nullable=True)
    order_index = Column(Integer, nullable=True)
    parent = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_public_categories_parent_order", "parent", "order_index"),
    )


class Media(CatalogRow, Base):
    __tablename__ = "media"

    id = Column(Integer, primary_key=True, autoincrement=False)
    type = Column(String(100), nullable=True)
    photo_type = Column(String(100), nullable=True)
    storage_path = Column(Text, nullable=True)


class ActiveIngredient(CatalogRow, Base):
    __tablename__ = "active_ingredients"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name_en = Column(Text, nullable=True)


class ProductFamily(CatalogRow, Base):
    __tablename__ = "product_families"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name_en = Column(Text, nullable=True)
