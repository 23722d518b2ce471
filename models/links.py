from sqlalchemy import Column, String, Integer, ForeignKey
from models.base import Base


class ProductBrand(Base):
    __tablename__ = "product_brands"

    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True, index=True)


class ProductCategory(Base):
    __tablename__ = "product_categories"

    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    category_id = Column(Integer, ForeignKey("public_categories.id", ondelete="CASCADE"), primary_key=True, index=True)


class ProductMedia(Base):
    __tablename__ = "product_media"

    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    media_id = Column(Integer, ForeignKey("media.id", ondelete="CASCADE"), primary_key=True, index=True)


class ProductOrganization(Base):
    __tablename__ = "product_organizations"

    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True, index=True)


class ProductProductFamily(Base):
    __tablename__ = "product_product_families"

    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    product_family_id = Column(Integer, ForeignKey("product_families.id", ondelete="CASCADE"), primary_key=True, index=True)


class ProductActiveIngredient(Base):
    __tablename__ = "product_active_ingredients"

    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    active_ingredient_id = Column(Integer, ForeignKey("active_ingredients.id", ondelete="CASCADE"), primary_key=True, index=True)


class BrandOrganization(Base):
    __tablename__ = "brand_organizations"

    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True, index=True)
