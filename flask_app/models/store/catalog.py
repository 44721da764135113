# flask_app/models/store/catalog.py

from __future__ import annotations

import enum
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ProductLinkType(str, enum.Enum):
    CONFIGURABLE = "configurable"
    GROUPED = "grouped"
    BUNDLE = "bundle"


class Category(BaseModel):
    __tablename__ = "catalog_categories"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("catalog_categories.id", ondelete="SET NULL"))
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    url_key: Mapped[str | None] = mapped_column(db.String(255))
    path: Mapped[str | None] = mapped_column(db.String(255))
    level: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    position: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    include_in_menu: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(db.Text)

    __table_args__ = (Index("idx_catalog_categories_parent_url_key", "parent_id", "url_key"),)


class Product(BaseModel):
    __tablename__ = "catalog_products"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True)
    type_id: Mapped[str] = mapped_column(db.String(32), nullable=False, default="simple")
    attribute_set: Mapped[str] = mapped_column(db.String(64), nullable=False, default="Default")
    name: Mapped[str | None] = mapped_column(db.String(255))
    description: Mapped[str | None] = mapped_column(db.Text)
    short_description: Mapped[str | None] = mapped_column(db.Text)
    price: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))
    special_price: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))
    weight: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))
    status: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    visibility: Mapped[int] = mapped_column(db.Integer, nullable=False, default=4)
    url_key: Mapped[str | None] = mapped_column(db.String(255))
    category_ids: Mapped[list | None] = mapped_column(db.JSON)
    attributes_json: Mapped[dict | None] = mapped_column(db.JSON)
    source_system: Mapped[str | None] = mapped_column(db.String(50))
    source_id: Mapped[int | None] = mapped_column(db.Integer)

    options = relationship(
        "ProductOption",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductOption.sort_order",
    )
    group_prices = relationship("ProductGroupPrice", back_populates="product", cascade="all, delete-orphan")
    stock_item = relationship("StockItem", back_populates="product", uselist=False, cascade="all, delete-orphan")


class ProductLink(BaseModel):
    """Parent/child relation for configurable, grouped and bundle products."""

    __tablename__ = "catalog_product_links"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    parent_id: Mapped[int] = mapped_column(ForeignKey("catalog_products.id", ondelete="CASCADE"), nullable=False)
    child_id: Mapped[int] = mapped_column(ForeignKey("catalog_products.id", ondelete="CASCADE"), nullable=False)
    link_type: Mapped[ProductLinkType] = mapped_column(
        Enum(ProductLinkType, name="product_link_type_enum"),
        nullable=False,
    )
    super_attributes: Mapped[list | None] = mapped_column(db.JSON)
    qty: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))
    option_title: Mapped[str | None] = mapped_column(db.String(255))
    position: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("parent_id", "child_id", "link_type", name="uq_catalog_product_links"),
    )


class ProductOption(BaseModel):
    """Customisable option (text field, drop-down, ...) of a product."""

    __tablename__ = "catalog_product_options"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("catalog_products.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(db.String(255), nullable=False)
    option_type: Mapped[str] = mapped_column(db.String(32), nullable=False)
    is_require: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    price: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))
    price_type: Mapped[str | None] = mapped_column(db.String(16))
    max_characters: Mapped[int | None] = mapped_column(db.Integer)
    file_extension: Mapped[str | None] = mapped_column(db.String(255))
    values_json: Mapped[list | None] = mapped_column(db.JSON)

    product = relationship("Product", back_populates="options")


class ProductGroupPrice(BaseModel):
    __tablename__ = "catalog_product_group_prices"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("catalog_products.id", ondelete="CASCADE"), nullable=False)
    website_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    customer_group_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False)

    product = relationship("Product", back_populates="group_prices")

    __table_args__ = (
        UniqueConstraint(
            "product_id",
            "website_id",
            "customer_group_id",
            name="uq_catalog_product_group_prices",
        ),
    )


class StockItem(BaseModel):
    __tablename__ = "stock_items"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("catalog_products.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    qty: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    is_in_stock: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    manage_stock: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    min_qty: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    min_sale_qty: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=1)
    max_sale_qty: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=10000)
    backorders: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    notify_stock_qty: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))

    product = relationship("Product", back_populates="stock_item")


class ProductAttribute(BaseModel):
    """User-defined catalog attribute with its option labels and attribute set assignments."""

    __tablename__ = "catalog_product_attributes"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    attribute_code: Mapped[str] = mapped_column(db.String(60), nullable=False, unique=True)
    frontend_label: Mapped[str] = mapped_column(db.String(255), nullable=False)
    frontend_input: Mapped[str] = mapped_column(db.String(32), nullable=False, default="text")
    backend_type: Mapped[str] = mapped_column(db.String(16), nullable=False, default="varchar")
    scope: Mapped[str] = mapped_column(db.String(16), nullable=False, default="store")
    is_required: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_unique: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    default_value: Mapped[str | None] = mapped_column(db.Text)
    position: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    flags: Mapped[dict | None] = mapped_column(db.JSON)
    options: Mapped[list | None] = mapped_column(db.JSON)
    attribute_sets: Mapped[list | None] = mapped_column(db.JSON)
    attribute_group: Mapped[str | None] = mapped_column(db.String(255))
