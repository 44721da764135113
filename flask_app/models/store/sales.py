# flask_app/models/store/sales.py

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class SalesDocumentKind(str, enum.Enum):
    """Order follow-up documents that share one table."""

    INVOICE = "invoice"
    SHIPMENT = "shipment"
    CREDITMEMO = "creditmemo"


class SalesOrder(BaseModel):
    __tablename__ = "sales_orders"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    increment_id: Mapped[str] = mapped_column(db.String(50), nullable=False, unique=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(db.String(255))
    customer_firstname: Mapped[str | None] = mapped_column(db.String(255))
    customer_lastname: Mapped[str | None] = mapped_column(db.String(255))
    customer_is_guest: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    store_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    state: Mapped[str] = mapped_column(db.String(32), nullable=False, default="new")
    status: Mapped[str] = mapped_column(db.String(32), nullable=False, default="pending")
    currency_code: Mapped[str] = mapped_column(db.String(3), nullable=False, default="USD")
    subtotal: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    shipping_amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    tax_amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    discount_amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    grand_total: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    base_grand_total: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    shipping_method: Mapped[str | None] = mapped_column(db.String(120))
    payment_method: Mapped[str | None] = mapped_column(db.String(120))
    billing_address_json: Mapped[dict | None] = mapped_column(db.JSON)
    shipping_address_json: Mapped[dict | None] = mapped_column(db.JSON)
    placed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    source_system: Mapped[str | None] = mapped_column(db.String(50))
    source_id: Mapped[int | None] = mapped_column(db.Integer)

    items = relationship(
        "SalesOrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SalesOrderItem.id",
    )
    comments = relationship(
        "SalesOrderComment",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SalesOrderComment.id",
    )
    documents = relationship("SalesDocument", back_populates="order", cascade="all, delete-orphan")


class SalesOrderItem(BaseModel):
    __tablename__ = "sales_order_items"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("sales_orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    sku: Mapped[str] = mapped_column(db.String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(db.String(255))
    product_type: Mapped[str] = mapped_column(db.String(32), nullable=False, default="simple")
    qty_ordered: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    price: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)
    row_total: Mapped[Decimal] = mapped_column(db.Numeric(12, 4), nullable=False, default=0)

    order = relationship("SalesOrder", back_populates="items")

    __table_args__ = (Index("idx_sales_order_items_order", "order_id"),)


class SalesOrderComment(BaseModel):
    __tablename__ = "sales_order_comments"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("sales_orders.id", ondelete="CASCADE"), nullable=False)
    comment: Mapped[str] = mapped_column(db.Text, nullable=False)
    status: Mapped[str | None] = mapped_column(db.String(32))
    is_customer_notified: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    commented_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    order = relationship("SalesOrder", back_populates="comments")


class SalesDocument(BaseModel):
    """Invoice, shipment or credit memo attached to an order."""

    __tablename__ = "sales_documents"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    kind: Mapped[SalesDocumentKind] = mapped_column(
        Enum(SalesDocumentKind, name="sales_document_kind_enum"),
        nullable=False,
    )
    increment_id: Mapped[str] = mapped_column(db.String(50), nullable=False)
    order_id: Mapped[int] = mapped_column(ForeignKey("sales_orders.id", ondelete="CASCADE"), nullable=False)
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("sales_documents.id", ondelete="SET NULL"))
    state: Mapped[str | None] = mapped_column(db.String(32))
    grand_total: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))
    total_qty: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 4))
    items_json: Mapped[list | None] = mapped_column(db.JSON)
    tracks_json: Mapped[list | None] = mapped_column(db.JSON)
    issued_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    source_system: Mapped[str | None] = mapped_column(db.String(50))
    source_id: Mapped[int | None] = mapped_column(db.Integer)

    order = relationship("SalesOrder", back_populates="documents")

    __table_args__ = (
        UniqueConstraint("kind", "increment_id", name="uq_sales_documents_kind_increment"),
        Index("idx_sales_documents_order", "order_id"),
    )
