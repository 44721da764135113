# flask_app/models/store/customer.py

from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class SubscriberStatus(str, enum.Enum):
    SUBSCRIBED = "subscribed"
    NOT_ACTIVE = "not_active"
    UNSUBSCRIBED = "unsubscribed"
    UNCONFIRMED = "unconfirmed"

    @classmethod
    def from_source(cls, value) -> "SubscriberStatus":
        """Accept either the enum value or the numeric status codes used by storefronts."""
        numeric = {"1": cls.SUBSCRIBED, "2": cls.NOT_ACTIVE, "3": cls.UNSUBSCRIBED, "4": cls.UNCONFIRMED}
        text = str(value).strip().lower() if value is not None else ""
        if text in numeric:
            return numeric[text]
        try:
            return cls(text)
        except ValueError:
            return cls.SUBSCRIBED


class Customer(BaseModel):
    """Destination customer account."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    website_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    store_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    email: Mapped[str] = mapped_column(db.String(255), nullable=False)
    firstname: Mapped[str] = mapped_column(db.String(255), nullable=False)
    lastname: Mapped[str] = mapped_column(db.String(255), nullable=False)
    middlename: Mapped[str | None] = mapped_column(db.String(255))
    prefix: Mapped[str | None] = mapped_column(db.String(40))
    suffix: Mapped[str | None] = mapped_column(db.String(40))
    dob: Mapped[date | None] = mapped_column(db.Date)
    gender: Mapped[int | None] = mapped_column(db.Integer)
    taxvat: Mapped[str | None] = mapped_column(db.String(50))
    group_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    force_password_reset: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    default_billing_id: Mapped[int | None] = mapped_column(db.Integer)
    default_shipping_id: Mapped[int | None] = mapped_column(db.Integer)
    source_system: Mapped[str | None] = mapped_column(db.String(50))
    source_id: Mapped[int | None] = mapped_column(db.Integer)
    attributes_json: Mapped[dict | None] = mapped_column(db.JSON)

    addresses = relationship(
        "CustomerAddress",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="CustomerAddress.id",
    )

    __table_args__ = (UniqueConstraint("website_id", "email", name="uq_customers_website_email"),)


class CustomerAddress(BaseModel):
    __tablename__ = "customer_addresses"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    firstname: Mapped[str | None] = mapped_column(db.String(255))
    lastname: Mapped[str | None] = mapped_column(db.String(255))
    company: Mapped[str | None] = mapped_column(db.String(255))
    street: Mapped[str | None] = mapped_column(db.Text)
    city: Mapped[str | None] = mapped_column(db.String(255))
    region: Mapped[str | None] = mapped_column(db.String(255))
    region_id: Mapped[int | None] = mapped_column(db.Integer)
    postcode: Mapped[str | None] = mapped_column(db.String(40))
    country_id: Mapped[str | None] = mapped_column(db.String(2))
    telephone: Mapped[str | None] = mapped_column(db.String(64))
    fax: Mapped[str | None] = mapped_column(db.String(64))

    customer = relationship("Customer", back_populates="addresses")

    __table_args__ = (Index("idx_customer_addresses_customer", "customer_id"),)

    def matches(self, street: str | None, postcode: str | None) -> bool:
        return (self.street or "") == (street or "") and (self.postcode or "") == (postcode or "")


class NewsletterSubscriber(BaseModel):
    __tablename__ = "newsletter_subscribers"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    store_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    status: Mapped[SubscriberStatus] = mapped_column(
        Enum(SubscriberStatus, name="newsletter_status_enum"),
        nullable=False,
        default=SubscriberStatus.SUBSCRIBED,
    )
    confirm_code: Mapped[str | None] = mapped_column(db.String(32))
