"""Sales orders with their line items and status comments."""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import select

from flask_app.models import Product, SalesOrder, SalesOrderComment, SalesOrderItem

from .base import (
    EntityHandler,
    ForeignKey,
    clean_string,
    is_empty,
    json_safe,
    optional_string,
    parse_bool,
    parse_datetime,
    parse_decimal,
    parse_json_list,
    parse_json_object,
    parse_int,
)
from .customer import EMAIL_PATTERN

logger = logging.getLogger(__name__)

INCREMENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-_]+$")
ZERO = Decimal("0")


def parse_items(value: Any) -> list[dict[str, Any]]:
    """
    Order lines as a list, a JSON list or ``SKU:qty:price|SKU:qty:price``.
    """
    if is_empty(value):
        return []
    items = parse_json_list(value)
    if items:
        return [item for item in items if isinstance(item, Mapping)]
    if isinstance(value, str) and ("|" in value or ":" in value):
        parsed = []
        for chunk in value.split("|"):
            parts = [part.strip() for part in chunk.strip().split(":")]
            if not parts or not parts[0]:
                continue
            parsed.append(
                {
                    "sku": parts[0],
                    "qty_ordered": parts[1] if len(parts) > 1 else 1,
                    "price": parts[2] if len(parts) > 2 else 0,
                }
            )
        return parsed
    return []


def _address_from_record(record: Mapping[str, Any], kind: str) -> dict[str, Any] | None:
    nested = parse_json_object(record.get(f"{kind}_address"))
    if nested:
        return json_safe(nested)
    prefix = f"{kind}_"
    flat = {
        key[len(prefix):]: value
        for key, value in record.items()
        if isinstance(key, str) and key.startswith(prefix) and key != f"{kind}_address" and not is_empty(value)
    }
    return json_safe(flat) or None


class OrderHandler(EntityHandler):
    entity_type = "order"
    label = "Orders"
    required_fields = ("increment_id", "grand_total", "base_grand_total")
    # Guest orders carry no customer_id; a present one must resolve.
    foreign_key_fields = {"customer_id": ForeignKey("customer", required=True)}
    external_ref_field = "increment_id"

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        errors: list[str] = []
        increment_id = clean_string(record.get("increment_id"))
        if increment_id and not INCREMENT_ID_PATTERN.match(increment_id):
            errors.append(f"Invalid increment_id format: {increment_id}")
        grand_total = parse_decimal(record.get("grand_total"))
        if grand_total is not None and grand_total < ZERO:
            errors.append(f"Grand total cannot be negative: {record.get('grand_total')}")
        email = clean_string(record.get("customer_email"))
        if email and not EMAIL_PATTERN.match(email):
            errors.append(f"Invalid customer email format: {email}")

        items = parse_items(record.get("items"))
        if not items and not is_empty(increment_id):
            logger.warning("Order has no items", extra={"datasync_increment_id": increment_id})
        for index, item in enumerate(items):
            if is_empty(item.get("sku")) and is_empty(item.get("name")):
                errors.append(f"Item #{index} must have either sku or name")
            qty = parse_decimal(item.get("qty_ordered"))
            if qty is not None and qty <= ZERO:
                errors.append(f"Item #{index} has invalid qty_ordered: {item.get('qty_ordered')}")
        return errors

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        increment_id = clean_string(record.get("increment_id"))
        if not increment_id:
            return None
        return self.session.scalar(select(SalesOrder.id).where(SalesOrder.increment_id == increment_id))

    def import_record(self, record: dict[str, Any], registry) -> int:
        order, is_new = self.load_or_new(SalesOrder, record)
        writer = self.writer(order, record, is_new=is_new)

        writer.set("increment_id", clean_string(record.get("increment_id")))
        customer_id = parse_int(record.get("customer_id"))
        writer.set("customer_id", customer_id)
        writer.set("customer_is_guest", customer_id is None or parse_bool(record.get("customer_is_guest")))
        for field in ("customer_email", "customer_firstname", "customer_lastname", "shipping_method", "payment_method"):
            writer.set_if_present(record, field, optional_string(record.get(field)))
        writer.set_if_present(record, "state", optional_string(record.get("state")) or "new")
        writer.set_if_present(record, "status", optional_string(record.get("status")) or "pending")
        writer.set_if_present(
            record,
            "currency_code",
            optional_string(record.get("order_currency_code")) or "USD",
            source_field="order_currency_code",
        )
        for field in ("subtotal", "shipping_amount", "tax_amount", "discount_amount", "grand_total", "base_grand_total"):
            writer.set_if_present(record, field, parse_decimal(record.get(field), ZERO))
        writer.set("billing_address_json", _address_from_record(record, "billing"))
        writer.set("shipping_address_json", _address_from_record(record, "shipping"))

        if is_new:
            order.store_id = self.store_id(record)
            order.placed_at = parse_datetime(record.get("created_at"))
            order.source_system = self.source_system(record)
            order.source_id = self.source_id(record)

        self.session.flush()
        items = parse_items(record.get("items"))
        if items:
            self._replace_items(order, items, registry, self.source_system(record))
        self._append_comments(order, parse_json_list(record.get("comments")))
        self.session.flush()
        return order.id

    def _resolve_product(self, item: Mapping[str, Any], registry, source_system: str) -> int | None:
        source_product_id = parse_int(item.get("product_id"))
        if source_product_id is not None:
            target_id = registry.resolve(source_system, "product", source_product_id)
            if target_id is not None:
                return target_id
        sku = clean_string(item.get("sku"))
        if not sku:
            return None
        return self.session.scalar(select(Product.id).where(Product.sku == sku))

    def _replace_items(self, order: SalesOrder, items: list[dict[str, Any]], registry, source_system: str) -> None:
        order.items.clear()
        for item in items:
            qty = parse_decimal(item.get("qty_ordered"), Decimal("1"))
            price = parse_decimal(item.get("price"), ZERO)
            sku = clean_string(item.get("sku")) or clean_string(item.get("name"))
            order.items.append(
                SalesOrderItem(
                    product_id=self._resolve_product(item, registry, source_system),
                    sku=sku,
                    name=optional_string(item.get("name")) or sku,
                    product_type=optional_string(item.get("product_type")) or "simple",
                    qty_ordered=qty,
                    price=price,
                    row_total=parse_decimal(item.get("row_total"), qty * price),
                )
            )

    def _append_comments(self, order: SalesOrder, comments: list[Any]) -> None:
        existing = {(comment.comment, comment.status) for comment in order.comments}
        for raw in comments:
            if not isinstance(raw, Mapping):
                continue
            text = clean_string(raw.get("comment"))
            status = optional_string(raw.get("status"))
            if not text or (text, status) in existing:
                continue
            order.comments.append(
                SalesOrderComment(
                    comment=text,
                    status=status,
                    is_customer_notified=parse_bool(raw.get("is_customer_notified", False)),
                    commented_at=parse_datetime(raw.get("created_at")),
                )
            )
            existing.add((text, status))
