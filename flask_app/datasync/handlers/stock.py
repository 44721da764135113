"""Stock levels of synced products."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import select

from flask_app.models import Product, StockItem

from .base import EntityHandler, ForeignKey, clean_string, parse_bool, parse_decimal, parse_int


class StockHandler(EntityHandler):
    """
    Stock rows are keyed by the source product id.

    The product id is rewritten through the registry when the product was
    synced; otherwise the SKU locates the destination product.
    """

    entity_type = "stock"
    label = "Stock Items"
    foreign_key_fields = {"product_id": ForeignKey("product", required=False)}

    def _product_id(self, record: Mapping[str, Any]) -> int | None:
        product_id = parse_int(record.get("product_id"))
        if product_id is not None:
            return product_id
        sku = clean_string(record.get("sku"))
        if not sku:
            return None
        return self.session.scalar(select(Product.id).where(Product.sku == sku))

    def external_ref(self, record: Mapping[str, Any]) -> str | None:
        return clean_string(record.get("sku")) or None

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        if parse_int(record.get("_original_product_id", record.get("product_id"))) is None and not clean_string(
            record.get("sku")
        ):
            return ["Missing required fields: product_id or sku"]
        if self._product_id(record) is None:
            return [f"Product for stock item #{record.get('entity_id')} does not exist in the destination"]
        qty = parse_decimal(record.get("qty"))
        if "qty" in record and qty is None:
            return [f"Invalid qty: {record.get('qty')}"]
        return []

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        product_id = self._product_id(record)
        if product_id is None:
            return None
        return self.session.scalar(select(StockItem.id).where(StockItem.product_id == product_id))

    def import_record(self, record: dict[str, Any], registry) -> int:
        product_id = self._product_id(record)
        if product_id is None:
            raise ValueError(f"Product for stock item #{record.get('entity_id')} does not exist in the destination.")
        item, is_new = self.load_or_new(StockItem, record)
        if is_new:
            item.product_id = product_id
        writer = self.writer(item, record, is_new=is_new)
        qty = parse_decimal(record.get("qty"), Decimal("0"))
        writer.set_if_present(record, "qty", qty)
        if "is_in_stock" in record:
            writer.set("is_in_stock", parse_bool(record.get("is_in_stock")))
        elif is_new:
            item.is_in_stock = qty > 0
        if "manage_stock" in record:
            writer.set("manage_stock", parse_bool(record.get("manage_stock")))
        for field, default in (("min_qty", "0"), ("min_sale_qty", "1"), ("max_sale_qty", "10000")):
            writer.set_if_present(record, field, parse_decimal(record.get(field), Decimal(default)))
        writer.set_if_present(record, "backorders", parse_int(record.get("backorders"), 0))
        writer.set_if_present(record, "notify_stock_qty", parse_decimal(record.get("notify_stock_qty")))
        self.session.flush()
        return item.id
