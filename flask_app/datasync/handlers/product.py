"""Catalog products composed of independent import strategies."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from flask_app.models import Product

from .base import EntityHandler, clean_string, is_empty, optional_string, parse_decimal, parse_int, parse_json_object
from .category import format_url_key
from .product_strategies import ProductStrategy, default_strategies, split_list

PRODUCT_TYPES = ("simple", "configurable", "grouped", "bundle", "virtual", "downloadable")
ATTRIBUTE_PASSTHROUGH_PREFIX = "attr_"


class ProductHandler(EntityHandler):
    entity_type = "product"
    label = "Products"
    required_fields = ("sku",)
    external_ref_field = "sku"

    def __init__(self, session: Session | None = None, strategies: Sequence[ProductStrategy] | None = None) -> None:
        super().__init__(session)
        self.strategies = list(strategies) if strategies is not None else default_strategies(self.session)

    def strategy(self, name: str) -> ProductStrategy | None:
        return next((strategy for strategy in self.strategies if strategy.name == name), None)

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        errors: list[str] = []
        type_id = clean_string(record.get("type_id"))
        if type_id and type_id not in PRODUCT_TYPES:
            errors.append(f"Invalid product type: {type_id}. Valid: {', '.join(PRODUCT_TYPES)}")
        if not is_empty(record.get("price")):
            price = parse_decimal(record.get("price"))
            if price is None:
                errors.append(f"Invalid price: {record.get('price')}")
            elif price < Decimal("0"):
                errors.append(f"Price cannot be negative: {record.get('price')}")
        return errors

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        sku = clean_string(record.get("sku"))
        if not sku:
            return None
        return self.session.scalar(select(Product.id).where(Product.sku == sku))

    def _category_ids(self, record: Mapping[str, Any], registry) -> list[int]:
        source_ids = [parse_int(value) for value in split_list(record.get("category_ids"))]
        source_ids = [value for value in source_ids if value is not None]
        if not source_ids:
            return []
        resolved = registry.resolve_many(self.source_system(record), "category", source_ids)
        return [resolved[source_id] for source_id in source_ids if source_id in resolved]

    @staticmethod
    def _attributes(record: Mapping[str, Any]) -> dict[str, Any] | None:
        attributes = dict(parse_json_object(record.get("attributes")) or {})
        for key, value in record.items():
            if isinstance(key, str) and key.startswith(ATTRIBUTE_PASSTHROUGH_PREFIX) and not is_empty(value):
                attributes[key[len(ATTRIBUTE_PASSTHROUGH_PREFIX):]] = value
        return attributes or None

    def import_record(self, record: dict[str, Any], registry) -> int:
        product, is_new = self.load_or_new(Product, record)
        writer = self.writer(product, record, is_new=is_new)

        sku = clean_string(record.get("sku"))
        writer.set("sku", sku)
        writer.set_if_present(record, "type_id", optional_string(record.get("type_id")) or "simple")
        writer.set_if_present(record, "attribute_set", optional_string(record.get("attribute_set")) or "Default")
        for field in ("name", "description", "short_description"):
            writer.set_if_present(record, field, optional_string(record.get(field)))
        for field in ("price", "special_price", "weight"):
            writer.set_if_present(record, field, parse_decimal(record.get(field)))
        writer.set_if_present(record, "status", parse_int(record.get("status"), 1))
        writer.set_if_present(record, "visibility", parse_int(record.get("visibility"), 4))
        url_key = optional_string(record.get("url_key"))
        if url_key is None and is_new:
            url_key = format_url_key(clean_string(record.get("name")) or sku)
        if url_key is not None:
            writer.set("url_key", url_key)
        if "category_ids" in record:
            writer.set("category_ids", self._category_ids(record, registry) or None)
        attributes = self._attributes(record)
        if attributes:
            product.attributes_json = {**(product.attributes_json or {}), **attributes}

        if is_new:
            product.source_system = self.source_system(record)
            product.source_id = self.source_id(record)

        self.session.flush()
        for strategy in self.strategies:
            strategy.apply(product, record)
        return product.id

    def finalize_batch(self, registry) -> None:
        for strategy in self.strategies:
            strategy.finalize()
