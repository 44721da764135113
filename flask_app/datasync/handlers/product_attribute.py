"""User-defined catalog attributes with their options and attribute set assignments."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from sqlalchemy import select

from flask_app.models import ProductAttribute

from .base import EntityHandler, clean_string, is_empty, optional_string, parse_bool, parse_int

FRONTEND_INPUTS = (
    "text",
    "textarea",
    "date",
    "boolean",
    "multiselect",
    "select",
    "price",
    "media_image",
    "gallery",
    "weee",
    "weight",
)
OPTION_INPUTS = frozenset({"select", "multiselect"})
BACKEND_TYPES = {
    "text": "varchar",
    "textarea": "varchar",
    "date": "datetime",
    "price": "decimal",
    "weight": "decimal",
    "boolean": "int",
    "select": "int",
}
# Numeric scopes used by storefront exports.
SCOPES = {"0": "store", "1": "global", "2": "website", "store": "store", "global": "global", "website": "website"}
FLAG_FIELDS = (
    "is_visible",
    "is_searchable",
    "is_filterable",
    "is_filterable_in_search",
    "is_comparable",
    "is_visible_on_front",
    "is_html_allowed_on_front",
    "is_used_for_price_rules",
    "used_in_product_listing",
    "used_for_sort_by",
    "is_visible_in_advanced_search",
)
# Flags that start enabled on a new attribute.
FLAG_DEFAULTS = {"is_visible": True}
CODE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
MAX_CODE_LENGTH = 60


def parse_attribute_options(value: Any) -> list[str]:
    """
    Option labels from a list, a JSON list, ``Red|Blue`` or ``Red,Blue``.

    ``value:Label`` entries and ``{"label": ...}`` objects yield the label.
    """
    if is_empty(value):
        return []
    if isinstance(value, str):
        text = value.strip()
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, (list, dict)):
            value = decoded
        else:
            value = [part.strip() for part in text.split("|" if "|" in text else ",")]
    items = value.values() if isinstance(value, dict) else value

    labels: list[str] = []
    for item in items:
        if isinstance(item, Mapping):
            label = clean_string(item.get("label") or item.get("admin") or item.get("value"))
        else:
            label = clean_string(item)
            if ":" in label:
                label = label.split(":", 1)[1].strip()
        if label:
            labels.append(label)
    return labels


def parse_attribute_sets(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [clean_string(item) for item in value if clean_string(item)]
    return [part.strip() for part in clean_string(value).split(",") if part.strip()]


class ProductAttributeHandler(EntityHandler):
    """
    Attribute code and input type are fixed once created; later syncs update
    labels, flags and position, and add options that are not present yet.
    """

    entity_type = "product_attribute"
    label = "Product Attributes"
    required_fields = ("attribute_code", "frontend_label")
    external_ref_field = "attribute_code"

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        errors: list[str] = []
        code = clean_string(record.get("attribute_code"))
        if code:
            if not CODE_PATTERN.match(code):
                errors.append(
                    "Invalid attribute_code: must start with letter, contain only lowercase letters, numbers, underscores"
                )
            if len(code) > MAX_CODE_LENGTH:
                errors.append(f"attribute_code too long (max {MAX_CODE_LENGTH} characters)")
        frontend_input = clean_string(record.get("frontend_input")).lower()
        if frontend_input and frontend_input not in FRONTEND_INPUTS:
            errors.append(f"Invalid frontend_input: {frontend_input}. Valid: {', '.join(FRONTEND_INPUTS)}")
        return errors

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        code = clean_string(record.get("attribute_code"))
        if not code:
            return None
        return self.session.scalar(select(ProductAttribute.id).where(ProductAttribute.attribute_code == code))

    @staticmethod
    def _flags(record: Mapping[str, Any], current: Mapping[str, Any] | None) -> dict[str, bool]:
        flags = dict(current) if current is not None else dict.fromkeys(FLAG_FIELDS, False) | FLAG_DEFAULTS
        for field in FLAG_FIELDS:
            if not is_empty(record.get(field)):
                flags[field] = parse_bool(record.get(field))
        return flags

    @staticmethod
    def _merge_options(existing: list[str] | None, incoming: list[str]) -> list[str]:
        options = list(existing or [])
        known = {label.lower() for label in options}
        for label in incoming:
            if label.lower() not in known:
                options.append(label)
                known.add(label.lower())
        return options

    def import_record(self, record: dict[str, Any], registry) -> int:
        attribute, is_new = self.load_or_new(ProductAttribute, record)
        writer = self.writer(attribute, record, is_new=is_new)

        if is_new:
            frontend_input = clean_string(record.get("frontend_input")).lower()
            if frontend_input not in FRONTEND_INPUTS:
                frontend_input = "text"
            attribute.attribute_code = clean_string(record.get("attribute_code"))
            attribute.frontend_input = frontend_input
            attribute.backend_type = optional_string(record.get("backend_type")) or BACKEND_TYPES.get(
                frontend_input, "varchar"
            )
            attribute.scope = SCOPES.get(clean_string(record.get("is_global")).lower(), "store")
            attribute.is_required = parse_bool(record.get("is_required") or False)
            attribute.is_unique = parse_bool(record.get("is_unique") or False)
            attribute.default_value = optional_string(record.get("default_value"))
            attribute.attribute_sets = parse_attribute_sets(
                record.get("attribute_sets") or record.get("attribute_set") or "Default"
            )
            attribute.attribute_group = optional_string(record.get("attribute_group")) or "General"
        elif not is_empty(record.get("attribute_sets")) or not is_empty(record.get("attribute_set")):
            attribute.attribute_sets = parse_attribute_sets(record.get("attribute_sets") or record.get("attribute_set"))
            writer.set_if_present(record, "attribute_group", optional_string(record.get("attribute_group")))

        writer.set("frontend_label", clean_string(record.get("frontend_label")))
        attribute.flags = self._flags(record, None if is_new else attribute.flags)
        if is_new or "position" in record:
            writer.set("position", parse_int(record.get("position"), 0))
        if attribute.frontend_input in OPTION_INPUTS:
            options = parse_attribute_options(record.get("options"))
            if options or is_new:
                attribute.options = self._merge_options(attribute.options, options) or None

        self.session.flush()
        return attribute.id
