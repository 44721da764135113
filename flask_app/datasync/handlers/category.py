"""Catalog category tree."""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Mapping

from sqlalchemy import select

from flask_app.models import Category

from .base import EntityHandler, ForeignKey, clean_string, optional_string, parse_bool, parse_int

DISPLAY_MODES = ("PRODUCTS", "PAGE", "PRODUCTS_AND_PAGE")


def format_url_key(name: str) -> str:
    normalised = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", normalised.lower()).strip("-")


class CategoryHandler(EntityHandler):
    entity_type = "category"
    label = "Categories"
    required_fields = ("name",)
    # Root-level categories have no parent at the source.
    foreign_key_fields = {"parent_id": ForeignKey("category", required=False)}
    external_ref_field = "url_key"

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        display_mode = clean_string(record.get("display_mode"))
        if display_mode and display_mode not in DISPLAY_MODES:
            return [f"Invalid display_mode: {display_mode}. Valid: {', '.join(DISPLAY_MODES)}"]
        return []

    def _url_key(self, record: Mapping[str, Any]) -> str:
        return clean_string(record.get("url_key")) or format_url_key(clean_string(record.get("name")))

    def external_ref(self, record: Mapping[str, Any]) -> str | None:
        return self._url_key(record) or None

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        parent_id = parse_int(record.get("parent_id"))
        for column, value in ((Category.url_key, clean_string(record.get("url_key"))), (Category.name, clean_string(record.get("name")))):
            if not value:
                continue
            statement = select(Category.id).where(column == value)
            if parent_id is not None:
                statement = statement.where(Category.parent_id == parent_id)
            found = self.session.scalar(statement.order_by(Category.id).limit(1))
            if found is not None:
                return found
        return None

    def import_record(self, record: dict[str, Any], registry) -> int:
        category, is_new = self.load_or_new(Category, record)
        writer = self.writer(category, record, is_new=is_new)
        writer.set("name", clean_string(record.get("name")))
        writer.set("url_key", self._url_key(record))
        writer.set_if_present(record, "description", optional_string(record.get("description")))
        writer.set_if_present(record, "position", parse_int(record.get("position"), 0))
        if "is_active" in record:
            writer.set("is_active", parse_bool(record.get("is_active")))
        if "include_in_menu" in record:
            writer.set("include_in_menu", parse_bool(record.get("include_in_menu")))

        parent_id = parse_int(record.get("parent_id"))
        parent = self.session.get(Category, parent_id) if parent_id is not None else None
        if parent is not None or is_new or not writer.merge:
            category.parent_id = parent.id if parent is not None else None
        self.session.flush()

        parent = self.session.get(Category, category.parent_id) if category.parent_id else None
        category.level = (parent.level + 1) if parent is not None else 1
        category.path = f"{parent.path}/{category.id}" if parent is not None and parent.path else (
            f"{parent.id}/{category.id}" if parent is not None else str(category.id)
        )
        self.session.flush()
        return category.id
