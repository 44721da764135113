"""CMS pages and static blocks, matched by identifier within a store."""

from __future__ import annotations

import re
from typing import Any, ClassVar, Mapping

from sqlalchemy import select

from flask_app.models import CmsBlock, CmsPage

from ..adapters.base import parse_datetime
from .base import EntityHandler, FieldWriter, clean_string, is_empty, optional_string, parse_bool, parse_int

ALL_STORES = 0


def parse_store_ids(value: Any) -> list[int]:
    """Store ids from a list or a comma separated string; defaults to every store."""
    if is_empty(value):
        parts = []
    elif isinstance(value, (list, tuple)):
        parts = list(value)
    else:
        parts = str(value).split(",")
    store_ids = [parse_int(part) for part in parts]
    return [store_id for store_id in store_ids if store_id is not None] or [ALL_STORES]


class CmsContentHandler(EntityHandler):
    model: ClassVar[type]
    required_fields = ("identifier", "title")
    external_ref_field = "identifier"
    identifier_pattern: ClassVar[re.Pattern[str]]
    identifier_hint: ClassVar[str]
    optional_fields: ClassVar[tuple[str, ...]] = ()

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        identifier = clean_string(record.get("identifier"))
        if identifier and not self.identifier_pattern.match(identifier):
            return [f"Invalid {self.entity_type} identifier format: {identifier} ({self.identifier_hint})"]
        return []

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        identifier = clean_string(record.get("identifier"))
        if not identifier:
            return None
        candidates = self.session.scalars(
            select(self.model).where(self.model.identifier == identifier).order_by(self.model.id)
        ).all()
        if not candidates:
            return None
        if "store_ids" not in record:
            return candidates[0].id
        store_id = parse_store_ids(record.get("store_ids"))[0]
        for candidate in candidates:
            assigned = candidate.store_ids or [ALL_STORES]
            if store_id in assigned or ALL_STORES in assigned:
                return candidate.id
        return None

    def import_record(self, record: dict[str, Any], registry) -> int:
        content, is_new = self.load_or_new(self.model, record)
        writer = self.writer(content, record, is_new=is_new)
        writer.set("identifier", clean_string(record.get("identifier")))
        writer.set("title", clean_string(record.get("title")))
        if "content" in record or is_new:
            writer.set("content", record.get("content") or "")
        if "is_active" in record:
            writer.set("is_active", parse_bool(record.get("is_active")))
        elif is_new:
            content.is_active = True
        for field in self.optional_fields:
            writer.set_if_present(record, field, optional_string(record.get(field)))
        self.apply_extra(content, record, writer)
        content.store_ids = parse_store_ids(record.get("store_ids"))
        if is_new:
            created = parse_datetime(record.get("creation_time"))
            if created is not None:
                content.created_at = created
        self.session.flush()
        return content.id

    def apply_extra(self, content: Any, record: Mapping[str, Any], writer: FieldWriter) -> None:
        """Columns specific to one content type."""


class CmsPageHandler(CmsContentHandler):
    entity_type = "cms_page"
    label = "CMS Pages"
    model = CmsPage
    identifier_pattern = re.compile(r"^[a-z0-9_\-/]+$", re.IGNORECASE)
    identifier_hint = "use alphanumeric, underscores, hyphens, forward slashes"
    optional_fields = ("content_heading", "meta_keywords", "meta_description", "meta_robots", "layout_update_xml")

    def apply_extra(self, content: Any, record: Mapping[str, Any], writer: FieldWriter) -> None:
        root_template = optional_string(record.get("root_template"))
        if root_template is not None:
            writer.set("root_template", root_template)
        writer.set_if_present(record, "sort_order", parse_int(record.get("sort_order"), 0))


class CmsBlockHandler(CmsContentHandler):
    entity_type = "cms_block"
    label = "CMS Blocks"
    model = CmsBlock
    identifier_pattern = re.compile(r"^[a-z0-9_\-]+$", re.IGNORECASE)
    identifier_hint = "use alphanumeric, underscores, hyphens"
