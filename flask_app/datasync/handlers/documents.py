"""Invoices, shipments and credit memos attached to synced orders."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, ClassVar, Mapping

from sqlalchemy import select

from flask_app.models import SalesDocument, SalesDocumentKind, SalesOrder

from .base import (
    EntityHandler,
    ForeignKey,
    clean_string,
    is_empty,
    json_safe,
    optional_string,
    parse_datetime,
    parse_decimal,
    parse_int,
    parse_json_list,
)


def parse_tracks(value: Any) -> list[dict[str, Any]]:
    """Tracking numbers as a list, a JSON list or ``carrier:number|carrier:number``."""
    if is_empty(value):
        return []
    tracks = parse_json_list(value)
    if tracks:
        return [track for track in tracks if isinstance(track, Mapping)]
    parsed = []
    if isinstance(value, str):
        for chunk in value.split("|"):
            parts = [part.strip() for part in chunk.strip().split(":", 1)]
            if len(parts) == 2 and parts[1]:
                parsed.append({"carrier_code": parts[0] or "custom", "track_number": parts[1]})
            elif parts and parts[0]:
                parsed.append({"carrier_code": "custom", "track_number": parts[0]})
    return parsed


class SalesDocumentHandler(EntityHandler):
    """Shared persistence for the three order follow-up documents."""

    kind: ClassVar[SalesDocumentKind]
    external_ref_field = "increment_id"

    def increment_id(self, record: Mapping[str, Any]) -> str:
        increment_id = clean_string(record.get("increment_id"))
        if increment_id:
            return increment_id
        return f"{self.source_system(record)}-{record.get('entity_id')}"

    def external_ref(self, record: Mapping[str, Any]) -> str | None:
        return self.increment_id(record)

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        errors: list[str] = []
        grand_total = parse_decimal(record.get("grand_total"))
        if grand_total is not None and grand_total < Decimal("0"):
            errors.append(f"Grand total cannot be negative: {record.get('grand_total')}")
        return errors

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        return self.session.scalar(
            select(SalesDocument.id).where(
                SalesDocument.kind == self.kind,
                SalesDocument.increment_id == self.increment_id(record),
            )
        )

    def import_record(self, record: dict[str, Any], registry) -> int:
        order_id = parse_int(record.get("order_id"))
        order = self.session.get(SalesOrder, order_id) if order_id is not None else None
        if order is None:
            raise ValueError(f"Order #{record.get('_original_order_id', order_id)} does not exist in the destination.")

        document, is_new = self.load_or_new(SalesDocument, record)
        writer = self.writer(document, record, is_new=is_new)
        writer.set("increment_id", self.increment_id(record))
        writer.set("order_id", order.id)
        writer.set_if_present(record, "state", optional_string(record.get("state")))
        writer.set_if_present(record, "grand_total", parse_decimal(record.get("grand_total")))
        writer.set_if_present(record, "total_qty", parse_decimal(record.get("total_qty")))
        items = parse_json_list(record.get("items"))
        if items:
            writer.set("items_json", json_safe(items))
        self.apply_extra(writer, record)

        if is_new:
            document.kind = self.kind
            document.issued_at = parse_datetime(record.get("created_at"))
            document.source_system = self.source_system(record)
            document.source_id = self.source_id(record)

        self.session.flush()
        return document.id

    def apply_extra(self, writer, record: Mapping[str, Any]) -> None:
        """Kind-specific columns."""


class InvoiceHandler(SalesDocumentHandler):
    entity_type = "invoice"
    label = "Invoices"
    kind = SalesDocumentKind.INVOICE
    required_fields = ("order_id", "grand_total")
    foreign_key_fields = {"order_id": ForeignKey("order", required=True)}


class ShipmentHandler(SalesDocumentHandler):
    entity_type = "shipment"
    label = "Shipments"
    kind = SalesDocumentKind.SHIPMENT
    required_fields = ("order_id",)
    foreign_key_fields = {"order_id": ForeignKey("order", required=True)}

    def apply_extra(self, writer, record: Mapping[str, Any]) -> None:
        tracks = parse_tracks(record.get("tracks"))
        if tracks:
            writer.set("tracks_json", json_safe(tracks))


class CreditmemoHandler(SalesDocumentHandler):
    entity_type = "creditmemo"
    label = "Credit Memos"
    kind = SalesDocumentKind.CREDITMEMO
    required_fields = ("order_id", "grand_total")
    foreign_key_fields = {
        "order_id": ForeignKey("order", required=True),
        "invoice_id": ForeignKey("invoice", required=False),
    }

    def apply_extra(self, writer, record: Mapping[str, Any]) -> None:
        if "invoice_id" in record:
            writer.set("invoice_id", parse_int(record.get("invoice_id")))
