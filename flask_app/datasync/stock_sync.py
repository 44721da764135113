"""
Bulk stock sync: copies every source stock row to the destination product
with the same SKU, without going through the change ledger or the registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from flask_app.models import Product, StockItem

from .adapters import DatabaseAdapter
from .handlers.base import parse_bool, parse_decimal, parse_int

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 500


@dataclass
class StockSyncReport:
    dry_run: bool = False
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    not_found: int = 0

    def summary(self) -> str:
        prefix = "[DRY RUN] " if self.dry_run else ""
        return (
            f"{prefix}Created: {self.created}, Updated: {self.updated}, "
            f"Skipped: {self.skipped}, Not found: {self.not_found}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "not_found": self.not_found,
        }


def _apply_stock(item: StockItem, row: dict[str, Any]) -> None:
    item.qty = parse_decimal(row.get("qty"), Decimal("0"))
    item.is_in_stock = parse_bool(row.get("is_in_stock") or False)
    if row.get("manage_stock") is not None:
        item.manage_stock = parse_bool(row.get("manage_stock"))
    for field, default in (("min_qty", "0"), ("min_sale_qty", "1"), ("max_sale_qty", "10000")):
        if row.get(field) is not None:
            setattr(item, field, parse_decimal(row.get(field), Decimal(default)))
    if row.get("backorders") is not None:
        item.backorders = parse_int(row.get("backorders"), 0)
    if row.get("notify_stock_qty") is not None:
        item.notify_stock_qty = parse_decimal(row.get("notify_stock_qty"))


class BulkStockSync:
    """
    Matches source stock rows to destination products by SKU.

    ``missing_only`` leaves existing stock rows untouched; ``dry_run`` counts
    what would change and writes nothing.
    """

    def __init__(
        self,
        adapter: DatabaseAdapter,
        session: Session,
        *,
        progress_callback: Callable[[str], None] | None = None,
    ) -> None:
        self.adapter = adapter
        self.session = session
        self.progress_callback = progress_callback

    def _progress(self, message: str) -> None:
        if self.progress_callback is not None:
            self.progress_callback(message)

    def run(self, *, sku_pattern: str | None = None, missing_only: bool = False, dry_run: bool = False) -> StockSyncReport:
        report = StockSyncReport(dry_run=dry_run)
        rows = self.adapter.read_stock_by_sku(sku_pattern)
        report.total = len(rows)
        self._progress(f"Found {report.total} stock items in source")
        if not rows:
            return report

        product_ids = dict(self.session.execute(select(Product.sku, Product.id)).all())
        for position, row in enumerate(rows, start=1):
            product_id = product_ids.get(row["sku"])
            if product_id is None:
                report.not_found += 1
            else:
                item = self.session.scalar(select(StockItem).where(StockItem.product_id == product_id))
                if item is not None and missing_only:
                    report.skipped += 1
                elif item is None:
                    report.created += 1
                    if not dry_run:
                        item = StockItem(product_id=product_id)
                        _apply_stock(item, row)
                        self.session.add(item)
                else:
                    report.updated += 1
                    if not dry_run:
                        _apply_stock(item, row)
            if position % PROGRESS_EVERY == 0:
                self._progress(f"Processed {position}/{report.total}")
                if not dry_run:
                    self.session.commit()

        if not dry_run:
            self.session.commit()
        logger.info(
            "Bulk stock sync finished",
            extra={"datasync_stock": report.to_dict()},
        )
        return report
