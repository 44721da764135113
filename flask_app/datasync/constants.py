"""Closed set of entity types and the fixed order they are applied in."""

from __future__ import annotations

# Owners come before the entities that reference them.
ENTITY_ORDER: tuple[str, ...] = (
    "customer",
    "customer_address",
    "order",
    "invoice",
    "shipment",
    "creditmemo",
    "order_comment",
    "newsletter",
    "product_attribute",
    "product",
    "stock",
    "category",
    "cms_page",
    "cms_block",
)

# Retired alongside their parent; the parent handler re-reads them.
SUB_RECORD_TYPES: frozenset[str] = frozenset({"customer_address", "order_comment"})

# Dependent types whose rows are orphaned when the parent is gone.
DEPENDENT_PARENTS: dict[str, str] = {"stock": "product"}

HANDLED_ENTITY_TYPES: tuple[str, ...] = tuple(
    entity_type for entity_type in ENTITY_ORDER if entity_type not in SUB_RECORD_TYPES
)

DUPLICATE_SKIP = "skip"
DUPLICATE_UPDATE = "update"
DUPLICATE_MERGE = "merge"
DUPLICATE_ERROR = "error"
DUPLICATE_MODES: tuple[str, ...] = (DUPLICATE_SKIP, DUPLICATE_UPDATE, DUPLICATE_MERGE, DUPLICATE_ERROR)

STOCK_INCLUDE = "include"
STOCK_EXCLUDE = "exclude"
STOCK_ONLY = "only"
STOCK_MODES: tuple[str, ...] = (STOCK_INCLUDE, STOCK_EXCLUDE, STOCK_ONLY)


def dispatch_position(entity_type: str) -> int:
    """Sort key placing unknown types after the known ones."""
    try:
        return ENTITY_ORDER.index(entity_type)
    except ValueError:
        return len(ENTITY_ORDER)
