"""
Product sub-behaviours run after the base product row is persisted.

Each strategy owns one concern and the lookup tables it needs. The product
handler invokes them in a fixed order: configurable, grouped and bundle
linking, then custom options and group prices.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from flask_app.models import Product, ProductGroupPrice, ProductLink, ProductLinkType, ProductOption

from .base import clean_string, is_empty, optional_string, parse_bool, parse_decimal, parse_int, parse_json_list

logger = logging.getLogger(__name__)

_LIST_SEPARATORS = re.compile(r"[|,]")

OPTIONS_REPLACE = "replace"
OPTIONS_MERGE = "merge"
OPTIONS_APPEND = "append"
OPTIONS_MODES = (OPTIONS_REPLACE, OPTIONS_MERGE, OPTIONS_APPEND)

ALL_CUSTOMER_GROUPS = 32000


def split_list(value: Any) -> list[str]:
    """Pipe or comma separated values, or an already split list."""
    if is_empty(value):
        return []
    if isinstance(value, (list, tuple)):
        parts = value
    else:
        parts = _LIST_SEPARATORS.split(str(value))
    return [clean_string(part) for part in parts if clean_string(part)]


class ProductStrategy(ABC):
    """One narrow step of product import."""

    name = "strategy"

    def __init__(self, session: Session) -> None:
        self.session = session

    @abstractmethod
    def apply(self, product: Product, record: Mapping[str, Any]) -> None:
        """Act on one persisted product row."""

    def finalize(self) -> None:
        """Work that needs every product of the batch to exist."""


@dataclass
class PendingLink:
    sku: str
    qty: Decimal | None = None
    option_title: str | None = None


class LinkStrategy(ProductStrategy):
    """
    Collects parent/child SKU pairs while rows are imported and writes the
    links once the batch is complete, when every SKU of the batch exists.

    A parent whose product type differs from ``parent_type`` is left unlinked.
    """

    link_type: ProductLinkType
    parent_type: str

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.pending: "OrderedDict[str, list[PendingLink]]" = OrderedDict()
        self.linked = 0

    def add(self, parent_sku: str, links: list[PendingLink]) -> None:
        bucket = self.pending.setdefault(parent_sku, [])
        known = {link.sku for link in bucket}
        for link in links:
            if link.sku not in known:
                bucket.append(link)
                known.add(link.sku)

    def link_attributes(self, parent_sku: str) -> dict[str, Any]:
        """Extra column values written on every link of ``parent_sku``."""
        return {}

    def finalize(self) -> None:
        if not self.pending:
            return
        logger.info(
            "Linking products",
            extra={"datasync_link_type": self.link_type.value, "datasync_parents": len(self.pending)},
        )
        for parent_sku, links in self.pending.items():
            self._link(parent_sku, links)
        self.pending.clear()

    def _parent(self, parent_sku: str) -> Product | None:
        parent = self.session.scalar(select(Product).where(Product.sku == parent_sku))
        if parent is None:
            logger.warning(
                "Parent SKU not found",
                extra={"datasync_sku": parent_sku, "datasync_link_type": self.link_type.value},
            )
            return None
        if parent.type_id != self.parent_type:
            logger.warning(
                "Parent product has the wrong type; children not linked",
                extra={
                    "datasync_sku": parent_sku,
                    "datasync_type_id": parent.type_id,
                    "datasync_link_type": self.link_type.value,
                },
            )
            return None
        return parent

    def _link(self, parent_sku: str, links: list[PendingLink]) -> None:
        parent = self._parent(parent_sku)
        if parent is None:
            return
        skus = [link.sku for link in links]
        children = dict(self.session.execute(select(Product.sku, Product.id).where(Product.sku.in_(skus))).all())
        missing = [sku for sku in skus if sku not in children]
        if missing:
            logger.warning(
                "Child SKUs not found",
                extra={
                    "datasync_sku": parent_sku,
                    "datasync_missing": missing,
                    "datasync_link_type": self.link_type.value,
                },
            )
        existing = {
            link.child_id: link
            for link in self.session.scalars(
                select(ProductLink).where(
                    ProductLink.parent_id == parent.id,
                    ProductLink.link_type == self.link_type,
                )
            )
        }
        attributes = self.link_attributes(parent_sku)
        for position, pending in enumerate(links):
            child_id = children.get(pending.sku)
            if child_id is None:
                continue
            link = existing.get(child_id)
            if link is None:
                link = ProductLink(parent_id=parent.id, child_id=child_id, link_type=self.link_type)
                self.session.add(link)
                existing[child_id] = link
                self.linked += 1
            link.position = position
            link.qty = pending.qty
            link.option_title = pending.option_title
            for column, value in attributes.items():
                setattr(link, column, value)
        self.session.flush()


class ConfigurableLinker(LinkStrategy):
    """
    Children may be listed on the parent row (``configurable_children_skus``)
    or the parent may be named on the child row (``configurable_parent_sku``).

    With the ``auto_link_configurables`` entity option, simple rows that follow
    a configurable row in the same attribute set are linked to it; any other
    row ends the run of children.
    """

    name = "configurable"
    link_type = ProductLinkType.CONFIGURABLE
    parent_type = "configurable"

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.super_attributes: dict[str, list[str]] = {}
        self._auto_parent: tuple[str, str] | None = None

    def apply(self, product: Product, record: Mapping[str, Any]) -> None:
        sku = product.sku
        attributes = split_list(record.get("super_attributes"))
        if attributes:
            self.super_attributes[sku] = attributes
        children = split_list(record.get("configurable_children_skus"))
        if children:
            self.add(sku, [PendingLink(child) for child in children])
        parent_sku = clean_string(record.get("configurable_parent_sku"))
        if parent_sku:
            self.add(parent_sku, [PendingLink(sku)])
        if parse_bool(_entity_option(record, "auto_link_configurables") or False):
            self._auto_link(product)

    def _auto_link(self, product: Product) -> None:
        if product.type_id == "configurable":
            self._auto_parent = (product.sku, product.attribute_set)
            self.pending.setdefault(product.sku, [])
        elif product.type_id == "simple" and self._auto_parent is not None:
            parent_sku, attribute_set = self._auto_parent
            if product.attribute_set == attribute_set:
                self.add(parent_sku, [PendingLink(product.sku)])
            else:
                self._auto_parent = None
        else:
            self._auto_parent = None

    def link_attributes(self, parent_sku: str) -> dict[str, Any]:
        return {"super_attributes": self.super_attributes.get(parent_sku)}

    def finalize(self) -> None:
        super().finalize()
        self.super_attributes.clear()
        self._auto_parent = None


def parse_grouped_skus(value: Any) -> list[PendingLink]:
    """``SKU:qty|SKU:qty`` or ``SKU,SKU``; a missing quantity means one."""
    links = []
    for part in split_list(value):
        sku, separator, qty = part.partition(":")
        links.append(PendingLink(sku.strip(), parse_decimal(qty, Decimal("1")) if separator else Decimal("1")))
    return [link for link in links if link.sku]


class GroupedLinker(LinkStrategy):
    """
    Members may be listed on the grouped row (``grouped_product_skus``) or the
    grouped parent may be named on the member row (``grouped_parent_sku`` with
    an optional ``grouped_qty``).
    """

    name = "grouped"
    link_type = ProductLinkType.GROUPED
    parent_type = "grouped"

    def apply(self, product: Product, record: Mapping[str, Any]) -> None:
        members = parse_grouped_skus(record.get("grouped_product_skus"))
        if members:
            self.add(product.sku, members)
        parent_sku = clean_string(record.get("grouped_parent_sku"))
        if parent_sku:
            self.add(parent_sku, [PendingLink(product.sku, parse_decimal(record.get("grouped_qty"), Decimal("1")))])


def parse_bundle_options(value: Any) -> list[PendingLink]:
    """
    Selections of ``[{"title": ..., "selections": [{"sku": ..., "qty": ...}]}]``.

    Each selection keeps the title of the option it belongs to.
    """
    if isinstance(value, str):
        options = parse_json_list(value)
        if not options and value.strip():
            logger.warning("Invalid bundle_options JSON", extra={"datasync_value": value[:100]})
    else:
        options = parse_json_list(value)
    links = []
    for option in options:
        if not isinstance(option, Mapping):
            continue
        title = optional_string(option.get("title"))
        for selection in option.get("selections") or []:
            if not isinstance(selection, Mapping):
                continue
            sku = clean_string(selection.get("sku"))
            if sku:
                links.append(PendingLink(sku, parse_decimal(selection.get("qty"), Decimal("1")), title))
    return links


class BundleLinker(LinkStrategy):
    name = "bundle"
    link_type = ProductLinkType.BUNDLE
    parent_type = "bundle"

    def apply(self, product: Product, record: Mapping[str, Any]) -> None:
        selections = parse_bundle_options(record.get("bundle_options"))
        if selections:
            self.add(product.sku, selections)


# Option type aliases accepted in the shorthand format, and their group.
OPTION_TYPES: dict[str, tuple[str, str]] = {
    "field": ("field", "text"),
    "area": ("area", "text"),
    "drop_down": ("drop_down", "select"),
    "dropdown": ("drop_down", "select"),
    "radio": ("radio", "select"),
    "checkbox": ("checkbox", "select"),
    "multiple": ("multiple", "select"),
    "date": ("date", "date"),
    "date_time": ("date_time", "date"),
    "datetime": ("date_time", "date"),
    "time": ("time", "date"),
    "file": ("file", "file"),
}
SELECT_TYPES = frozenset(name for name, group in OPTION_TYPES.values() if group == "select")


def _parse_params(text: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for part in text.split("|"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        params[key.strip().lower()] = value.strip()
    return params


def _parse_values(text: str) -> list[dict[str, Any]]:
    values = []
    for position, part in enumerate(chunk.strip() for chunk in text.split("|") if chunk.strip()):
        title, _, price = part.partition("=")
        values.append(
            {
                "title": title.strip(),
                "price": float(parse_decimal(price, Decimal("0"))),
                "price_type": "fixed",
                "sort_order": position,
            }
        )
    return values


def parse_option_shorthand(text: str) -> dict[str, Any] | None:
    """
    Parse ``Title:type:required:values_or_params``.

    ``Size:drop_down:required:Small=0|Medium=2`` yields a select option with
    two values; ``Engraving:field:optional:max=20|price=5`` a text option.
    Unknown types yield ``None``.
    """
    parts = text.split(":", 3)
    if len(parts) < 2:
        return None
    type_info = OPTION_TYPES.get(parts[1].strip().lower())
    if type_info is None:
        return None
    option_type, group = type_info
    option: dict[str, Any] = {
        "title": parts[0].strip(),
        "type": option_type,
        "is_require": len(parts) > 2 and parts[2].strip().lower() == "required",
    }
    tail = parts[3] if len(parts) > 3 else ""
    if group == "select":
        option["values"] = _parse_values(tail)
        return option

    params = _parse_params(tail)
    if group == "text" and "max" in params:
        option["max_characters"] = parse_int(params["max"])
    if group == "file" and "ext" in params:
        option["file_extension"] = params["ext"]
    if "price" in params:
        option["price"] = float(parse_decimal(params["price"], Decimal("0")))
        option["price_type"] = params.get("price_type", "fixed")
    return option


def parse_custom_options(value: Any) -> list[dict[str, Any]]:
    if is_empty(value):
        return []
    if isinstance(value, list):
        return [option for option in value if isinstance(option, Mapping)]
    text = str(value).strip()
    if text.startswith("["):
        decoded = parse_json_list(text)
        if not decoded:
            logger.warning("Invalid custom_options JSON", extra={"datasync_value": text[:100]})
        return [option for option in decoded if isinstance(option, Mapping)]
    return [option for option in (parse_option_shorthand(chunk.strip()) for chunk in text.split(";") if chunk.strip()) if option]


class CustomOptionsImporter(ProductStrategy):
    """Replaces, merges (by title) or appends customisable options."""

    name = "custom_options"

    def apply(self, product: Product, record: Mapping[str, Any]) -> None:
        options = parse_custom_options(record.get("custom_options"))
        if not options:
            return
        mode = clean_string(record.get("options_mode")) or clean_string(
            _entity_option(record, "options_mode")
        ) or OPTIONS_REPLACE
        if mode not in OPTIONS_MODES:
            mode = OPTIONS_REPLACE

        existing = {option.title.lower(): option for option in product.options}
        if mode == OPTIONS_REPLACE:
            product.options.clear()
            existing = {}
            self.session.flush()
        elif mode == OPTIONS_APPEND:
            options = [option for option in options if clean_string(option.get("title")).lower() not in existing]

        sort_order = len(product.options) if mode != OPTIONS_REPLACE else 0
        created = 0
        for data in options:
            option_type = clean_string(data.get("type"))
            title = clean_string(data.get("title"))
            if not title or not option_type:
                continue
            if option_type in SELECT_TYPES and not data.get("values"):
                logger.debug(
                    "Skipping select option without values",
                    extra={"datasync_sku": product.sku, "datasync_option": title},
                )
                continue
            option = existing.get(title.lower()) if mode == OPTIONS_MERGE else None
            if option is None:
                option = ProductOption(title=title, sort_order=sort_order)
                product.options.append(option)
                sort_order += 1
                created += 1
            option.option_type = option_type
            option.is_require = parse_bool(data.get("is_require", False))
            option.price = parse_decimal(data.get("price"))
            option.price_type = data.get("price_type")
            option.max_characters = parse_int(data.get("max_characters"))
            option.file_extension = data.get("file_extension")
            option.values_json = list(data.get("values") or []) or None
        self.session.flush()
        if created:
            logger.debug("Created custom options", extra={"datasync_sku": product.sku, "datasync_count": created})


def parse_group_prices(value: Any) -> list[dict[str, Any]]:
    """
    Group prices as a list, a JSON list or ``group:price|group:price%``.

    A trailing ``%`` marks a percentage discount off the base price; group
    ``32000`` stands for all customer groups.
    """
    if is_empty(value):
        return []
    if isinstance(value, list):
        return [price for price in value if isinstance(price, Mapping)]
    text = str(value).strip()
    if text.startswith("["):
        decoded = parse_json_list(text)
        if not decoded:
            logger.warning("Invalid group_price JSON", extra={"datasync_value": text[:100]})
        return [price for price in decoded if isinstance(price, Mapping)]

    prices = []
    for part in _LIST_SEPARATORS.split(text):
        group, separator, price = part.strip().partition(":")
        if not separator:
            continue
        price = price.strip()
        is_percent = price.endswith("%")
        prices.append(
            {
                "cust_group": parse_int(group),
                "price": price.rstrip("%"),
                "website_id": 0,
                "is_percent": is_percent,
            }
        )
    return prices


class GroupPriceImporter(ProductStrategy):
    name = "group_price"

    def apply(self, product: Product, record: Mapping[str, Any]) -> None:
        prices = parse_group_prices(record.get("group_price"))
        if not prices:
            return
        base_price = product.price or Decimal("0")
        resolved: dict[tuple[int, int], Decimal] = {}
        for data in prices:
            group_id = parse_int(data.get("cust_group", data.get("customer_group_id")))
            price = parse_decimal(data.get("price"))
            if group_id is None or price is None:
                continue
            if parse_bool(data.get("is_percent", False)):
                price = base_price - (base_price * price / Decimal("100"))
            resolved[(parse_int(data.get("website_id"), 0), group_id)] = price

        product.group_prices.clear()
        self.session.flush()
        for (website_id, group_id), price in resolved.items():
            product.group_prices.append(
                ProductGroupPrice(website_id=website_id, customer_group_id=group_id, price=price)
            )
        self.session.flush()


def _entity_option(record: Mapping[str, Any], key: str) -> Any:
    options = record.get("_entity_options")
    return options.get(key) if isinstance(options, Mapping) else None


def default_strategies(session: Session) -> list[ProductStrategy]:
    return [
        ConfigurableLinker(session),
        GroupedLinker(session),
        BundleLinker(session),
        CustomOptionsImporter(session),
        GroupPriceImporter(session),
    ]
