"""
Core table definitions of the source store, registered on the ``source`` bind.

Only the columns the handlers consume are declared; the database adapter
reads them with ``select()`` and never writes to them.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Column, Table

from flask_app.models import db

_BIND = "source"

customer_table = db.Table(
    "source_customer",
    db.Column("entity_id", db.Integer, primary_key=True),
    db.Column("website_id", db.Integer),
    db.Column("store_id", db.Integer),
    db.Column("group_id", db.Integer),
    db.Column("email", db.String(255)),
    db.Column("firstname", db.String(255)),
    db.Column("lastname", db.String(255)),
    db.Column("middlename", db.String(255)),
    db.Column("prefix", db.String(40)),
    db.Column("suffix", db.String(40)),
    db.Column("dob", db.String(32)),
    db.Column("gender", db.Integer),
    db.Column("taxvat", db.String(50)),
    db.Column("created_at", db.DateTime),
    db.Column("updated_at", db.DateTime),
    bind_key=_BIND,
)

customer_address_table = db.Table(
    "source_customer_address",
    db.Column("entity_id", db.Integer, primary_key=True),
    db.Column("parent_id", db.Integer, nullable=False, index=True),
    db.Column("firstname", db.String(255)),
    db.Column("lastname", db.String(255)),
    db.Column("company", db.String(255)),
    db.Column("street", db.Text),
    db.Column("city", db.String(255)),
    db.Column("region", db.String(255)),
    db.Column("postcode", db.String(40)),
    db.Column("country_id", db.String(2)),
    db.Column("telephone", db.String(64)),
    db.Column("is_default_billing", db.Boolean, default=False),
    db.Column("is_default_shipping", db.Boolean, default=False),
    bind_key=_BIND,
)

order_table = db.Table(
    "source_sales_order",
    db.Column("entity_id", db.Integer, primary_key=True),
    db.Column("increment_id", db.String(50), nullable=False),
    db.Column("customer_id", db.Integer),
    db.Column("customer_email", db.String(255)),
    db.Column("customer_firstname", db.String(255)),
    db.Column("customer_lastname", db.String(255)),
    db.Column("customer_is_guest", db.Boolean),
    db.Column("store_id", db.Integer),
    db.Column("state", db.String(32)),
    db.Column("status", db.String(32)),
    db.Column("order_currency_code", db.String(3)),
    db.Column("subtotal", db.Numeric(12, 4)),
    db.Column("shipping_amount", db.Numeric(12, 4)),
    db.Column("tax_amount", db.Numeric(12, 4)),
    db.Column("discount_amount", db.Numeric(12, 4)),
    db.Column("grand_total", db.Numeric(12, 4)),
    db.Column("base_grand_total", db.Numeric(12, 4)),
    db.Column("shipping_method", db.String(120)),
    db.Column("payment_method", db.String(120)),
    db.Column("billing_address", db.JSON),
    db.Column("shipping_address", db.JSON),
    db.Column("created_at", db.DateTime),
    db.Column("updated_at", db.DateTime),
    bind_key=_BIND,
)

order_item_table = db.Table(
    "source_sales_order_item",
    db.Column("item_id", db.Integer, primary_key=True),
    db.Column("order_id", db.Integer, nullable=False, index=True),
    db.Column("product_id", db.Integer),
    db.Column("sku", db.String(64)),
    db.Column("name", db.String(255)),
    db.Column("product_type", db.String(32)),
    db.Column("qty_ordered", db.Numeric(12, 4)),
    db.Column("price", db.Numeric(12, 4)),
    db.Column("row_total", db.Numeric(12, 4)),
    bind_key=_BIND,
)

order_comment_table = db.Table(
    "source_sales_order_comment",
    db.Column("entity_id", db.Integer, primary_key=True),
    db.Column("parent_id", db.Integer, nullable=False, index=True),
    db.Column("comment", db.Text),
    db.Column("status", db.String(32)),
    db.Column("is_customer_notified", db.Boolean),
    db.Column("created_at", db.DateTime),
    bind_key=_BIND,
)


def _document_table(name: str, *extra: Column) -> Table:
    return db.Table(
        name,
        db.Column("entity_id", db.Integer, primary_key=True),
        db.Column("increment_id", db.String(50)),
        db.Column("order_id", db.Integer, nullable=False, index=True),
        db.Column("state", db.String(32)),
        db.Column("grand_total", db.Numeric(12, 4)),
        db.Column("total_qty", db.Numeric(12, 4)),
        db.Column("items", db.JSON),
        db.Column("created_at", db.DateTime),
        db.Column("updated_at", db.DateTime),
        *extra,
        bind_key=_BIND,
    )


invoice_table = _document_table("source_invoice")
shipment_table = _document_table("source_shipment", db.Column("tracks", db.JSON))
creditmemo_table = _document_table("source_creditmemo", db.Column("invoice_id", db.Integer))

newsletter_table = db.Table(
    "source_newsletter_subscriber",
    db.Column("subscriber_id", db.Integer, primary_key=True),
    db.Column("subscriber_email", db.String(255)),
    db.Column("customer_id", db.Integer),
    db.Column("store_id", db.Integer),
    db.Column("subscriber_status", db.Integer),
    db.Column("subscriber_confirm_code", db.String(32)),
    db.Column("change_status_at", db.DateTime),
    bind_key=_BIND,
)

product_table = db.Table(
    "source_product",
    db.Column("entity_id", db.Integer, primary_key=True),
    db.Column("sku", db.String(64), nullable=False),
    db.Column("type_id", db.String(32)),
    db.Column("attribute_set", db.String(64)),
    db.Column("name", db.String(255)),
    db.Column("description", db.Text),
    db.Column("short_description", db.Text),
    db.Column("price", db.Numeric(12, 4)),
    db.Column("special_price", db.Numeric(12, 4)),
    db.Column("weight", db.Numeric(12, 4)),
    db.Column("status", db.Integer),
    db.Column("visibility", db.Integer),
    db.Column("url_key", db.String(255)),
    db.Column("category_ids", db.String(255)),
    db.Column("group_price", db.Text),
    db.Column("custom_options", db.Text),
    db.Column("configurable_children_skus", db.Text),
    db.Column("configurable_parent_sku", db.String(64)),
    db.Column("super_attributes", db.String(255)),
    db.Column("grouped_product_skus", db.Text),
    db.Column("grouped_parent_sku", db.String(64)),
    db.Column("grouped_qty", db.Numeric(12, 4)),
    db.Column("bundle_options", db.Text),
    db.Column("created_at", db.DateTime),
    db.Column("updated_at", db.DateTime),
    bind_key=_BIND,
)

stock_table = db.Table(
    "source_stock_item",
    db.Column("product_id", db.Integer, primary_key=True),
    db.Column("qty", db.Numeric(12, 4)),
    db.Column("is_in_stock", db.Boolean),
    db.Column("manage_stock", db.Boolean),
    db.Column("min_qty", db.Numeric(12, 4)),
    db.Column("min_sale_qty", db.Numeric(12, 4)),
    db.Column("max_sale_qty", db.Numeric(12, 4)),
    db.Column("backorders", db.Integer),
    db.Column("notify_stock_qty", db.Numeric(12, 4)),
    db.Column("updated_at", db.DateTime),
    bind_key=_BIND,
)

category_table = db.Table(
    "source_category",
    db.Column("entity_id", db.Integer, primary_key=True),
    db.Column("parent_id", db.Integer),
    db.Column("name", db.String(255)),
    db.Column("url_key", db.String(255)),
    db.Column("path", db.String(255)),
    db.Column("level", db.Integer),
    db.Column("position", db.Integer),
    db.Column("is_active", db.Boolean),
    db.Column("include_in_menu", db.Boolean),
    db.Column("description", db.Text),
    db.Column("created_at", db.DateTime),
    db.Column("updated_at", db.DateTime),
    bind_key=_BIND,
)


product_attribute_table = db.Table(
    "source_product_attribute",
    db.Column("attribute_id", db.Integer, primary_key=True),
    db.Column("attribute_code", db.String(60), nullable=False),
    db.Column("frontend_label", db.String(255)),
    db.Column("frontend_input", db.String(32)),
    db.Column("backend_type", db.String(16)),
    db.Column("is_global", db.Integer),
    db.Column("is_required", db.Boolean),
    db.Column("is_unique", db.Boolean),
    db.Column("is_visible", db.Boolean),
    db.Column("is_searchable", db.Boolean),
    db.Column("is_filterable", db.Boolean),
    db.Column("is_comparable", db.Boolean),
    db.Column("is_visible_on_front", db.Boolean),
    db.Column("used_in_product_listing", db.Boolean),
    db.Column("default_value", db.Text),
    db.Column("position", db.Integer),
    db.Column("options", db.Text),
    bind_key=_BIND,
)


def _cms_table(name: str, id_column: str, *extra: Column) -> Table:
    return db.Table(
        name,
        db.Column(id_column, db.Integer, primary_key=True),
        db.Column("identifier", db.String(100), nullable=False),
        db.Column("title", db.String(255)),
        db.Column("content", db.Text),
        db.Column("is_active", db.Boolean),
        db.Column("store_ids", db.String(255)),
        db.Column("creation_time", db.DateTime),
        db.Column("update_time", db.DateTime),
        *extra,
        bind_key=_BIND,
    )


cms_page_table = _cms_table(
    "source_cms_page",
    "page_id",
    db.Column("root_template", db.String(255)),
    db.Column("content_heading", db.String(255)),
    db.Column("meta_keywords", db.Text),
    db.Column("meta_description", db.Text),
    db.Column("sort_order", db.Integer),
)
cms_block_table = _cms_table("source_cms_block", "block_id")


@dataclass(frozen=True)
class SourceTable:
    """Where one entity type lives at the source."""

    table: Table
    id_column: str
    date_column: str | None = "created_at"
    updated_column: str | None = "updated_at"


SOURCE_TABLES: dict[str, SourceTable] = {
    "customer": SourceTable(customer_table, "entity_id"),
    "customer_address": SourceTable(customer_address_table, "entity_id", None, None),
    "order": SourceTable(order_table, "entity_id"),
    "order_comment": SourceTable(order_comment_table, "entity_id", "created_at", None),
    "invoice": SourceTable(invoice_table, "entity_id"),
    "shipment": SourceTable(shipment_table, "entity_id"),
    "creditmemo": SourceTable(creditmemo_table, "entity_id"),
    "newsletter": SourceTable(newsletter_table, "subscriber_id", "change_status_at", "change_status_at"),
    "product": SourceTable(product_table, "entity_id"),
    "stock": SourceTable(stock_table, "product_id", "updated_at"),
    "category": SourceTable(category_table, "entity_id"),
    "product_attribute": SourceTable(product_attribute_table, "attribute_id", None, None),
    "cms_page": SourceTable(cms_page_table, "page_id", "update_time", "update_time"),
    "cms_block": SourceTable(cms_block_table, "block_id", "update_time", "update_time"),
}
