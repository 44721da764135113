from decimal import Decimal

import pytest
from sqlalchemy import select

from flask_app.datasync.engine import SyncEngine
from flask_app.datasync.handlers import CmsBlockHandler, CmsPageHandler, ProductAttributeHandler, get_handler_registry
from flask_app.datasync.handlers.cms import parse_store_ids
from flask_app.datasync.handlers.product import ProductHandler
from flask_app.datasync.handlers.product_attribute import parse_attribute_options
from flask_app.datasync.handlers.product_strategies import (
    ConfigurableLinker,
    ProductStrategy,
    parse_bundle_options,
    parse_grouped_skus,
)
from flask_app.models import CmsBlock, CmsPage, Product, ProductAttribute, ProductLink, ProductLinkType, db


def _links(parent_sku, link_type):
    parent_id = db.session.scalar(select(Product.id).where(Product.sku == parent_sku))
    rows = db.session.execute(
        select(Product.sku, ProductLink)
        .join(ProductLink, ProductLink.child_id == Product.id)
        .where(ProductLink.parent_id == parent_id, ProductLink.link_type == link_type)
        .order_by(ProductLink.position)
    ).all()
    return [(sku, link) for sku, link in rows]


def _simple(entity_id, sku, **extra):
    return {"entity_id": entity_id, "sku": sku, "name": sku, **extra}


def test_parse_grouped_skus():
    links = parse_grouped_skus("A:2|B")

    assert [(link.sku, link.qty) for link in links] == [("A", Decimal("2")), ("B", Decimal("1"))]
    assert parse_grouped_skus("") == []


def test_parse_bundle_options_keeps_option_titles():
    links = parse_bundle_options('[{"title": "Shirt", "selections": [{"sku": "A", "qty": 2}, {"sku": ""}]}]')

    assert [(link.sku, link.qty, link.option_title) for link in links] == [("A", Decimal("2"), "Shirt")]
    assert parse_bundle_options("not json") == []


def test_product_strategy_is_abstract(app):
    with pytest.raises(TypeError):
        ProductStrategy(db.session)


def test_product_handler_exposes_strategies_by_name(app):
    handler = ProductHandler(db.session)

    assert isinstance(handler.strategy("configurable"), ConfigurableLinker)
    assert [strategy.name for strategy in handler.strategies][:3] == ["configurable", "grouped", "bundle"]
    assert handler.strategy("missing") is None


def test_grouped_members_from_parent_and_member_rows(memory_adapter_factory):
    adapter = memory_adapter_factory(
        {
            "product": [
                _simple(1, "SET", type_id="grouped", grouped_product_skus="A:2|B"),
                _simple(2, "A"),
                _simple(3, "B"),
                _simple(4, "C", grouped_parent_sku="SET", grouped_qty="3"),
                _simple(5, "PLAIN", grouped_product_skus="A"),
            ]
        }
    )

    result = SyncEngine(adapter, source_system="live").sync("product")

    assert result.created == 5
    links = _links("SET", ProductLinkType.GROUPED)
    assert [(sku, link.qty) for sku, link in links] == [("A", Decimal("2")), ("B", Decimal("1")), ("C", Decimal("3"))]
    assert _links("PLAIN", ProductLinkType.GROUPED) == []


def test_bundle_selections_are_linked(memory_adapter_factory):
    adapter = memory_adapter_factory(
        {
            "product": [
                _simple(
                    1,
                    "KIT",
                    type_id="bundle",
                    bundle_options='[{"title": "Top", "selections": [{"sku": "TOP", "qty": 1}, {"sku": "GHOST"}]},'
                    ' {"title": "Socks", "selections": [{"sku": "SOCK", "qty": 3}]}]',
                ),
                _simple(2, "TOP"),
                _simple(3, "SOCK"),
            ]
        }
    )

    SyncEngine(adapter, source_system="live").sync("product")

    links = _links("KIT", ProductLinkType.BUNDLE)
    assert [(sku, link.option_title, link.qty) for sku, link in links] == [
        ("TOP", "Top", Decimal("1")),
        ("SOCK", "Socks", Decimal("3")),
    ]


def test_auto_link_configurables_stops_at_attribute_set_change(memory_adapter_factory):
    adapter = memory_adapter_factory(
        {
            "product": [
                _simple(1, "TEE", type_id="configurable", attribute_set="Shirts"),
                _simple(2, "TEE-S", type_id="simple", attribute_set="Shirts"),
                _simple(3, "TEE-M", type_id="simple", attribute_set="Shirts"),
                _simple(4, "JEANS", type_id="simple", attribute_set="Pants"),
                _simple(5, "TEE-L", type_id="simple", attribute_set="Shirts"),
            ]
        }
    )

    SyncEngine(adapter, source_system="live", entity_options={"auto_link_configurables": True}).sync("product")

    assert [sku for sku, _ in _links("TEE", ProductLinkType.CONFIGURABLE)] == ["TEE-S", "TEE-M"]


def test_auto_link_configurables_is_opt_in(memory_adapter_factory):
    adapter = memory_adapter_factory(
        {
            "product": [
                _simple(1, "TEE", type_id="configurable", attribute_set="Shirts"),
                _simple(2, "TEE-S", type_id="simple", attribute_set="Shirts"),
            ]
        }
    )

    SyncEngine(adapter, source_system="live").sync("product")

    assert db.session.scalars(select(ProductLink)).all() == []


def test_parse_attribute_options_formats():
    assert parse_attribute_options("Red|Blue") == ["Red", "Blue"]
    assert parse_attribute_options("1:Small,2:Large") == ["Small", "Large"]
    assert parse_attribute_options('[{"label": "Wool"}, "Cotton"]') == ["Wool", "Cotton"]
    assert parse_attribute_options(None) == []


def test_product_attribute_validation(app):
    handler = ProductAttributeHandler(db.session)

    assert handler.validate({"attribute_code": "color", "frontend_input": "select"}) == []
    assert "Invalid attribute_code" in handler.validate({"attribute_code": "Bad-Code"})[0]
    assert "too long" in handler.validate({"attribute_code": "a" * 61})[0]
    assert "Invalid frontend_input: slider" in handler.validate({"attribute_code": "size", "frontend_input": "slider"})[0]


def test_product_attribute_update_merges_options_and_keeps_input(memory_adapter_factory):
    created = SyncEngine(
        memory_adapter_factory(
            {
                "product_attribute": [
                    {
                        "attribute_id": 1,
                        "attribute_code": "color",
                        "frontend_label": "Color",
                        "frontend_input": "select",
                        "options": "Red|Blue",
                        "is_filterable": "1",
                        "is_global": "1",
                    },
                    {"attribute_id": 2, "attribute_code": "Bad-Code", "frontend_label": "Bad"},
                ]
            }
        ),
        source_system="live",
    ).sync("product_attribute")

    assert created.created == 1
    assert len(created.errors) == 1

    SyncEngine(
        memory_adapter_factory(
            {
                "product_attribute": [
                    {
                        "attribute_id": 1,
                        "attribute_code": "color",
                        "frontend_label": "Colour",
                        "frontend_input": "text",
                        "options": "blue|Green",
                    }
                ]
            }
        ),
        source_system="live",
        on_duplicate="update",
    ).sync("product_attribute")

    attribute = db.session.scalar(select(ProductAttribute).where(ProductAttribute.attribute_code == "color"))
    assert attribute.frontend_label == "Colour"
    assert attribute.frontend_input == "select"
    assert attribute.backend_type == "int"
    assert attribute.scope == "global"
    assert attribute.options == ["Red", "Blue", "Green"]
    assert attribute.flags["is_filterable"] is True
    assert attribute.flags["is_visible"] is True
    assert attribute.attribute_sets == ["Default"]


def test_parse_store_ids():
    assert parse_store_ids("1,2") == [1, 2]
    assert parse_store_ids([3]) == [3]
    assert parse_store_ids(None) == [0]


def test_cms_identifier_formats(app):
    assert CmsPageHandler(db.session).validate({"identifier": "about/team"}) == []
    assert "Invalid cms_block identifier format" in CmsBlockHandler(db.session).validate({"identifier": "about/team"})[0]
    assert CmsBlockHandler(db.session).validate({"identifier": "footer-links"}) == []


def test_cms_pages_and_blocks_sync(memory_adapter_factory):
    adapter = memory_adapter_factory(
        {
            "cms_page": [
                {
                    "page_id": 1,
                    "identifier": "about-us",
                    "title": "About",
                    "content": "<p>Hi</p>",
                    "root_template": "two_columns_left",
                    "meta_description": "About the shop",
                    "is_active": "0",
                },
                {"page_id": 2, "identifier": "bad page", "title": "Bad"},
            ],
            "cms_block": [{"block_id": 7, "identifier": "footer", "title": "Footer", "store_ids": "1,2"}],
        }
    )
    engine = SyncEngine(adapter, source_system="live")

    pages = engine.sync("cms_page")
    blocks = engine.sync("cms_block")

    assert pages.created == 1
    assert "Invalid cms_page identifier format" in pages.errors[0].reason
    assert blocks.created == 1
    page = db.session.scalar(select(CmsPage))
    assert page.root_template == "two_columns_left"
    assert page.meta_description == "About the shop"
    assert page.is_active is False
    assert page.store_ids == [0]
    block = db.session.scalar(select(CmsBlock))
    assert block.store_ids == [1, 2]
    assert block.is_active is True


def test_cms_block_matches_by_identifier_and_store(app):
    db.session.add(CmsBlock(identifier="footer", title="Footer", content="", store_ids=[1]))
    db.session.flush()
    handler = CmsBlockHandler(db.session)

    assert handler.find_existing({"identifier": "footer"}) is not None
    assert handler.find_existing({"identifier": "footer", "store_ids": "1"}) is not None
    assert handler.find_existing({"identifier": "footer", "store_ids": "2"}) is None
    assert handler.find_existing({"identifier": "header"}) is None


def test_catalog_content_handlers_are_registered():
    registry = get_handler_registry()

    assert registry["product_attribute"].label == "Product Attributes"
    assert registry["cms_page"].label == "CMS Pages"
    assert registry["cms_block"].label == "CMS Blocks"
