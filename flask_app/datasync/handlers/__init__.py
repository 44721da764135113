"""
Typed entity handler registry.

Entity types map to descriptors carrying a handler factory; the registry is
checked at start-up so a misconfigured deployment fails before any run.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Mapping

from sqlalchemy.orm import Session

from ..constants import HANDLED_ENTITY_TYPES
from ..errors import ConfigurationError, EntityNotSupported
from .base import EntityHandler, FieldWriter, ForeignKey
from .category import CategoryHandler
from .cms import CmsBlockHandler, CmsPageHandler
from .customer import CustomerHandler, extract_addresses
from .documents import CreditmemoHandler, InvoiceHandler, SalesDocumentHandler, ShipmentHandler
from .newsletter import NewsletterHandler
from .order import OrderHandler
from .product import ProductHandler
from .product_attribute import ProductAttributeHandler
from .product_strategies import (
    BundleLinker,
    ConfigurableLinker,
    CustomOptionsImporter,
    GroupedLinker,
    GroupPriceImporter,
    ProductStrategy,
)
from .stock import StockHandler


@dataclass(frozen=True)
class HandlerDescriptor:
    """Metadata and factory for one entity handler."""

    entity_type: str
    factory: Callable[..., EntityHandler]

    @property
    def label(self) -> str:
        return getattr(self.factory, "label", self.entity_type)


def get_handler_registry() -> Mapping[str, HandlerDescriptor]:
    handlers: tuple[type[EntityHandler], ...] = (
        CustomerHandler,
        OrderHandler,
        InvoiceHandler,
        ShipmentHandler,
        CreditmemoHandler,
        NewsletterHandler,
        ProductAttributeHandler,
        ProductHandler,
        StockHandler,
        CategoryHandler,
        CmsPageHandler,
        CmsBlockHandler,
    )
    return OrderedDict(
        (handler.entity_type, HandlerDescriptor(entity_type=handler.entity_type, factory=handler))
        for handler in handlers
    )


def validate_handler_registry(registry: Mapping[str, HandlerDescriptor] | None = None) -> None:
    """Every dispatched entity type must have a handler whose type matches its key."""
    registry = registry or get_handler_registry()
    missing = [entity_type for entity_type in HANDLED_ENTITY_TYPES if entity_type not in registry]
    if missing:
        raise ConfigurationError(f"No entity handler registered for: {', '.join(missing)}")
    for key, descriptor in registry.items():
        declared = getattr(descriptor.factory, "entity_type", None)
        if declared != key:
            raise ConfigurationError(f"Handler registered as '{key}' declares entity type '{declared}'.")


def get_handler(entity_type: str, session: Session | None = None) -> EntityHandler:
    descriptor = get_handler_registry().get(entity_type)
    if descriptor is None:
        raise EntityNotSupported(entity_type)
    return descriptor.factory(session)


__all__ = [
    "BundleLinker",
    "CategoryHandler",
    "CmsBlockHandler",
    "CmsPageHandler",
    "ConfigurableLinker",
    "CreditmemoHandler",
    "CustomOptionsImporter",
    "CustomerHandler",
    "EntityHandler",
    "FieldWriter",
    "ForeignKey",
    "GroupPriceImporter",
    "GroupedLinker",
    "HandlerDescriptor",
    "InvoiceHandler",
    "NewsletterHandler",
    "OrderHandler",
    "ProductAttributeHandler",
    "ProductHandler",
    "ProductStrategy",
    "SalesDocumentHandler",
    "ShipmentHandler",
    "StockHandler",
    "extract_addresses",
    "get_handler",
    "get_handler_registry",
    "validate_handler_registry",
]
