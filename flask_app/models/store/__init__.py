"""
Destination store models populated by the entity handlers.
"""

from .catalog import (
    Category,
    Product,
    ProductAttribute,
    ProductGroupPrice,
    ProductLink,
    ProductLinkType,
    ProductOption,
    StockItem,
)
from .cms import CmsBlock, CmsPage
from .customer import Customer, CustomerAddress, NewsletterSubscriber, SubscriberStatus
from .sales import SalesDocument, SalesDocumentKind, SalesOrder, SalesOrderComment, SalesOrderItem

__all__ = [
    "Category",
    "CmsBlock",
    "CmsPage",
    "Customer",
    "CustomerAddress",
    "NewsletterSubscriber",
    "Product",
    "ProductAttribute",
    "ProductGroupPrice",
    "ProductLink",
    "ProductLinkType",
    "ProductOption",
    "SalesDocument",
    "SalesDocumentKind",
    "SalesOrder",
    "SalesOrderComment",
    "SalesOrderItem",
    "StockItem",
    "SubscriberStatus",
]
