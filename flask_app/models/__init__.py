# flask_app/models/__init__.py

from .base import BaseModel, db
from .datasync import ChangeAction, ChangeRecord, DeltaState, RegistryMapping, SyncStatus
from .store import (
    Category,
    CmsBlock,
    CmsPage,
    Customer,
    CustomerAddress,
    NewsletterSubscriber,
    Product,
    ProductAttribute,
    ProductGroupPrice,
    ProductLink,
    ProductLinkType,
    ProductOption,
    SalesDocument,
    SalesDocumentKind,
    SalesOrder,
    SalesOrderComment,
    SalesOrderItem,
    StockItem,
    SubscriberStatus,
)

__all__ = [
    "db",
    "BaseModel",
    "ChangeAction",
    "ChangeRecord",
    "DeltaState",
    "RegistryMapping",
    "SyncStatus",
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
