"""Schemas package re-exports for easy imports from `src.keydispatch.schemas`."""
from .schemas import (
    WebhookCustomer,
    WebhookLineItem,
    OrderWebhook,
    SendGridEvent,
    LineItemOutcome,
    LineItemResult,
    OrderProcessingResult,
    ManualAllocationResult,
    ManualSendRequest,
    ManualSendResult,
    Settings,
    ShopCreate,
    Shop,
    ProductCreate,
    Product,
    LicenseUpload,
    License,
    InventoryStats,
    EmailLog,
    OrderItemDetail,
    OrderDetail,
    OutboundEmail,
)

__all__ = [
    "WebhookCustomer",
    "WebhookLineItem",
    "OrderWebhook",
    "SendGridEvent",
    "LineItemOutcome",
    "LineItemResult",
    "OrderProcessingResult",
    "ManualAllocationResult",
    "ManualSendRequest",
    "ManualSendResult",
    "Settings",
    "ShopCreate",
    "Shop",
    "ProductCreate",
    "Product",
    "LicenseUpload",
    "License",
    "InventoryStats",
    "EmailLog",
    "OrderItemDetail",
    "OrderDetail",
    "OutboundEmail",
]
