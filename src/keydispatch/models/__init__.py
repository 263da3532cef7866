"""Models package re-exports for easy imports from `src.keydispatch.models`."""
from .models import (
    Base,
    DeliveryMethod,
    OutOfStockBehavior,
    OrderType,
    EmailKind,
    EmailStatus,
    DeliveryStatus,
    Shop,
    Product,
    License,
    Order,
    OrderItem,
    EmailLog,
    InventoryAlert,
    ShopSettings,
)

__all__ = [
    "Base",
    "DeliveryMethod",
    "OutOfStockBehavior",
    "OrderType",
    "EmailKind",
    "EmailStatus",
    "DeliveryStatus",
    "Shop",
    "Product",
    "License",
    "Order",
    "OrderItem",
    "EmailLog",
    "InventoryAlert",
    "ShopSettings",
]
