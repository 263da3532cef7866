"""CRUD package re-exports for easy imports from `src.keydispatch.crud`."""
from .crud import (
    get_shop,
    get_shop_by_domain,
    create_shop,
    get_product,
    get_product_by_remote_id,
    create_product,
    add_licenses,
    get_license,
    release_license,
    delete_license,
    count_available_licenses,
    get_inventory_stats,
    get_order,
    get_order_by_remote_id,
    get_incomplete_items,
    get_order_license_keys,
    get_order_detail,
    get_email_logs,
    record_delivery_status,
)

__all__ = [
    "get_shop",
    "get_shop_by_domain",
    "create_shop",
    "get_product",
    "get_product_by_remote_id",
    "create_product",
    "add_licenses",
    "get_license",
    "release_license",
    "delete_license",
    "count_available_licenses",
    "get_inventory_stats",
    "get_order",
    "get_order_by_remote_id",
    "get_incomplete_items",
    "get_order_license_keys",
    "get_order_detail",
    "get_email_logs",
    "record_delivery_status",
]

# re-export exceptions
from .crud import (
    ShopNotFoundError,
    ProductNotFoundError,
    OrderNotFoundError,
    LicenseNotFoundError,
    LicenseAllocatedError,
)
__all__.extend([
    "ShopNotFoundError",
    "ProductNotFoundError",
    "OrderNotFoundError",
    "LicenseNotFoundError",
    "LicenseAllocatedError",
])
