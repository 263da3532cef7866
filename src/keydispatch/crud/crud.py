import json
import logging
from datetime import datetime

from sqlalchemy import func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models, schemas

logger = logging.getLogger(__name__)


# Domain exceptions for deterministic error handling

class ShopNotFoundError(Exception):
    pass


class ProductNotFoundError(Exception):
    pass


class OrderNotFoundError(Exception):
    pass


class LicenseNotFoundError(Exception):
    pass


class LicenseAllocatedError(Exception):
    pass


# Shops and products

def get_shop(db: Session, shop_id: int):
    return db.query(models.Shop).filter(models.Shop.id == shop_id).first()


def get_shop_by_domain(db: Session, shop_domain: str):
    return db.query(models.Shop).filter(models.Shop.shop_domain == shop_domain).first()


def create_shop(db: Session, shop: schemas.ShopCreate):
    db_shop = models.Shop(shop_domain=shop.shop_domain, access_token=shop.access_token)
    db.add(db_shop)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(db_shop)
    return db_shop


def get_product(db: Session, product_id: int):
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_product_by_remote_id(db: Session, shop_id: int, shopify_product_id: str):
    return (
        db.query(models.Product)
        .filter(models.Product.shop_id == shop_id, models.Product.shopify_product_id == shopify_product_id)
        .first()
    )


def create_product(db: Session, shop_id: int, product: schemas.ProductCreate):
    if not get_shop(db, shop_id):
        raise ShopNotFoundError("Shop not found")
    db_product = models.Product(
        shop_id=shop_id,
        shopify_product_id=product.shopify_product_id,
        product_name=product.product_name,
    )
    db.add(db_product)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(db_product)
    return db_product


# License pool

def add_licenses(db: Session, product_id: int, license_keys: list[str]):
    """Append keys to a product's pool in the given order (insertion order drives FIFO/LIFO)."""
    if not get_product(db, product_id):
        raise ProductNotFoundError("Product not found")
    keys = [k.strip() for k in license_keys if k and k.strip()]
    db_licenses = [models.License(product_id=product_id, license_key=key, allocated=False) for key in keys]
    db.add_all(db_licenses)
    db.commit()
    logger.info("Uploaded %d licenses for product %s", len(db_licenses), product_id)
    return db_licenses


def get_license(db: Session, license_id: int):
    return db.query(models.License).filter(models.License.id == license_id).first()


def release_license(db: Session, license_id: int):
    """Return an allocated license to the available pool."""
    db_license = get_license(db, license_id)
    if not db_license:
        raise LicenseNotFoundError("License not found")
    db_license.allocated = False
    db_license.order_id = None
    db_license.allocated_at = None
    db.commit()
    db.refresh(db_license)
    return db_license


def delete_license(db: Session, license_id: int):
    db_license = get_license(db, license_id)
    if not db_license:
        raise LicenseNotFoundError("License not found")
    if db_license.allocated:
        raise LicenseAllocatedError("Cannot delete allocated license. Release it first.")
    db.delete(db_license)
    db.commit()
    return db_license


def count_available_licenses(db: Session, product_id: int) -> int:
    return (
        db.query(func.count(models.License.id))
        .filter(models.License.product_id == product_id, models.License.allocated.is_(False))
        .scalar()
    )


def get_inventory_stats(db: Session, product_id: int) -> schemas.InventoryStats:
    total, available = (
        db.query(
            func.count(models.License.id),
            func.coalesce(func.sum(case((models.License.allocated.is_(False), 1), else_=0)), 0),
        )
        .filter(models.License.product_id == product_id)
        .one()
    )
    return schemas.InventoryStats(product_id=product_id, total=total, available=available, allocated=total - available)


# Orders

def get_order(db: Session, order_id: int):
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_remote_id(db: Session, shop_id: int, shopify_order_id: str):
    return (
        db.query(models.Order)
        .filter(models.Order.shop_id == shop_id, models.Order.shopify_order_id == shopify_order_id)
        .first()
    )


def get_incomplete_items(db: Session, order_id: int):
    # Lock the items so concurrent retries of one order queue up behind each other
    return (
        db.query(models.OrderItem)
        .filter(
            models.OrderItem.order_id == order_id,
            models.OrderItem.licenses_allocated < models.OrderItem.quantity,
        )
        .order_by(models.OrderItem.id)
        .with_for_update(nowait=False)
        .all()
    )


def get_order_license_keys(db: Session, order_id: int, product_id: int) -> list[str]:
    rows = (
        db.query(models.License.license_key)
        .filter(models.License.order_id == order_id, models.License.product_id == product_id)
        .order_by(models.License.allocated_at, models.License.id)
        .all()
    )
    return [row[0] for row in rows]


def get_order_detail(db: Session, order_id: int) -> schemas.OrderDetail:
    db_order = get_order(db, order_id)
    if not db_order:
        raise OrderNotFoundError("Order not found")
    items = [
        schemas.OrderItemDetail(
            id=item.id,
            product_id=item.product_id,
            product_name=item.product.product_name if item.product else None,
            shopify_line_item_id=item.shopify_line_item_id,
            quantity=item.quantity,
            licenses_allocated=item.licenses_allocated,
            email_sent=item.email_sent,
            allocated_licenses=get_order_license_keys(db, order_id, item.product_id),
        )
        for item in db_order.items
    ]
    logs = [
        schemas.EmailLog(
            id=log.id,
            order_item_id=log.order_item_id,
            customer_email=log.customer_email,
            email_kind=log.email_kind,
            licenses_sent=json.loads(log.licenses_sent or "[]"),
            email_status=log.email_status,
            error_message=log.error_message,
            delivery_status=log.delivery_status,
            sent_at=log.sent_at,
        )
        for log in get_email_logs(db, order_id)
    ]
    return schemas.OrderDetail(
        id=db_order.id,
        shop_id=db_order.shop_id,
        shopify_order_id=db_order.shopify_order_id,
        order_number=db_order.order_number,
        customer_email=db_order.customer_email,
        order_type=db_order.order_type,
        created_at=db_order.created_at,
        items=items,
        email_logs=logs,
    )


# Email logs

def get_email_logs(db: Session, order_id: int):
    return db.query(models.EmailLog).filter(models.EmailLog.order_id == order_id).order_by(models.EmailLog.id).all()


def record_delivery_status(db: Session, email: str, status: models.DeliveryStatus, timestamp=None) -> bool:
    """Update the newest pending email log for a recipient. Returns False when none is pending."""
    log = (
        db.query(models.EmailLog)
        .filter(
            models.EmailLog.customer_email == email,
            models.EmailLog.delivery_status == models.DeliveryStatus.PENDING,
        )
        .order_by(models.EmailLog.id.desc())
        .first()
    )
    if not log:
        return False
    log.delivery_status = status
    log.delivery_updated_at = _event_time(timestamp)
    db.commit()
    return True


def _event_time(timestamp) -> datetime:
    if not timestamp:
        return datetime.now()
    try:
        return datetime.fromtimestamp(timestamp)
    except (OverflowError, ValueError, OSError):
        logger.warning("Delivery event timestamp %r out of range, using current time", timestamp)
        return datetime.now()
