"""Order processing: one transaction per order, email and alerts after commit."""
import logging
import random
import time
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .. import models, schemas, crud
from .allocation import allocate_licenses
from .notifications import (
    EmailSender,
    queue_email,
    record_failed_email,
    dispatch_pending_emails,
    check_inventory_alert,
    send_admin_notice,
)
from .settings import get_or_create_settings

logger = logging.getLogger(__name__)

NO_LICENSES_REASON = "No licenses available"
UNMANAGED_REASON = "unmanaged product"


def _allocate_item(
    db: Session,
    order: models.Order,
    item: models.OrderItem,
    needed: int,
    settings: models.ShopSettings,
    line_item_id: Optional[str] = None,
    allow_placeholder: bool = True,
) -> schemas.LineItemResult:
    """Allocate ``needed`` keys to an item and write its outbox rows."""
    batch = allocate_licenses(db, item.product_id, order.id, needed, settings=settings)
    keys = batch.keys
    result = schemas.LineItemResult(
        line_item_id=line_item_id,
        order_item_id=item.id,
        product_id=item.product_id,
        requested=needed,
        allocated=len(keys),
        license_keys=keys,
        duplicates_skipped=batch.duplicates_skipped,
        outcome=schemas.LineItemOutcome.ALLOCATED,
    )

    if keys:
        # incremented in SQL so a stale in-memory counter can never overwrite a concurrent claim
        item.licenses_allocated = models.OrderItem.licenses_allocated + len(keys)
        queue_email(db, order, item, keys)
        if len(keys) < needed:
            result.outcome = schemas.LineItemOutcome.PARTIAL
            result.reason = f"Only {len(keys)} of {needed} licenses available"
    else:
        record_failed_email(db, order, item, NO_LICENSES_REASON)
        if allow_placeholder and settings.out_of_stock_behavior == models.OutOfStockBehavior.SEND_PLACEHOLDER:
            queue_email(db, order, item, [], kind=models.EmailKind.PLACEHOLDER)
        result.outcome = schemas.LineItemOutcome.OUT_OF_STOCK
        result.reason = NO_LICENSES_REASON
    db.flush()
    return result


def _after_commit(
    db: Session,
    order_id: int,
    order_number: str,
    shop_id: int,
    items: list[schemas.LineItemResult],
    sender: EmailSender,
):
    """Side effects that must not hold the order transaction open."""
    dispatch_pending_emails(db, sender, order_id=order_id)

    for product_id in dict.fromkeys(r.product_id for r in items if r.product_id is not None):
        check_inventory_alert(db, product_id, sender)

    settings = get_or_create_settings(db, shop_id)
    notices = []
    for r in items:
        if r.outcome == schemas.LineItemOutcome.OUT_OF_STOCK and settings.notify_on_out_of_stock:
            product = crud.get_product(db, r.product_id)
            notices.append((
                f"Out of stock: {product.product_name}",
                f"Order #{order_number} requested {r.requested} license(s) for {product.product_name} "
                f"but none were available. Upload more keys and use Retry Allocation on the order.",
            ))
        if r.duplicates_skipped and settings.notify_on_uniqueness_issue:
            product = crud.get_product(db, r.product_id)
            notices.append((
                f"Duplicate license keys skipped: {product.product_name}",
                f"{r.duplicates_skipped} duplicate license key(s) for {product.product_name} were skipped "
                f"while fulfilling order #{order_number}.",
            ))
    admin_email = settings.notification_email
    # no transaction stays open while admin notices go out
    db.commit()
    for subject, message in notices:
        send_admin_notice(sender, admin_email, subject, message)


def process_order(
    db: Session,
    shop_domain: str,
    payload: schemas.OrderWebhook,
    sender: EmailSender,
) -> schemas.OrderProcessingResult:
    """Record an order and allocate licenses for every managed line item.

    The order, its items, the claimed licenses and the email outbox rows are
    written in one transaction. Any exception rolls all of it back and is
    re-raised. A redelivered order (same shop and Shopify order id) is
    reported as a duplicate and changes nothing.
    """
    shop = crud.get_shop_by_domain(db, shop_domain)
    if not shop:
        raise crud.ShopNotFoundError(f"Shop not found: {shop_domain}")

    existing = crud.get_order_by_remote_id(db, shop.id, payload.id)
    if existing:
        logger.info("Order %s for %s already processed, ignoring redelivery", payload.id, shop_domain)
        # a redelivery is also the chance to flush outbox rows an earlier attempt left queued
        dispatch_pending_emails(db, sender, order_id=existing.id)
        return schemas.OrderProcessingResult(order_id=existing.id, order_number=existing.order_number, duplicate=True)

    results = []
    try:
        settings = get_or_create_settings(db, shop.id)
        order = models.Order(
            shop_id=shop.id,
            shopify_order_id=payload.id,
            order_number=payload.display_number,
            customer_email=payload.email,
            customer_first_name=payload.first_name,
            customer_last_name=payload.last_name,
            order_status=payload.financial_status,
            order_type=models.OrderType.WEBHOOK,
        )
        db.add(order)
        db.flush()
        order_id = order.id

        for line_item in payload.line_items:
            product = None
            if line_item.product_id:
                product = crud.get_product_by_remote_id(db, shop.id, line_item.product_id)
            if product is None:
                logger.info("Product %s not linked to licenses, skipping", line_item.product_id)
                results.append(schemas.LineItemResult(
                    line_item_id=line_item.id,
                    outcome=schemas.LineItemOutcome.SKIPPED,
                    reason=UNMANAGED_REASON,
                    requested=line_item.quantity,
                ))
                continue

            item = models.OrderItem(
                order_id=order.id,
                product_id=product.id,
                shopify_line_item_id=line_item.id,
                quantity=line_item.quantity,
                licenses_allocated=0,
            )
            db.add(item)
            db.flush()
            results.append(_allocate_item(db, order, item, line_item.quantity, settings, line_item_id=line_item.id))

        db.commit()
    except IntegrityError:
        db.rollback()
        # a concurrent delivery of the same order won the insert
        existing = crud.get_order_by_remote_id(db, shop.id, payload.id)
        if existing:
            logger.info("Order %s for %s inserted concurrently, treating as duplicate", payload.id, shop_domain)
            return schemas.OrderProcessingResult(order_id=existing.id, order_number=existing.order_number, duplicate=True)
        raise
    except Exception:
        db.rollback()
        logger.exception("Order %s for %s rolled back", payload.display_number, shop_domain)
        raise

    logger.info("Order #%s processed: %s", payload.display_number, [r.outcome.value for r in results])
    _after_commit(db, order_id, payload.display_number, shop.id, results, sender)
    return schemas.OrderProcessingResult(order_id=order_id, order_number=payload.display_number, items=results)


def handle_order_webhook(
    session_factory: sessionmaker,
    shop_domain: str,
    payload: schemas.OrderWebhook,
    sender: EmailSender,
    max_retries: int = 3,
    base_delay: float = 0.05,
):
    """Background entry point for the order webhook.

    Shopify already has its 200, so failures here are only visible in the logs.
    Transient database lock errors are retried with exponential backoff.
    """
    for attempt in range(max_retries):
        db = session_factory()
        try:
            return process_order(db, shop_domain, payload, sender)
        except crud.ShopNotFoundError:
            logger.error("Order #%s dropped: shop %s is not installed", payload.display_number, shop_domain)
            return None
        except OperationalError:
            if attempt < max_retries - 1:
                # Exponential backoff with jitter to prevent thundering herd
                delay = base_delay * (2 ** attempt) + random.uniform(0, 0.01)
                logger.warning("Database busy processing order #%s, retrying in %.2fs", payload.display_number, delay)
                time.sleep(delay)
                continue
            logger.exception("Order #%s failed after %d attempts", payload.display_number, max_retries)
            return None
        except Exception:
            logger.exception("Error processing order #%s", payload.display_number)
            return None
        finally:
            db.close()


def manual_allocate(db: Session, order_id: int, sender: EmailSender) -> schemas.ManualAllocationResult:
    """Retry allocation for every under-allocated item of an order.

    Only the newly claimed keys are emailed. Runs in its own transaction, so a
    failure leaves earlier allocations untouched.
    """
    order = crud.get_order(db, order_id)
    if not order:
        raise crud.OrderNotFoundError("Order not found")

    # outbox rows left behind by an interrupted dispatch go out first
    dispatch_pending_emails(db, sender, order_id=order_id)

    results = []
    try:
        items = crud.get_incomplete_items(db, order_id)
        settings = get_or_create_settings(db, order.shop_id)
        for item in items:
            # the shortfall is read again under the row lock; another retry may have filled it
            db.refresh(item, with_for_update=True)
            needed = item.quantity - item.licenses_allocated
            if needed <= 0:
                continue
            results.append(_allocate_item(
                db, order, item, needed, settings,
                line_item_id=item.shopify_line_item_id,
                allow_placeholder=False,
            ))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Manual allocation for order %s rolled back", order_id)
        raise

    if not results:
        return schemas.ManualAllocationResult(order_id=order_id, message="All licenses already allocated")

    _after_commit(db, order_id, order.order_number, order.shop_id, results, sender)
    allocated = sum(r.allocated for r in results)
    message = "Licenses allocated and sent" if allocated else "No licenses available"
    logger.info("Manual allocation completed for order %s: %d new licenses", order_id, allocated)
    return schemas.ManualAllocationResult(order_id=order_id, message=message, items=results)


def create_manual_order(
    db: Session,
    shop_id: int,
    product_id: int,
    email: str,
    quantity: int,
    sender: EmailSender,
    first_name: str = "",
    last_name: str = "",
) -> schemas.ManualSendResult:
    """Hand out licenses without a Shopify order (e.g. a free license for a customer)."""
    product = crud.get_product(db, product_id)
    if not product or product.shop_id != shop_id:
        raise crud.ProductNotFoundError("Product not found")

    token = uuid.uuid4().hex[:12]
    try:
        settings = get_or_create_settings(db, shop_id)
        order = models.Order(
            shop_id=shop_id,
            shopify_order_id=f"manual-{token}",
            order_number=f"M-{token[:8].upper()}",
            customer_email=email,
            customer_first_name=first_name,
            customer_last_name=last_name,
            order_status="paid",
            order_type=models.OrderType.MANUAL,
            created_at=datetime.now(),
        )
        db.add(order)
        db.flush()
        item = models.OrderItem(order_id=order.id, product_id=product.id, quantity=quantity, licenses_allocated=0)
        db.add(item)
        db.flush()
        result = _allocate_item(db, order, item, quantity, settings)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Manual license send for product %s rolled back", product_id)
        raise

    _after_commit(db, order.id, order.order_number, shop_id, [result], sender)
    if result.allocated:
        message = f"Sent {result.allocated} license(s) to {email}"
    else:
        message = "No licenses available"
    return schemas.ManualSendResult(
        order_id=order.id,
        order_number=order.order_number,
        items=[result],
        message=message,
    )


def resend_order_emails(db: Session, order_id: int, sender: EmailSender) -> dict:
    """Queue and send one email per item with every key the order currently holds for it."""
    order = crud.get_order(db, order_id)
    if not order:
        raise crud.OrderNotFoundError("Order not found")

    queued = 0
    for item in order.items:
        keys = crud.get_order_license_keys(db, order_id, item.product_id)
        if keys:
            queue_email(db, order, item, keys)
            queued += 1
    db.commit()
    counts = dispatch_pending_emails(db, sender, order_id=order_id)
    counts["queued"] = queued
    return counts
