"""Outbound email: rendering, the SendGrid sender, outbox dispatch and stock alerts.

Nothing in here may undo an allocation. Send failures are logged and recorded
on the EmailLog row; the licenses stay with the order and can be re-sent.
"""
import json
import logging
import os
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Optional, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content, ReplyTo, Bcc
from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import models, schemas, crud, config
from .settings import get_or_create_settings

logger = logging.getLogger(__name__)

ALERT_COOLDOWN = timedelta(hours=24)

_templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
_jinja_env = Environment(
    loader=FileSystemLoader(_templates_dir),
    autoescape=select_autoescape(["html", "xml"]),
)


class EmailDeliveryError(Exception):
    pass


class EmailSender(Protocol):
    def send(self, message: schemas.OutboundEmail) -> None:
        ...


class SendGridEmailSender:
    """Sends mail through the SendGrid v3 API."""

    def __init__(self, api_key: Optional[str] = None, retries: int = 3):
        self.api_key = api_key or config.sendgrid_api_key()
        self.retries = retries
        if not self.api_key:
            logger.warning("SENDGRID_API_KEY not set - emails will not be sent")
            self.client = None
        else:
            self.client = SendGridAPIClient(self.api_key)

    def build_mail(self, message: schemas.OutboundEmail) -> Mail:
        mail = Mail(
            from_email=Email(message.from_email, message.from_name),
            to_emails=To(message.to),
            subject=message.subject,
            plain_text_content=Content("text/plain", message.text),
            html_content=Content("text/html", message.html),
        )
        if message.reply_to:
            mail.reply_to = ReplyTo(message.reply_to)
        if message.bcc and message.bcc != message.to:
            mail.add_bcc(Bcc(message.bcc))
        return mail

    def send(self, message: schemas.OutboundEmail) -> None:
        if not self.client:
            raise EmailDeliveryError("SendGrid not configured")

        mail = self.build_mail(message)
        last_error = None
        for attempt in range(self.retries):
            try:
                response = self.client.send(mail)
            except Exception as e:
                last_error = str(e)
                logger.warning("Error sending email (attempt %d/%d): %s", attempt + 1, self.retries, e)
                continue
            if response.status_code in (200, 201, 202):
                logger.info("Email sent to %s: %s", message.to, message.subject)
                return
            last_error = f"SendGrid returned {response.status_code}"
            if response.status_code < 500:
                # client errors will not get better on retry
                break
            logger.warning("SendGrid server error (attempt %d/%d): %s", attempt + 1, self.retries, response.status_code)
        raise EmailDeliveryError(last_error or "SendGrid send failed")


@lru_cache(maxsize=1)
def get_email_sender() -> EmailSender:
    """FastAPI dependency returning the process-wide sender."""
    return SendGridEmailSender()


def render_email(template_name: str, **context) -> str:
    return _jinja_env.get_template(template_name).render(**context)


def _sender_identity(settings: Optional[models.ShopSettings]) -> dict:
    from_email = (settings and settings.custom_sender_email) or config.SENDGRID_FROM_EMAIL
    from_name = (settings and settings.custom_sender_name) or config.SENDGRID_FROM_NAME
    reply_to = (settings and settings.reply_to_email) or from_email
    bcc = None
    if settings and settings.bcc_notification_email and settings.notification_email:
        bcc = settings.notification_email
    return {"from_email": from_email, "from_name": from_name, "reply_to": reply_to, "bcc": bcc}


def build_license_email(
    to: str,
    order_number: str,
    product_name: str,
    license_keys: list[str],
    first_name: str = "",
    shop_name: str = "Our Store",
    placeholder: Optional[str] = None,
    settings: Optional[models.ShopSettings] = None,
) -> schemas.OutboundEmail:
    """License delivery email; with no keys it becomes the out-of-stock placeholder message."""
    context = {
        "first_name": first_name or "Customer",
        "order_number": order_number,
        "product_name": product_name,
        "license_keys": license_keys,
        "placeholder": placeholder or config.DEFAULT_PLACEHOLDER,
        "shop_name": shop_name,
    }
    if license_keys:
        subject = f"Your license for {product_name} - Order #{order_number}"
    else:
        subject = f"Your order #{order_number}: {product_name}"
    return schemas.OutboundEmail(
        to=to,
        subject=subject,
        text=render_email("license_email.txt", **context),
        html=render_email("license_email.html", **context),
        **_sender_identity(settings),
    )


def build_inventory_alert(to: str, product_name: str, available_count: int, threshold: int) -> schemas.OutboundEmail:
    context = {"product_name": product_name, "available_count": available_count, "threshold": threshold}
    return schemas.OutboundEmail(
        to=to,
        subject=f"Low Inventory Alert: {product_name}",
        text=render_email("inventory_alert.txt", **context),
        html=render_email("inventory_alert.html", **context),
        from_email=config.SENDGRID_FROM_EMAIL,
        from_name=config.SENDGRID_FROM_NAME,
    )


def build_admin_notice(to: str, subject: str, message: str) -> schemas.OutboundEmail:
    return schemas.OutboundEmail(
        to=to,
        subject=subject,
        text=message,
        html=render_email("admin_notice.html", message=message),
        from_email=config.SENDGRID_FROM_EMAIL,
        from_name=config.SENDGRID_FROM_NAME,
    )


def queue_email(
    db: Session,
    order: models.Order,
    item: Optional[models.OrderItem],
    license_keys: list[str],
    kind: models.EmailKind = models.EmailKind.LICENSE,
) -> models.EmailLog:
    """Write an outbox row in the caller's transaction; it is sent after commit."""
    log = models.EmailLog(
        order_id=order.id,
        order_item_id=item.id if item else None,
        customer_email=order.customer_email,
        email_kind=kind,
        licenses_sent=json.dumps(license_keys),
        email_status=models.EmailStatus.QUEUED,
    )
    if not order.customer_email:
        log.email_status = models.EmailStatus.FAILED
        log.error_message = "No customer email"
        logger.warning("No email address for order %s, keys kept but not sent", order.order_number)
    db.add(log)
    return log


def record_failed_email(db: Session, order: models.Order, item: Optional[models.OrderItem], reason: str) -> models.EmailLog:
    log = models.EmailLog(
        order_id=order.id,
        order_item_id=item.id if item else None,
        customer_email=order.customer_email,
        email_kind=models.EmailKind.LICENSE,
        licenses_sent="[]",
        email_status=models.EmailStatus.FAILED,
        error_message=reason,
    )
    db.add(log)
    return log


def _message_for_log(db: Session, log: models.EmailLog) -> schemas.OutboundEmail:
    order = crud.get_order(db, log.order_id)
    item = log.order_item
    settings = get_or_create_settings(db, order.shop_id)
    product_name = item.product.product_name if item and item.product else "your purchase"
    keys = json.loads(log.licenses_sent or "[]")
    placeholder = settings.out_of_stock_placeholder if log.email_kind == models.EmailKind.PLACEHOLDER else None
    return build_license_email(
        to=log.customer_email,
        order_number=order.order_number or order.shopify_order_id,
        product_name=product_name,
        license_keys=keys,
        first_name=order.customer_first_name,
        shop_name=order.shop.shop_domain if order.shop else "Our Store",
        placeholder=placeholder,
        settings=settings,
    )


def claim_email(db: Session, log_id: int) -> bool:
    """Move one outbox row from queued to sending and commit.

    Only one dispatcher can win the guarded update, so a row is sent at most once.
    A row left in ``sending`` by a crash is not retried automatically.
    """
    result = db.execute(
        update(models.EmailLog)
        .where(models.EmailLog.id == log_id, models.EmailLog.email_status == models.EmailStatus.QUEUED)
        .values(email_status=models.EmailStatus.SENDING)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def dispatch_pending_emails(db: Session, sender: EmailSender, order_id: Optional[int] = None) -> dict:
    """Send queued outbox rows (optionally for one order) and record each outcome.

    Each row is claimed and committed before it is sent, then its outcome is
    committed on its own so one failure never affects the others.
    """
    query = db.query(models.EmailLog.id).filter(models.EmailLog.email_status == models.EmailStatus.QUEUED)
    if order_id is not None:
        query = query.filter(models.EmailLog.order_id == order_id)
    log_ids = [row[0] for row in query.order_by(models.EmailLog.id).all()]
    db.commit()
    counts = {"sent": 0, "failed": 0}

    for log_id in log_ids:
        if not claim_email(db, log_id):
            logger.info("Email log %s already claimed by another dispatcher", log_id)
            continue
        log = db.get(models.EmailLog, log_id, populate_existing=True)
        try:
            message = _message_for_log(db, log)
            # no transaction stays open across the network call
            db.commit()
            sender.send(message)
        except Exception as e:
            logger.exception("Email dispatch failed for email log %s", log_id)
            log.email_status = models.EmailStatus.FAILED
            log.error_message = str(e) or e.__class__.__name__
            counts["failed"] += 1
        else:
            now = datetime.now()
            log.email_status = models.EmailStatus.SENT
            log.delivery_status = models.DeliveryStatus.PENDING
            log.sent_at = now
            if log.order_item is not None and log.email_kind == models.EmailKind.LICENSE:
                log.order_item.email_sent = True
                log.order_item.email_sent_at = now
            counts["sent"] += 1
        db.commit()

    return counts


def check_inventory_alert(db: Session, product_id: int, sender: EmailSender, now: Optional[datetime] = None) -> bool:
    """Alert the shop admin when stock is at or below threshold, at most once per 24 hours.

    Returns True when an alert was sent.
    """
    now = now or datetime.now()
    product = crud.get_product(db, product_id)
    if not product:
        return False
    settings = get_or_create_settings(db, product.shop_id)
    threshold = settings.low_stock_threshold
    available = crud.count_available_licenses(db, product_id)
    if available > threshold:
        db.commit()
        return False

    recent = (
        db.query(models.InventoryAlert)
        .filter(
            models.InventoryAlert.product_id == product_id,
            models.InventoryAlert.alert_sent_at > now - ALERT_COOLDOWN,
        )
        .first()
    )
    if recent:
        db.commit()
        return False

    target = settings.notification_email or config.admin_notification_email()
    if not target:
        logger.info("Low stock for %s (%d left) but no notification email configured", product.product_name, available)
        db.commit()
        return False

    product_name = product.product_name
    message = build_inventory_alert(target, product_name, available, threshold)
    db.commit()
    try:
        sender.send(message)
    except Exception:
        logger.exception("Inventory alert for product %s could not be sent", product_id)
        return False

    db.add(models.InventoryAlert(product_id=product_id, available_count=available, threshold=threshold, alert_sent_at=now))
    db.commit()
    logger.info("Low inventory alert sent for %s (%d available, threshold %d)", product_name, available, threshold)
    return True


def send_admin_notice(sender: EmailSender, to: Optional[str], subject: str, message: str) -> bool:
    if not to:
        return False
    try:
        sender.send(build_admin_notice(to, subject, message))
    except Exception:
        logger.exception("Admin notification failed: %s", subject)
        return False
    return True
