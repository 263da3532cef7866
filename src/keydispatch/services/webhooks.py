"""Inbound webhook verification and payload conversion."""
import base64
import hashlib
import hmac
import json
import logging
from typing import Optional

from pydantic import ValidationError
from sendgrid.helpers.eventwebhook import EventWebhook
from sqlalchemy.orm import Session

from .. import models, schemas, crud

logger = logging.getLogger(__name__)

SHOPIFY_HMAC_HEADER = "X-Shopify-Hmac-Sha256"
SHOPIFY_SHOP_HEADER = "X-Shopify-Shop-Domain"
SENDGRID_SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
SENDGRID_TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"

# SendGrid event vocabulary -> our delivery states; anything else (open, click, ...) is ignored
SENDGRID_EVENT_MAP = {
    "delivered": models.DeliveryStatus.DELIVERED,
    "bounce": models.DeliveryStatus.BOUNCED,
    "blocked": models.DeliveryStatus.BOUNCED,
    "dropped": models.DeliveryStatus.DROPPED,
    "spamreport": models.DeliveryStatus.SPAM,
}


class InvalidPayloadError(ValueError):
    pass


def compute_shopify_hmac(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_shopify_hmac(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check the base64 HMAC-SHA256 Shopify sends against the untouched request bytes."""
    if not signature or not secret:
        return False
    computed = compute_shopify_hmac(raw_body, secret)
    return hmac.compare_digest(computed.encode("ascii"), signature.encode("utf-8"))


def parse_order_payload(raw_body: bytes) -> schemas.OrderWebhook:
    """Convert verified bytes into the order DTO once, at the boundary."""
    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise InvalidPayloadError("invalid payload")
    if not isinstance(data, dict):
        raise InvalidPayloadError("invalid payload")
    try:
        return schemas.OrderWebhook.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise InvalidPayloadError(f"invalid order payload: {', '.join(fields)}")


def verify_sendgrid_signature(raw_body: bytes, signature: Optional[str], timestamp: Optional[str], public_key: str) -> bool:
    """ECDSA check of a SendGrid event batch (signed over timestamp + body)."""
    if not signature or not timestamp:
        return False
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        # SendGrid posts JSON, so bytes that are not UTF-8 cannot carry its signature
        return False
    event_webhook = EventWebhook()
    ecdsa_key = event_webhook.convert_public_key_to_ecdsa(public_key)
    return event_webhook.verify_signature(payload, signature, timestamp, ecdsa_key)


def apply_delivery_events(db: Session, events: list) -> dict:
    """Map a SendGrid event batch onto the newest pending email log per recipient."""
    counts = {"updated": 0, "skipped": 0, "unmatched": 0}
    for raw in events:
        try:
            event = schemas.SendGridEvent.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed SendGrid event: %r", raw)
            counts["skipped"] += 1
            continue
        status = SENDGRID_EVENT_MAP.get(event.event)
        if status is None:
            counts["skipped"] += 1
            continue
        if crud.record_delivery_status(db, event.email, status, event.timestamp):
            logger.info("Updated delivery status for %s: %s", event.email, status.value)
            counts["updated"] += 1
        else:
            logger.info("No pending email log found for %s", event.email)
            counts["unmatched"] += 1
    return counts
