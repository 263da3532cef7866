"""Services package re-exports for easy imports from `src.keydispatch.services`."""
from .allocation import allocate_licenses, AllocationBatch
from .settings import (
    get_or_create_settings,
    get_settings,
    update_settings,
    reset_settings,
    default_settings,
    SettingsValidationError,
)
from .notifications import (
    EmailSender,
    SendGridEmailSender,
    EmailDeliveryError,
    get_email_sender,
    dispatch_pending_emails,
    check_inventory_alert,
)
from .webhooks import (
    verify_shopify_hmac,
    parse_order_payload,
    verify_sendgrid_signature,
    apply_delivery_events,
    InvalidPayloadError,
)
from .orders import (
    process_order,
    handle_order_webhook,
    manual_allocate,
    create_manual_order,
    resend_order_emails,
)

__all__ = [
    "allocate_licenses",
    "AllocationBatch",
    "get_or_create_settings",
    "get_settings",
    "update_settings",
    "reset_settings",
    "default_settings",
    "SettingsValidationError",
    "EmailSender",
    "SendGridEmailSender",
    "EmailDeliveryError",
    "get_email_sender",
    "dispatch_pending_emails",
    "check_inventory_alert",
    "verify_shopify_hmac",
    "parse_order_payload",
    "verify_sendgrid_signature",
    "apply_delivery_events",
    "InvalidPayloadError",
    "process_order",
    "handle_order_webhook",
    "manual_allocate",
    "create_manual_order",
    "resend_order_emails",
]
