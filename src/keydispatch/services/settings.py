"""Per-shop settings: lazy defaults, whitelisted partial updates and reset."""
import logging
import re

from sqlalchemy.orm import Session

from .. import models, crud, config

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

EMAIL_FIELDS = ("custom_sender_email", "reply_to_email", "notification_email")

BOOLEAN_FIELDS = (
    "enforce_unique_licenses",
    "enforce_unique_per_order",
    "notify_on_out_of_stock",
    "notify_on_uniqueness_issue",
    "bcc_notification_email",
)

TEXT_FIELDS = ("out_of_stock_placeholder", "custom_sender_name")

ALLOWED_FIELDS = (
    ("license_delivery_method", "out_of_stock_behavior", "low_stock_threshold")
    + TEXT_FIELDS
    + EMAIL_FIELDS
    + BOOLEAN_FIELDS
)


class SettingsValidationError(ValueError):
    pass


def default_settings() -> dict:
    """Values a shop starts with before the merchant changes anything."""
    return {
        "license_delivery_method": models.DeliveryMethod.FIFO,
        "out_of_stock_behavior": models.OutOfStockBehavior.NO_EMAIL,
        "out_of_stock_placeholder": config.DEFAULT_PLACEHOLDER,
        "custom_sender_email": None,
        "custom_sender_name": None,
        "reply_to_email": None,
        "enforce_unique_licenses": False,
        "enforce_unique_per_order": False,
        "notification_email": None,
        "notify_on_out_of_stock": False,
        "notify_on_uniqueness_issue": False,
        "bcc_notification_email": False,
        "low_stock_threshold": config.low_inventory_threshold(),
    }


def is_valid_email(email) -> bool:
    if not email:
        return True
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email))


def validate_settings(partial: dict) -> dict:
    """Validate whitelisted fields and return them converted to column values.

    Raises SettingsValidationError on the first invalid value so callers never
    apply a half-valid update.
    """
    updates = {field: partial[field] for field in ALLOWED_FIELDS if field in partial}
    if not updates:
        raise SettingsValidationError("No valid fields to update")

    if "license_delivery_method" in updates:
        try:
            updates["license_delivery_method"] = models.DeliveryMethod(updates["license_delivery_method"])
        except ValueError:
            raise SettingsValidationError("license_delivery_method must be either FIFO or LIFO")

    if "out_of_stock_behavior" in updates:
        try:
            updates["out_of_stock_behavior"] = models.OutOfStockBehavior(updates["out_of_stock_behavior"])
        except ValueError:
            raise SettingsValidationError("out_of_stock_behavior must be either no_email or send_placeholder")

    for field in EMAIL_FIELDS:
        if field in updates:
            if not is_valid_email(updates[field]):
                raise SettingsValidationError(f"{field} must be a valid email address")
            updates[field] = updates[field] or None

    for field in TEXT_FIELDS:
        if field in updates and updates[field] is not None and not isinstance(updates[field], str):
            raise SettingsValidationError(f"{field} must be a string")

    for field in BOOLEAN_FIELDS:
        if field in updates and not isinstance(updates[field], bool):
            raise SettingsValidationError(f"{field} must be a boolean value")

    if "low_stock_threshold" in updates:
        threshold = updates["low_stock_threshold"]
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
            raise SettingsValidationError("low_stock_threshold must be a non-negative integer")

    return updates


def get_or_create_settings(db: Session, shop_id: int) -> models.ShopSettings:
    """Return the shop's settings row, creating it from defaults if missing.

    Only flushes, so it can run inside a caller's open transaction.
    """
    settings = db.query(models.ShopSettings).filter(models.ShopSettings.shop_id == shop_id).first()
    if settings is None:
        if not crud.get_shop(db, shop_id):
            raise crud.ShopNotFoundError("Shop not found")
        settings = models.ShopSettings(shop_id=shop_id, **default_settings())
        db.add(settings)
        db.flush()
        logger.info("Created default settings for shop %s", shop_id)
    elif not settings.out_of_stock_placeholder:
        settings.out_of_stock_placeholder = config.DEFAULT_PLACEHOLDER
    return settings


def get_settings(db: Session, shop_id: int) -> models.ShopSettings:
    settings = get_or_create_settings(db, shop_id)
    db.commit()
    db.refresh(settings)
    return settings


def update_settings(db: Session, shop_id: int, partial: dict) -> models.ShopSettings:
    updates = validate_settings(partial)
    settings = get_or_create_settings(db, shop_id)
    for field, value in updates.items():
        setattr(settings, field, value)
    db.commit()
    db.refresh(settings)
    logger.info("Updated settings for shop %s: %s", shop_id, sorted(updates))
    return settings


def reset_settings(db: Session, shop_id: int) -> models.ShopSettings:
    if not crud.get_shop(db, shop_id):
        raise crud.ShopNotFoundError("Shop not found")
    db.query(models.ShopSettings).filter(models.ShopSettings.shop_id == shop_id).delete()
    db.flush()
    settings = models.ShopSettings(shop_id=shop_id, **default_settings())
    db.add(settings)
    db.commit()
    db.refresh(settings)
    logger.info("Reset settings for shop %s", shop_id)
    return settings
