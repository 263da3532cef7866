import os
import logging

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", ".env")))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./database.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL", "mail@keydispatch.app")
SENDGRID_FROM_NAME = os.getenv("SENDGRID_FROM_NAME", "KeyDispatch")

DEFAULT_PLACEHOLDER = "Your license keys will be sent separately once available."

logger = logging.getLogger("keydispatch")


# Secrets and tunables are read per call so they can be rotated (and patched in tests)
def shopify_api_secret():
    return os.getenv("SHOPIFY_API_SECRET")


def sendgrid_api_key():
    return os.getenv("SENDGRID_API_KEY")


def sendgrid_webhook_verify_key():
    return os.getenv("SENDGRID_WEBHOOK_VERIFY_KEY")


def admin_notification_email():
    return os.getenv("ADMIN_NOTIFICATION_EMAIL") or None


def low_inventory_threshold() -> int:
    try:
        return int(os.getenv("LOW_INVENTORY_THRESHOLD", "10"))
    except ValueError:
        logger.warning("LOW_INVENTORY_THRESHOLD is not an integer, using 10")
        return 10


def test_routes_enabled() -> bool:
    return os.getenv("ENABLE_TEST_ROUTES", "").lower() in ("1", "true", "yes")
