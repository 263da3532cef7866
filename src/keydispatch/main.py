from fastapi import FastAPI, HTTPException, Depends, Response, status, Body, APIRouter, BackgroundTasks
from fastapi import Request
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import json
import logging

from . import models, schemas, crud, database, config
from .services import orders, settings as settings_service, webhooks
from .services.notifications import get_email_sender

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="KeyDispatch License Delivery")

# Create tables on startup
models.Base.metadata.create_all(bind=database.engine)

# Test routes (load testing only)
router = APIRouter(prefix="/test", tags=["test"])


@router.post("/reset-db", status_code=status.HTTP_204_NO_CONTENT, include_in_schema=False)
def reset_database(db: Session = Depends(database.get_db)):
    """
    Clear all data from database tables. For testing purposes only.
    """
    try:
        # children first because of foreign keys
        for model in (
            models.EmailLog,
            models.InventoryAlert,
            models.License,
            models.OrderItem,
            models.Order,
            models.ShopSettings,
            models.Product,
            models.Shop,
        ):
            db.query(model).delete()
        db.commit()
    except Exception as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=f"Failed to reset database: {str(e)}")


if config.test_routes_enabled():
    app.include_router(router)


def _settings_response(db_settings):
    return schemas.Settings.model_validate(db_settings)


# Webhooks

@app.post(
    "/webhooks/create",
    responses={
        200: {"description": "Accepted for processing", "content": {"application/json": {"example": {"detail": "ok"}}}},
        400: {"description": "Bad Request", "content": {"application/json": {"example": {"detail": "invalid payload"}}}},
        401: {"description": "Invalid signature", "content": {"application/json": {"example": {"detail": "invalid signature"}}}},
        500: {"description": "Verification error", "content": {"application/json": {"example": {"detail": "verification error"}}}},
    },
)
async def order_created_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session_factory=Depends(database.get_session_factory),
    sender=Depends(get_email_sender),
):
    """Shopify `orders/create` receiver.

    Security:
    - Expects header `X-Shopify-Hmac-Sha256` with the base64 HMAC-SHA256 of the raw request body
      computed with SHOPIFY_API_SECRET. The body is only parsed after it verifies.

    Shopify gets its 200 as soon as the order is accepted; allocation and email run afterwards
    as a background task, so processing failures only show up in the logs.
    """
    body = await request.body()  # raw bytes, never re-serialized before hashing
    signature = request.headers.get(webhooks.SHOPIFY_HMAC_HEADER)
    secret = config.shopify_api_secret()
    if not secret:
        logger.error("SHOPIFY_API_SECRET not configured; rejecting webhook")

    try:
        verified = webhooks.verify_shopify_hmac(body, signature, secret)
    except Exception:
        logger.exception("Webhook verification error")
        raise HTTPException(status_code=500, detail="verification error")
    if not verified:
        # Do not log secret or computed HMAC
        logger.warning("Webhook verification failed")
        raise HTTPException(status_code=401, detail="invalid signature" if signature else "missing signature")

    try:
        payload = webhooks.parse_order_payload(body)
    except webhooks.InvalidPayloadError as e:
        raise HTTPException(status_code=400, detail=str(e))

    shop_domain = request.headers.get(webhooks.SHOPIFY_SHOP_HEADER)
    if not shop_domain:
        raise HTTPException(status_code=400, detail="missing shop domain")

    logger.info("New order received from %s: Order #%s", shop_domain, payload.display_number)
    background_tasks.add_task(orders.handle_order_webhook, session_factory, shop_domain, payload, sender)
    return {"detail": "ok"}


@app.post(
    "/webhooks/sendgrid/events",
    responses={
        200: {"description": "Events applied", "content": {"application/json": {"example": {"updated": 1, "skipped": 0, "unmatched": 0}}}},
        400: {"description": "Bad Request", "content": {"application/json": {"example": {"detail": "invalid payload"}}}},
        401: {"description": "Invalid signature", "content": {"application/json": {"example": {"detail": "invalid signature"}}}},
    },
)
async def sendgrid_events_webhook(request: Request, db: Session = Depends(database.get_db)):
    """Delivery status callback from SendGrid.

    Signature verification is skipped when SENDGRID_WEBHOOK_VERIFY_KEY is unset (local testing).
    """
    body = await request.body()
    public_key = config.sendgrid_webhook_verify_key()
    if public_key:
        try:
            verified = webhooks.verify_sendgrid_signature(
                body,
                request.headers.get(webhooks.SENDGRID_SIGNATURE_HEADER),
                request.headers.get(webhooks.SENDGRID_TIMESTAMP_HEADER),
                public_key,
            )
        except Exception:
            logger.exception("SendGrid verification error")
            raise HTTPException(status_code=500, detail="verification error")
        if not verified:
            logger.warning("SendGrid webhook verification failed")
            raise HTTPException(status_code=401, detail="invalid signature")
    else:
        logger.warning("SendGrid webhook verification disabled - no SENDGRID_WEBHOOK_VERIFY_KEY set")

    try:
        events = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid payload")
    if not isinstance(events, list):
        raise HTTPException(status_code=400, detail="invalid payload")

    return webhooks.apply_delivery_events(db, events)


# Settings

@app.get(
    "/settings/{shop_id}",
    response_model=schemas.Settings,
    responses={404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Shop not found"}}}}},
)
def read_settings(shop_id: int, db: Session = Depends(database.get_db)):
    """Return the shop's settings, creating defaults on first access."""
    try:
        return _settings_response(settings_service.get_settings(db, shop_id))
    except crud.ShopNotFoundError:
        raise HTTPException(status_code=404, detail="Shop not found")


@app.put(
    "/settings/{shop_id}",
    response_model=schemas.Settings,
    responses={
        400: {"description": "Bad Request", "content": {"application/json": {"example": {"detail": "license_delivery_method must be either FIFO or LIFO"}}}},
        404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Shop not found"}}}},
    },
)
def update_settings(shop_id: int, db: Session = Depends(database.get_db), settings_data: dict = Body(...)):
    """Partially update settings. Unknown fields are ignored; an invalid value rejects the whole update."""
    try:
        db_settings = settings_service.update_settings(db, shop_id, settings_data)
    except crud.ShopNotFoundError:
        raise HTTPException(status_code=404, detail="Shop not found")
    except settings_service.SettingsValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return _settings_response(db_settings)


@app.post(
    "/settings/{shop_id}/reset",
    response_model=schemas.Settings,
    responses={404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Shop not found"}}}}},
)
def reset_settings(shop_id: int, db: Session = Depends(database.get_db)):
    try:
        return _settings_response(settings_service.reset_settings(db, shop_id))
    except crud.ShopNotFoundError:
        raise HTTPException(status_code=404, detail="Shop not found")


# Orders

@app.post(
    "/orders/manual-send",
    response_model=schemas.ManualSendResult,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"description": "Product not found", "content": {"application/json": {"example": {"detail": "Product not found"}}}}},
)
def manual_send(
    request_data: schemas.ManualSendRequest,
    response: Response,
    db: Session = Depends(database.get_db),
    sender=Depends(get_email_sender),
):
    """Create a manual order (e.g. a free license) and run it through allocation and email."""
    if not request_data.email or not settings_service.is_valid_email(request_data.email):
        raise HTTPException(status_code=400, detail="email must be a valid email address")
    try:
        result = orders.create_manual_order(
            db,
            request_data.shop_id,
            request_data.product_id,
            request_data.email,
            request_data.quantity,
            sender,
            first_name=request_data.first_name,
            last_name=request_data.last_name,
        )
    except crud.ProductNotFoundError:
        raise HTTPException(status_code=404, detail="Product not found")
    response.headers["Location"] = f"/orders/{result.order_id}"
    return result


@app.get(
    "/orders/{order_id}",
    response_model=schemas.OrderDetail,
    responses={404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Order not found"}}}}},
)
def read_order(order_id: int, db: Session = Depends(database.get_db)):
    """Order detail with items, allocated keys and email history."""
    try:
        return crud.get_order_detail(db, order_id)
    except crud.OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@app.post(
    "/orders/{order_id}/allocate",
    response_model=schemas.ManualAllocationResult,
    responses={404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Order not found"}}}}},
)
def allocate_order(order_id: int, db: Session = Depends(database.get_db), sender=Depends(get_email_sender)):
    """Retry allocation for under-allocated items and email only the new keys."""
    try:
        return orders.manual_allocate(db, order_id, sender)
    except crud.OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@app.post(
    "/orders/{order_id}/resend",
    responses={404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Order not found"}}}}},
)
def resend_order(order_id: int, db: Session = Depends(database.get_db), sender=Depends(get_email_sender)):
    """Email every key currently allocated to the order again."""
    try:
        return orders.resend_order_emails(db, order_id, sender)
    except crud.OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


# Shops, products and the license pool

@app.post(
    "/shops",
    response_model=schemas.Shop,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"description": "Conflict - domain exists", "content": {"application/json": {"example": {"detail": "shop already exists"}}}}},
)
def create_shop(shop: schemas.ShopCreate, response: Response, db: Session = Depends(database.get_db)):
    """Register a shop (stand-in for the OAuth install callback)."""
    try:
        db_shop = crud.create_shop(db, shop)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="shop already exists")
    response.headers["Location"] = f"/shops/{db_shop.id}"
    return db_shop


@app.post(
    "/shops/{shop_id}/products",
    response_model=schemas.Product,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Shop not found"}}}},
        409: {"description": "Conflict - product mapped", "content": {"application/json": {"example": {"detail": "product already exists"}}}},
    },
)
def create_product(shop_id: int, product: schemas.ProductCreate, db: Session = Depends(database.get_db)):
    """Put a Shopify product under license management."""
    try:
        return crud.create_product(db, shop_id, product)
    except crud.ShopNotFoundError:
        raise HTTPException(status_code=404, detail="Shop not found")
    except IntegrityError:
        raise HTTPException(status_code=409, detail="product already exists")


@app.post(
    "/products/{product_id}/licenses",
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "Licenses uploaded", "content": {"application/json": {"example": {"uploaded": 2}}}},
        404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Product not found"}}}},
    },
)
def upload_licenses(product_id: int, upload: schemas.LicenseUpload, db: Session = Depends(database.get_db)):
    try:
        db_licenses = crud.add_licenses(db, product_id, upload.licenses)
    except crud.ProductNotFoundError:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"uploaded": len(db_licenses)}


@app.get(
    "/products/{product_id}/inventory",
    response_model=schemas.InventoryStats,
    responses={404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "Product not found"}}}}},
)
def read_inventory(product_id: int, db: Session = Depends(database.get_db)):
    if not crud.get_product(db, product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return crud.get_inventory_stats(db, product_id)


@app.post(
    "/licenses/{license_id}/release",
    response_model=schemas.License,
    responses={404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "License not found"}}}}},
)
def release_license(license_id: int, db: Session = Depends(database.get_db)):
    """Make an allocated license available again."""
    try:
        return crud.release_license(db, license_id)
    except crud.LicenseNotFoundError:
        raise HTTPException(status_code=404, detail="License not found")


@app.delete(
    "/licenses/{license_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        400: {"description": "License allocated", "content": {"application/json": {"example": {"detail": "Cannot delete allocated license. Release it first."}}}},
        404: {"description": "Not Found", "content": {"application/json": {"example": {"detail": "License not found"}}}},
    },
)
def delete_license(license_id: int, db: Session = Depends(database.get_db)):
    try:
        crud.delete_license(db, license_id)
    except crud.LicenseNotFoundError:
        raise HTTPException(status_code=404, detail="License not found")
    except crud.LicenseAllocatedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
