from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Union
from datetime import datetime
import enum

from ..models import DeliveryMethod, OutOfStockBehavior, OrderType, EmailKind, EmailStatus, DeliveryStatus


def _as_remote_id(v):
    # Shopify ids arrive as JSON numbers; they are stored as strings
    if v is None or isinstance(v, bool):
        return v
    if isinstance(v, (int, str)):
        return str(v)
    return v


# Inbound Shopify payload, converted once at the webhook boundary

class WebhookCustomer(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class WebhookLineItem(BaseModel):
    id: str
    product_id: Optional[str] = None
    quantity: int = Field(..., gt=0)
    title: str = ""

    @field_validator("id", "product_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _as_remote_id(v)

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v):
        return v or ""


class OrderWebhook(BaseModel):
    id: str
    order_number: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    financial_status: Optional[str] = None
    customer: Optional[WebhookCustomer] = None
    line_items: list[WebhookLineItem]

    @field_validator("id", "order_number", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _as_remote_id(v)

    @property
    def display_number(self) -> str:
        return self.order_number or self.name or self.id

    @property
    def first_name(self) -> str:
        return (self.customer.first_name if self.customer else None) or ""

    @property
    def last_name(self) -> str:
        return (self.customer.last_name if self.customer else None) or ""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 820982911946154508,
                "order_number": 1001,
                "email": "jon@example.com",
                "financial_status": "paid",
                "customer": {"first_name": "Jon", "last_name": "Snow"},
                "line_items": [{"id": 866550311766439020, "product_id": 632910392, "quantity": 1, "title": "Pro License"}],
            }
        }
    )


class SendGridEvent(BaseModel):
    event: str
    email: str
    timestamp: Optional[int] = None


# Processing outcomes

class LineItemOutcome(str, enum.Enum):
    ALLOCATED = "allocated"
    PARTIAL = "partial"
    OUT_OF_STOCK = "out_of_stock"
    SKIPPED = "skipped"


class LineItemResult(BaseModel):
    line_item_id: Optional[str] = None
    order_item_id: Optional[int] = None
    product_id: Optional[int] = None
    outcome: LineItemOutcome
    reason: Optional[str] = None
    requested: int = 0
    allocated: int = 0
    license_keys: list[str] = []
    duplicates_skipped: int = 0


class OrderProcessingResult(BaseModel):
    order_id: int
    order_number: Optional[str] = None
    duplicate: bool = False
    items: list[LineItemResult] = []


class ManualAllocationResult(BaseModel):
    order_id: int
    message: str
    items: list[LineItemResult] = []


class ManualSendRequest(BaseModel):
    shop_id: int
    product_id: int
    email: str
    quantity: int = Field(1, gt=0)
    first_name: str = ""
    last_name: str = ""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"shop_id": 1, "product_id": 1, "email": "buyer@example.com", "quantity": 1, "first_name": "Ada"}
        }
    )


class ManualSendResult(OrderProcessingResult):
    message: str


# Settings

class Settings(BaseModel):
    shop_id: int
    license_delivery_method: DeliveryMethod
    out_of_stock_behavior: OutOfStockBehavior
    out_of_stock_placeholder: Optional[str] = None
    custom_sender_email: Optional[str] = None
    custom_sender_name: Optional[str] = None
    reply_to_email: Optional[str] = None
    enforce_unique_licenses: bool
    enforce_unique_per_order: bool
    notification_email: Optional[str] = None
    notify_on_out_of_stock: bool
    notify_on_uniqueness_issue: bool
    bcc_notification_email: bool
    low_stock_threshold: int

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "shop_id": 1,
                "license_delivery_method": "FIFO",
                "out_of_stock_behavior": "no_email",
                "out_of_stock_placeholder": "Your license keys will be sent separately once available.",
                "enforce_unique_licenses": False,
                "enforce_unique_per_order": False,
                "notification_email": None,
                "notify_on_out_of_stock": False,
                "notify_on_uniqueness_issue": False,
                "bcc_notification_email": False,
                "low_stock_threshold": 10,
            }
        },
    )


# Thin admin surface

class ShopCreate(BaseModel):
    shop_domain: str
    access_token: Optional[str] = None


class Shop(BaseModel):
    id: int
    shop_domain: str
    installed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProductCreate(BaseModel):
    shopify_product_id: str
    product_name: str

    @field_validator("shopify_product_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _as_remote_id(v)


class Product(ProductCreate):
    id: int
    shop_id: int

    model_config = ConfigDict(from_attributes=True)


class LicenseUpload(BaseModel):
    licenses: list[str] = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={"example": {"licenses": ["AAAA-BBBB-CCCC", "DDDD-EEEE-FFFF"]}})


class License(BaseModel):
    id: int
    product_id: int
    license_key: str
    allocated: bool
    order_id: Optional[int] = None
    allocated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class InventoryStats(BaseModel):
    product_id: int
    total: int
    available: int
    allocated: int


class EmailLog(BaseModel):
    id: int
    order_item_id: Optional[int] = None
    customer_email: Optional[str] = None
    email_kind: EmailKind
    licenses_sent: list[str]
    email_status: EmailStatus
    error_message: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None
    sent_at: Optional[datetime] = None


class OrderItemDetail(BaseModel):
    id: int
    product_id: int
    product_name: Optional[str] = None
    shopify_line_item_id: Optional[str] = None
    quantity: int
    licenses_allocated: int
    email_sent: bool
    allocated_licenses: list[str] = []


class OrderDetail(BaseModel):
    id: int
    shop_id: int
    shopify_order_id: str
    order_number: Optional[str] = None
    customer_email: Optional[str] = None
    order_type: OrderType
    created_at: datetime
    items: list[OrderItemDetail] = []
    email_logs: list[EmailLog] = []


# Outbound email handed to an EmailSender

class OutboundEmail(BaseModel):
    to: str
    subject: str
    text: str
    html: str
    from_email: str
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    bcc: Optional[str] = None
