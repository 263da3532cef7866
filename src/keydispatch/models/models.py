from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    CheckConstraint,
    UniqueConstraint,
    ForeignKey,
    Enum as SAEnum,
    DateTime,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()


class DeliveryMethod(str, enum.Enum):
    FIFO = "FIFO"
    LIFO = "LIFO"


class OutOfStockBehavior(str, enum.Enum):
    NO_EMAIL = "no_email"
    SEND_PLACEHOLDER = "send_placeholder"


class OrderType(str, enum.Enum):
    WEBHOOK = "webhook"
    MANUAL = "manual"


class EmailKind(str, enum.Enum):
    LICENSE = "license"
    PLACEHOLDER = "placeholder"


class EmailStatus(str, enum.Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    DROPPED = "dropped"
    SPAM = "spam"


class Shop(Base):
    __tablename__ = "shops"
    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    access_token = Column(Text, nullable=True)
    exclusion_tag = Column(String(255), nullable=True)
    installed_at = Column(DateTime, default=datetime.now, nullable=False)

    products = relationship("Product", back_populates="shop", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="shop", cascade="all, delete-orphan")
    settings = relationship("ShopSettings", back_populates="shop", uselist=False, cascade="all, delete-orphan")


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    shopify_product_id = Column(String(64), nullable=False)
    product_name = Column(String(255), nullable=False)
    template_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    shop = relationship("Shop", back_populates="products")
    licenses = relationship("License", back_populates="product", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("shop_id", "shopify_product_id", name="uq_product_shop_remote_id"),
    )


class License(Base):
    __tablename__ = "licenses"
    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    license_key = Column(Text, nullable=False)
    allocated = Column(Boolean, nullable=False, default=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    allocated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    product = relationship("Product", back_populates="licenses")


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    shopify_order_id = Column(String(64), nullable=False)
    order_number = Column(String(64), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_first_name = Column(String(255), nullable=True)
    customer_last_name = Column(String(255), nullable=True)
    order_status = Column(String(64), nullable=True)
    order_type = Column(SAEnum(OrderType), nullable=False, default=OrderType.WEBHOOK)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    shop = relationship("Shop", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")

    __table_args__ = (
        # natural idempotency key for redelivered webhooks
        UniqueConstraint("shop_id", "shopify_order_id", name="uq_order_shop_remote_id"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    shopify_line_item_id = Column(String(64), nullable=True)
    quantity = Column(Integer, nullable=False)
    licenses_allocated = Column(Integer, nullable=False, default=0)
    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
        CheckConstraint(
            "licenses_allocated >= 0 AND licenses_allocated <= quantity",
            name="ck_order_item_allocated_within_quantity",
        ),
    )

    @property
    def is_complete(self):
        return self.licenses_allocated == self.quantity


class EmailLog(Base):
    __tablename__ = "email_logs"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=True)
    customer_email = Column(String(255), nullable=True, index=True)
    email_kind = Column(SAEnum(EmailKind), nullable=False, default=EmailKind.LICENSE)
    licenses_sent = Column(Text, nullable=False, default="[]")  # JSON list of keys
    email_status = Column(SAEnum(EmailStatus), nullable=False, default=EmailStatus.QUEUED, index=True)
    error_message = Column(Text, nullable=True)
    delivery_status = Column(SAEnum(DeliveryStatus), nullable=True)
    delivery_updated_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    order_item = relationship("OrderItem")


class InventoryAlert(Base):
    __tablename__ = "inventory_alerts"
    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    available_count = Column(Integer, nullable=False)
    threshold = Column(Integer, nullable=False)
    alert_sent_at = Column(DateTime, default=datetime.now, nullable=False)


class ShopSettings(Base):
    __tablename__ = "shop_settings"
    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, unique=True)
    license_delivery_method = Column(SAEnum(DeliveryMethod), nullable=False, default=DeliveryMethod.FIFO)
    out_of_stock_behavior = Column(SAEnum(OutOfStockBehavior), nullable=False, default=OutOfStockBehavior.NO_EMAIL)
    out_of_stock_placeholder = Column(Text, nullable=True)
    custom_sender_email = Column(String(255), nullable=True)
    custom_sender_name = Column(String(255), nullable=True)
    reply_to_email = Column(String(255), nullable=True)
    enforce_unique_licenses = Column(Boolean, nullable=False, default=False)
    enforce_unique_per_order = Column(Boolean, nullable=False, default=False)
    notification_email = Column(String(255), nullable=True)
    notify_on_out_of_stock = Column(Boolean, nullable=False, default=False)
    notify_on_uniqueness_issue = Column(Boolean, nullable=False, default=False)
    bcc_notification_email = Column(Boolean, nullable=False, default=False)
    low_stock_threshold = Column(Integer, nullable=False, default=10)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    shop = relationship("Shop", back_populates="settings")

    __table_args__ = (
        CheckConstraint("low_stock_threshold >= 0", name="ck_settings_threshold_non_negative"),
    )
