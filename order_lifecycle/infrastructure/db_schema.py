from sqlalchemy import (
    Table, Column, String, Integer, Boolean, Numeric, Enum, DateTime, JSON, MetaData,
    ForeignKey, CheckConstraint, PrimaryKeyConstraint
)
from sqlalchemy.sql import func

from order_lifecycle.domain.models import PaymentMethod, PaymentProvider, PaymentStatus, RefundStatus, Size
from order_lifecycle.domain.status import OrderStatus

metadata = MetaData()

MONEY = Numeric(10, 2)
SIZE = Enum(Size, name="size")
ORDER_STATUS = Enum(OrderStatus, name="order_status")


orders_tbl = Table(
    "orders",
    metadata,
    Column("order_id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("shipping_info", JSON, nullable=False),
    Column("payment_method", Enum(PaymentMethod, name="payment_method"), nullable=False),
    Column("payment_provider", Enum(PaymentProvider, name="payment_provider"), nullable=True),
    Column("transaction_id", String, nullable=True),
    Column("payment_status", Enum(PaymentStatus, name="payment_status"), nullable=False),
    Column("ordered_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


order_items_tbl = Table(
    "order_items",
    metadata,
    Column("item_id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.order_id"), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("product_id", String, nullable=False),
    Column("product_name", String, nullable=False),
    Column("product_image", JSON, nullable=True),
    Column("color_name", String, nullable=False),
    Column("color_hex_code", String, nullable=False),
    Column("size", SIZE, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", MONEY, nullable=False),
    Column("shipping_charges", MONEY, nullable=False, default=0),
    Column("total_amount", MONEY, nullable=False),
    Column("order_status", ORDER_STATUS, nullable=False),
    Column("cancel_id", String, unique=True, nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    Column("return_id", String, unique=True, nullable=True),
    Column("return_requested_at", DateTime(timezone=True), nullable=True),
    Column("returned_at", DateTime(timezone=True), nullable=True),
    Column("return_request_note", String, nullable=True),
    Column("return_cancelled_at", DateTime(timezone=True), nullable=True),
    Column("refund_amount", MONEY, nullable=True),
    Column("refund_status", Enum(RefundStatus, name="refund_status"), nullable=True),
    Column("refund_processed_at", DateTime(timezone=True), nullable=True),
    Column("refund_requested_at", DateTime(timezone=True), nullable=True),
    Column("refund_requested_quantity", Integer, nullable=True),
    Column("refund_request_note", String, nullable=True),
    Column("refund_account_details", JSON, nullable=True),
    Column("refund_approved_at", DateTime(timezone=True), nullable=True),
    Column("refund_rejected_at", DateTime(timezone=True), nullable=True),
    Column("refund_rejection_reason", String, nullable=True),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
)


# append-only audit trail, one row per status change
order_item_history_tbl = Table(
    "order_item_status_history",
    metadata,
    Column("item_id", String, ForeignKey("order_items.item_id"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("status", ORDER_STATUS, nullable=False),
    Column("note", String, nullable=False, default=""),
    Column("changed_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("item_id", "position"),
)


products_tbl = Table(
    "products",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_on_sale", Boolean, nullable=False, default=False),
    Column("discounted_price", MONEY, nullable=False),
    Column("sale_discounted_price", MONEY, nullable=True),
    Column("image", JSON, nullable=True)
)


colors_tbl = Table(
    "colors",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False, unique=True),
    Column("hex_code", String, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True)
)


variant_stock_tbl = Table(
    "variant_stock",
    metadata,
    Column("product_id", String, ForeignKey("products.id"), nullable=False),
    Column("color_id", String, ForeignKey("colors.id"), nullable=False),
    Column("size", SIZE, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("image", JSON, nullable=True),
    PrimaryKeyConstraint("product_id", "color_id", "size"),
    CheckConstraint("stock >= 0", name="ck_variant_stock_non_negative"),
)


cart_items_tbl = Table(
    "cart_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("product_id", String, nullable=False),
    Column("color_id", String, nullable=False),
    Column("size", SIZE, nullable=False),
    Column("quantity", Integer, nullable=False, default=1)
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)
