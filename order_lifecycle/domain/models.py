from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from order_lifecycle.domain.status import OrderStatus, ensure_transition, overall_status
from order_lifecycle.domain.exceptions import (
    InvalidQuantityError, ItemNotFoundError, ValidationError
)

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class PaymentMethod(str, Enum):
    COD = "COD"
    ONLINE = "ONLINE"


class PaymentProvider(str, Enum):
    RAZORPAY = "razorpay"
    CASHFREE = "cashfree"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class RefundStatus(str, Enum):
    PENDING = "PENDING"
    REFUNDED = "REFUNDED"
    REJECTED = "REJECTED"


class Size(str, Enum):
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"
    XXL = "XXL"
    XXXL = "XXXL"


class AccountType(str, Enum):
    BANK = "BANK"
    UPI = "UPI"


class ShippingInfo(BaseModel):
    """Value Object: address snapshot taken at order time"""
    address: str
    city: str
    state: str
    country: str
    postal_code: str
    phone: str


class ProductImage(BaseModel):
    id: Optional[str] = None
    secure_url: str


class ProductSnapshot(BaseModel):
    product_id: str
    name: str
    image: Optional[ProductImage] = None


class ColorSnapshot(BaseModel):
    name: str
    hex_code: str


class Amount(BaseModel):
    """Per-unit amounts; a batch is worth total_amount * quantity"""
    unit_price: Decimal
    shipping_charges: Decimal = Decimal("0.00")
    total_amount: Decimal

    @classmethod
    def from_unit_price(cls, unit_price, shipping_charges=0) -> "Amount":
        unit_price = money(unit_price)
        shipping_charges = money(shipping_charges)
        return cls(
            unit_price=unit_price,
            shipping_charges=shipping_charges,
            total_amount=unit_price + shipping_charges,
        )


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OrderStatus
    note: str = ""
    changed_at: datetime


class RefundAccountDetails(BaseModel):
    account_type: AccountType
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    account_holder_name: Optional[str] = None
    upi_id: Optional[str] = None
    phone_number: Optional[str] = None

    def ensure_usable(self) -> None:
        if not self.upi_id and not self.account_number:
            raise ValidationError("Please provide valid account details (UPI ID or bank account)")


class OrderItem(BaseModel):
    """Entity: a batch of identical units sharing one status"""
    item_id: str
    product: ProductSnapshot
    color: ColorSnapshot
    size: Size
    quantity: int = Field(gt=0)
    amount: Amount
    order_status: OrderStatus = OrderStatus.ORDERED
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    cancel_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    return_id: Optional[str] = None
    return_requested_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    return_request_note: Optional[str] = None
    return_cancelled_at: Optional[datetime] = None

    refund_amount: Optional[Decimal] = None
    refund_status: Optional[RefundStatus] = None
    refund_processed_at: Optional[datetime] = None
    refund_requested_at: Optional[datetime] = None
    refund_requested_quantity: Optional[int] = None
    refund_request_note: Optional[str] = None
    refund_account_details: Optional[RefundAccountDetails] = None
    refund_approved_at: Optional[datetime] = None
    refund_rejected_at: Optional[datetime] = None
    refund_rejection_reason: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.amount.total_amount * self.quantity

    def delivered_at(self) -> Optional[datetime]:
        for entry in self.status_history:
            if entry.status == OrderStatus.DELIVERED:
                return entry.changed_at
        return None

    def has_pending_refund_request(self) -> bool:
        return self.refund_status == RefundStatus.PENDING


class Order(BaseModel):
    """Domain Entity: order aggregate"""
    order_id: str
    user_id: str
    items: list[OrderItem]
    shipping_info: ShippingInfo
    payment_method: PaymentMethod
    payment_provider: Optional[PaymentProvider] = None
    transaction_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    ordered_at: datetime
    created_at: datetime
    updated_at: datetime

    @property
    def overall_status(self) -> OrderStatus:
        return overall_status(item.order_status for item in self.items)

    @property
    def total_amount(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0.00"))

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    def get_item(self, item_id: str) -> OrderItem:
        for item in self.items:
            if item.item_id == item_id:
                return item
        raise ItemNotFoundError(f"Item {item_id} not found in order {self.order_id}")

    def find_item_by_return_id(self, return_id: str) -> Optional[OrderItem]:
        return next((item for item in self.items if item.return_id == return_id), None)

    def identifiers(self) -> set[str]:
        ids = {self.order_id}
        for item in self.items:
            ids.update(i for i in (item.item_id, item.cancel_id, item.return_id) if i)
        return ids

    def apply_transition(
        self,
        item_id: str,
        target: OrderStatus,
        quantity: int,
        note: str,
        at: datetime,
        new_item_id: Optional[str] = None,
        **changes,
    ) -> OrderItem:
        """Move `quantity` units of an item to `target`.

        The whole batch is mutated in place when `quantity` covers it. Otherwise
        a deep copy carrying the new status is appended under `new_item_id` and
        the source batch shrinks by `quantity`; its status and history stay as
        they were. `changes` are applied to whichever item ends up in `target`.
        Returns that item.
        """
        item = self.get_item(item_id)
        ensure_transition(item.order_status, target)
        if quantity < 1:
            raise ValidationError("Quantity must be a positive integer")
        if quantity > item.quantity:
            raise InvalidQuantityError(quantity, item.quantity)

        if quantity == item.quantity:
            moved = item
        else:
            if not new_item_id:
                raise ValueError("Splitting a batch requires a new item id")
            moved = item.model_copy(deep=True, update={"item_id": new_item_id, "quantity": quantity})
            item.quantity -= quantity
            self.items.append(moved)

        moved.order_status = target
        for field, value in changes.items():
            if field not in OrderItem.model_fields:
                raise AttributeError(f"OrderItem has no field {field}")
            setattr(moved, field, value)
        moved.status_history.append(StatusHistoryEntry(status=target, note=note, changed_at=at))
        self.updated_at = at
        return moved


class Product(BaseModel):
    """Value Object: product from catalog"""
    id: str
    name: str
    is_active: bool = True
    is_on_sale: bool = False
    discounted_price: Decimal
    sale_discounted_price: Optional[Decimal] = None
    image: Optional[ProductImage] = None

    def current_price(self) -> Decimal:
        if self.is_on_sale and self.sale_discounted_price is not None:
            return money(self.sale_discounted_price)
        return money(self.discounted_price)


class Color(BaseModel):
    """Value Object: color from catalog"""
    id: str
    name: str
    hex_code: str
    is_active: bool = True


class StockLevel(BaseModel):
    product_id: str
    color_id: str
    size: Size
    stock: int
    image: Optional[ProductImage] = None


class CartLine(BaseModel):
    product_id: str
    color_id: str
    size: Size
    quantity: int

    def matches(self, product_id: str, color_id: str, size: Size) -> bool:
        return self.product_id == product_id and self.color_id == color_id and self.size == size


class PaymentConfig(BaseModel):
    cod_enabled: bool = True
    online_payment_enabled: bool = False
