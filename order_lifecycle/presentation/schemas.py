from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from order_lifecycle.domain.models import (
    OrderItem, ShippingInfo, PaymentMethod, PaymentProvider, PaymentStatus, RefundAccountDetails, Size
)
from order_lifecycle.domain.status import OrderStatus
from order_lifecycle.application.get_order import OrderView, ProductGroup


class OrderLineRequest(BaseModel):
    product_id: str
    color_id: str
    size: Size
    quantity: int = Field(gt=0)
    price: Optional[Decimal] = Field(None, ge=0)


class CreateOrderRequest(BaseModel):
    items: list[OrderLineRequest] = Field(min_length=1)
    shipping_info: ShippingInfo
    payment_method: PaymentMethod
    payment_provider: Optional[PaymentProvider] = None
    transaction_id: Optional[str] = None


class OrderResponse(BaseModel):
    order_id: str
    overall_status: OrderStatus
    products: list[ProductGroup]
    items: list[OrderItem]
    total_amount: Decimal
    total_items: int
    shipping_info: ShippingInfo
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    payment_provider: Optional[PaymentProvider] = None
    transaction_id: Optional[str] = None
    ordered_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_view(cls, view: OrderView):
        order = view.order
        return cls(
            order_id=order.order_id,
            overall_status=view.overall_status,
            products=view.products,
            items=order.items,
            total_amount=view.total_amount,
            total_items=view.total_items,
            shipping_info=order.shipping_info,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            payment_provider=order.payment_provider,
            transaction_id=order.transaction_id,
            ordered_at=order.ordered_at,
            created_at=order.created_at,
            updated_at=order.updated_at
        )


class CreateOrderResponse(BaseModel):
    success: bool = True
    message: str = "Order placed successfully"
    order_id: str
    order: OrderResponse


class ItemResponse(BaseModel):
    success: bool = True
    message: str
    item: OrderItem


class CancelItemRequest(BaseModel):
    item_id: str
    quantity: int = Field(gt=0)


class ReturnItemRequest(BaseModel):
    item_id: str
    quantity: int = Field(gt=0)
    note: str = Field(min_length=1)


class CancelReturnRequest(BaseModel):
    item_id: str
    quantity: Optional[int] = Field(None, gt=0)


class StatusUpdateRequest(BaseModel):
    item_id: str
    new_status: OrderStatus
    quantity: Optional[int] = Field(None, gt=0)
    note: str = ""


class ProcessRefundRequest(BaseModel):
    item_id: str
    quantity: Optional[int] = Field(None, gt=0)
    refund_amount: Optional[Decimal] = Field(None, gt=0)


class ReturnStatusUpdateRequest(BaseModel):
    status: OrderStatus
    note: str = ""


class RefundRequestCreate(BaseModel):
    order_id: str
    item_id: str
    quantity: int = Field(gt=0)
    refund_account_details: RefundAccountDetails
    note: Optional[str] = None


class ApproveRefundRequest(BaseModel):
    refund_amount: Optional[Decimal] = Field(None, gt=0)


class RejectRefundRequest(BaseModel):
    rejection_reason: str = Field(min_length=1)


class ReturnRequestResponse(BaseModel):
    order_id: str
    user_id: str
    shipping_info: ShippingInfo
    ordered_at: datetime
    item: OrderItem


class ErrorResponse(BaseModel):
    detail: str
    code: str
