import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from pydantic import BaseModel, Field

from order_lifecycle.domain.identifiers import IdentifierKind
from order_lifecycle.domain.models import (
    Order, OrderItem, StatusHistoryEntry, ShippingInfo, ProductSnapshot, ProductImage,
    ColorSnapshot, Amount, Size, PaymentMethod, PaymentProvider, PaymentStatus, CartLine, money
)
from order_lifecycle.domain.status import OrderStatus
from order_lifecycle.domain.exceptions import (
    CartMismatchError, ColorNotFoundError, PaymentMethodUnavailableError, ProductNotFoundError
)
from order_lifecycle.application.identifiers import IdentifierAllocator
from order_lifecycle.application.interfaces import PaymentsService
from order_lifecycle.application.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE = ProductImage(id=None, secure_url="/placeholder-product.jpg")


class OrderLineDTO(BaseModel):
    product_id: str
    color_id: str
    size: Size
    quantity: int = Field(gt=0)
    # what the client saw at checkout; kept for the log only, never charged
    price: Optional[Decimal] = None


class CreateOrderDTO(BaseModel):
    user_id: str
    items: list[OrderLineDTO] = Field(min_length=1)
    shipping_info: ShippingInfo
    payment_method: PaymentMethod
    payment_provider: Optional[PaymentProvider] = None
    transaction_id: Optional[str] = None


def stock_key(line: OrderLineDTO) -> tuple:
    return line.product_id, line.color_id, line.size.value


def initial_payment_status(method: PaymentMethod, transaction_id: Optional[str]) -> PaymentStatus:
    if method == PaymentMethod.ONLINE and transaction_id:
        return PaymentStatus.PAID
    return PaymentStatus.PENDING


class CreateOrderUseCase:
    def __init__(
        self,
        unit_of_work,
        payments_service: PaymentsService,
        identifiers: Optional[IdentifierAllocator] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._uow = unit_of_work
        self._payments = payments_service
        self._identifiers = identifiers or IdentifierAllocator()
        self._clock = clock

    async def __call__(self, order_data: CreateOrderDTO) -> Order:
        logger.info(f"Creating order for user {order_data.user_id}, {len(order_data.items)} line(s)")

        # 1. Payment method must be enabled; checked before the scope opens
        await self._ensure_payment_method(order_data.payment_method)

        async with self._uow() as uow:
            # 2. Every requested line must be in the cart
            cart_lines = await uow.carts.get_lines(order_data.user_id)
            ordered_lines = [self._match_cart_line(cart_lines, line) for line in order_data.items]

            # 3. Order id
            order_id = await self._identifiers.allocate(uow, IdentifierKind.ORDER)
            reserved = {order_id}

            # 4. Stock and pricing
            now = self._clock()
            lines = order_data.items
            catalog_rows = []
            for line in lines:
                product = await uow.catalog.get_active_product(line.product_id)
                if not product:
                    raise ProductNotFoundError(f"Product {line.product_id} not found")
                color = await uow.catalog.get_active_color(line.color_id)
                if not color:
                    raise ColorNotFoundError(f"Color {line.color_id} not found")
                catalog_rows.append((product, color))

            # stock rows are locked in key order, whatever the line order
            ledger = StockLedger(uow.catalog)
            levels = {}
            for index in sorted(range(len(lines)), key=lambda i: stock_key(lines[i])):
                line = lines[index]
                levels[index] = await ledger.reserve(
                    line.product_id, line.color_id, line.size, line.quantity, catalog_rows[index][0].name
                )

            items = []
            for index, line in enumerate(lines):
                product, color = catalog_rows[index]
                level = levels[index]

                price = product.current_price()
                if line.price is not None and money(line.price) != price:
                    logger.warning(
                        f"Client price {line.price} for {product.id} differs from catalog price {price}; using catalog"
                    )

                item_id = await self._identifiers.allocate(uow, IdentifierKind.ITEM, reserved)
                reserved.add(item_id)
                items.append(OrderItem(
                    item_id=item_id,
                    product=ProductSnapshot(
                        product_id=product.id,
                        name=product.name,
                        image=level.image or product.image or PLACEHOLDER_IMAGE,
                    ),
                    color=ColorSnapshot(name=color.name, hex_code=color.hex_code),
                    size=line.size,
                    quantity=line.quantity,
                    amount=Amount.from_unit_price(price),
                    order_status=OrderStatus.ORDERED,
                    status_history=[
                        StatusHistoryEntry(status=OrderStatus.ORDERED, note="Order placed", changed_at=now)
                    ],
                ))

            # 5. Persist the order
            order = Order(
                order_id=order_id,
                user_id=order_data.user_id,
                items=items,
                shipping_info=order_data.shipping_info,
                payment_method=order_data.payment_method,
                payment_provider=order_data.payment_provider,
                transaction_id=order_data.transaction_id,
                payment_status=initial_payment_status(order_data.payment_method, order_data.transaction_id),
                ordered_at=now,
                created_at=now,
                updated_at=now,
            )
            await uow.orders.add(order)

            # 6. Ordered lines leave the cart
            await uow.carts.remove_lines(order_data.user_id, ordered_lines)

            await uow.outbox.create(
                event_type="order.created",
                event_data={
                    "order_id": order.order_id,
                    "user_id": order.user_id,
                    "total_amount": str(order.total_amount),
                    "total_items": order.total_items,
                    "payment_method": order.payment_method.value,
                },
                order_id=order.order_id,
            )
            await uow.commit()

        logger.info(f"Order created: {order.order_id} ({order.total_items} unit(s), {order.total_amount})")
        return order

    async def _ensure_payment_method(self, method: PaymentMethod) -> None:
        config = await self._payments.get_payment_config()
        if method == PaymentMethod.COD and not config.cod_enabled:
            raise PaymentMethodUnavailableError("Cash on Delivery is currently disabled. Please use online payment.")
        if method == PaymentMethod.ONLINE and not config.online_payment_enabled:
            raise PaymentMethodUnavailableError("Online payment is currently disabled. Please use Cash on Delivery.")

    @staticmethod
    def _match_cart_line(cart_lines: list[CartLine], line: OrderLineDTO) -> CartLine:
        for cart_line in cart_lines:
            if cart_line.matches(line.product_id, line.color_id, line.size):
                return cart_line
        raise CartMismatchError(f"Item {line.product_id} ({line.size.value}) not found in your cart")
