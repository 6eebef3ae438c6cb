import asyncio
from decimal import Decimal

import pytest

from order_lifecycle.application.create_order import CreateOrderUseCase, CreateOrderDTO, OrderLineDTO
from order_lifecycle.application.identifiers import IdentifierAllocator
from order_lifecycle.domain.exceptions import (
    CartMismatchError, ColorNotFoundError, DuplicateIdentifierError, InsufficientStockError,
    PaymentMethodUnavailableError, ProductNotFoundError
)
from order_lifecycle.domain.models import PaymentConfig, PaymentMethod, PaymentStatus, Size
from order_lifecycle.domain.status import OrderStatus

from conftest import USER_ID, OTHER_USER_ID, START, InMemoryCatalogRepository, sequence_generator


def stock_of(store, product_id="prod-tee", color_id="col-black", size=Size.M):
    return store.state.stock[(product_id, color_id, size)].stock


async def test_create_order_reserves_stock_and_snapshots(store, create_order):
    order = await create_order(quantity=3)

    assert stock_of(store) == 2
    assert order.order_id.startswith("ORD-")
    assert order.user_id == USER_ID
    assert order.overall_status == OrderStatus.ORDERED
    assert order.payment_status == PaymentStatus.PENDING
    assert order.ordered_at == START

    [item] = order.items
    assert item.item_id.startswith("ITEM-")
    assert item.quantity == 3
    assert item.product.name == "Classic Tee"
    assert item.color.hex_code == "#000000"
    assert item.amount.unit_price == Decimal("499.00")
    assert item.amount.total_amount == Decimal("499.00")
    assert [e.status for e in item.status_history] == [OrderStatus.ORDERED]
    assert item.status_history[0].note == "Order placed"
    assert order.total_amount == Decimal("1497.00")

    assert order.order_id in store.state.orders


async def test_ordered_lines_leave_the_cart(store, create_order):
    await create_order(quantity=1)
    remaining = {line.product_id for line in store.state.carts[USER_ID]}
    assert remaining == {"prod-hoodie", "prod-retired"}


async def test_order_created_event_written(store, create_order):
    order = await create_order(quantity=2)
    [event] = store.state.outbox
    assert event["event_type"] == "order.created"
    assert event["order_id"] == order.order_id
    assert event["event_data"]["total_items"] == 2
    assert event["event_data"]["total_amount"] == "998.00"


async def test_sale_price_is_charged(create_order):
    order = await create_order(quantity=1, product_id="prod-hoodie", size=Size.L)
    assert order.items[0].amount.unit_price == Decimal("799.00")


async def test_client_price_is_ignored(uow, payments, clock, shipping_info):
    use_case = CreateOrderUseCase(uow, payments, clock=clock)
    order = await use_case(CreateOrderDTO(
        user_id=USER_ID,
        items=[OrderLineDTO(product_id="prod-tee", color_id="col-black", size=Size.M, quantity=1, price=Decimal("1"))],
        shipping_info=shipping_info,
        payment_method=PaymentMethod.COD,
    ))
    assert order.items[0].amount.unit_price == Decimal("499.00")


async def test_insufficient_stock_leaves_everything_untouched(store, create_order):
    with pytest.raises(InsufficientStockError) as exc_info:
        await create_order(quantity=6)

    assert exc_info.value.available == 5
    assert exc_info.value.required == 6
    assert stock_of(store) == 5
    assert store.state.orders == {}
    assert store.state.outbox == []
    assert len(store.state.carts[USER_ID]) == 3


async def test_failure_on_a_later_line_rolls_back_earlier_reservations(store, uow, payments, clock, shipping_info):
    use_case = CreateOrderUseCase(uow, payments, clock=clock)
    dto = CreateOrderDTO(
        user_id=USER_ID,
        items=[
            OrderLineDTO(product_id="prod-tee", color_id="col-black", size=Size.M, quantity=2),
            OrderLineDTO(product_id="prod-hoodie", color_id="col-black", size=Size.L, quantity=2),
        ],
        shipping_info=shipping_info,
        payment_method=PaymentMethod.COD,
    )
    with pytest.raises(InsufficientStockError):
        await use_case(dto)

    assert stock_of(store) == 5
    assert stock_of(store, "prod-hoodie", size=Size.L) == 1
    assert store.state.orders == {}


async def test_line_missing_from_cart(store, create_order):
    with pytest.raises(CartMismatchError):
        await create_order(quantity=1, size=Size.L)
    assert store.state.orders == {}


async def test_inactive_product_is_rejected(store, create_order):
    with pytest.raises(ProductNotFoundError):
        await create_order(quantity=1, product_id="prod-retired", size=Size.S)
    assert stock_of(store, "prod-retired", size=Size.S) == 10


async def test_inactive_color_is_rejected(store, create_order):
    store.state.carts[USER_ID].append(
        store.state.carts[USER_ID][0].model_copy(update={"color_id": "col-red"})
    )
    with pytest.raises(ColorNotFoundError):
        await create_order(quantity=1, color_id="col-red")


async def test_disabled_payment_method(payments, create_order):
    payments.config = PaymentConfig(cod_enabled=False, online_payment_enabled=True)
    with pytest.raises(PaymentMethodUnavailableError):
        await create_order(quantity=1)


async def test_online_payment_with_transaction_is_paid(payments, create_order):
    payments.config = PaymentConfig(cod_enabled=True, online_payment_enabled=True)
    order = await create_order(quantity=1, payment_method=PaymentMethod.ONLINE, transaction_id="pay_123")
    assert order.payment_status == PaymentStatus.PAID


async def test_concurrent_orders_for_the_last_unit(store, uow, payments, clock, shipping_info):
    use_case = CreateOrderUseCase(uow, payments, clock=clock)

    def dto(user_id):
        return CreateOrderDTO(
            user_id=user_id,
            items=[OrderLineDTO(product_id="prod-hoodie", color_id="col-black", size=Size.L, quantity=1)],
            shipping_info=shipping_info,
            payment_method=PaymentMethod.COD,
        )

    results = await asyncio.gather(use_case(dto(USER_ID)), use_case(dto(OTHER_USER_ID)), return_exceptions=True)

    orders = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(orders) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InsufficientStockError)
    assert stock_of(store, "prod-hoodie", size=Size.L) == 0
    assert len(store.state.orders) == 1


async def test_concurrent_orders_get_distinct_identifiers(store, uow, payments, clock, shipping_info):
    store.state.stock[("prod-tee", "col-black", Size.M)].stock = 50
    users = [f"shopper-{n}" for n in range(10)]
    for user_id in users:
        store.state.carts[user_id] = [store.state.carts[USER_ID][0]]
    use_case = CreateOrderUseCase(uow, payments, clock=clock)

    def dto(user_id):
        return CreateOrderDTO(
            user_id=user_id,
            items=[OrderLineDTO(product_id="prod-tee", color_id="col-black", size=Size.M, quantity=1)],
            shipping_info=shipping_info,
            payment_method=PaymentMethod.COD,
        )

    orders = await asyncio.gather(*(use_case(dto(u)) for u in users))

    ids = [o.order_id for o in orders] + [i.item_id for o in orders for i in o.items]
    assert len(ids) == len(set(ids)) == 20
    assert stock_of(store) == 40


async def test_identifier_exhaustion_aborts_order(store, create_order, uow, payments, clock, shipping_info):
    first = await create_order(quantity=1)
    allocator = IdentifierAllocator(max_attempts=2, generator=sequence_generator([first.order_id] * 2))
    use_case = CreateOrderUseCase(uow, payments, identifiers=allocator, clock=clock)
    with pytest.raises(DuplicateIdentifierError):
        await use_case(CreateOrderDTO(
            user_id=USER_ID,
            items=[OrderLineDTO(product_id="prod-hoodie", color_id="col-black", size=Size.L, quantity=1)],
            shipping_info=shipping_info,
            payment_method=PaymentMethod.COD,
        ))
    assert len(store.state.orders) == 1
    assert stock_of(store, "prod-hoodie", size=Size.L) == 1


async def test_stock_rows_are_locked_in_key_order(store, uow, payments, clock, shipping_info, monkeypatch):
    locked = []
    original_get_stock = InMemoryCatalogRepository.get_stock

    async def recording_get_stock(self, product_id, color_id, size, for_update=False):
        if for_update:
            locked.append((product_id, color_id, size))
        return await original_get_stock(self, product_id, color_id, size, for_update)

    monkeypatch.setattr(InMemoryCatalogRepository, "get_stock", recording_get_stock)
    use_case = CreateOrderUseCase(uow, payments, clock=clock)
    order = await use_case(CreateOrderDTO(
        user_id=USER_ID,
        items=[
            OrderLineDTO(product_id="prod-tee", color_id="col-black", size=Size.M, quantity=1),
            OrderLineDTO(product_id="prod-hoodie", color_id="col-black", size=Size.L, quantity=1),
        ],
        shipping_info=shipping_info,
        payment_method=PaymentMethod.COD,
    ))

    assert locked == [("prod-hoodie", "col-black", Size.L), ("prod-tee", "col-black", Size.M)]
    assert [item.product.product_id for item in order.items] == ["prod-tee", "prod-hoodie"]
    assert stock_of(store) == 4
    assert stock_of(store, "prod-hoodie", size=Size.L) == 0
