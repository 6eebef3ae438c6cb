import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from order_lifecycle.application.create_order import CreateOrderUseCase, CreateOrderDTO, OrderLineDTO
from order_lifecycle.application.identifiers import IdentifierAllocator
from order_lifecycle.application.interfaces import (
    OrderRepository, CatalogRepository, CartRepository, OutboxRepository, PaymentsService
)
from order_lifecycle.application.transition_item import ItemTransitionService, TransitionItemUseCase
from order_lifecycle.domain.identifiers import IdentifierKind
from order_lifecycle.domain.models import (
    Product, Color, StockLevel, CartLine, PaymentConfig, PaymentMethod, ShippingInfo, Size
)
from order_lifecycle.domain.status import OrderStatus

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
START = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@dataclass
class StoreState:
    orders: dict = field(default_factory=dict)
    products: dict = field(default_factory=dict)
    colors: dict = field(default_factory=dict)
    stock: dict = field(default_factory=dict)
    carts: dict = field(default_factory=dict)
    outbox: list = field(default_factory=list)


class InMemoryStore:
    """Committed state plus the lock that serializes every scope."""

    def __init__(self):
        self.state = StoreState()
        self.lock = asyncio.Lock()
        self.commits = 0


class InMemoryOrderRepository(OrderRepository):
    def __init__(self, state: StoreState):
        self._state = state

    async def get_by_order_id(self, order_id, for_update=False):
        order = self._state.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_by_item_id(self, item_id, for_update=False):
        for order in self._state.orders.values():
            if any(item.item_id == item_id for item in order.items):
                return order.model_copy(deep=True)
        return None

    async def get_by_return_id(self, return_id, for_update=False):
        for order in self._state.orders.values():
            if order.find_item_by_return_id(return_id):
                return order.model_copy(deep=True)
        return None

    async def list_by_user(self, user_id):
        orders = [o for o in self._state.orders.values() if o.user_id == user_id]
        orders.sort(key=lambda o: o.ordered_at, reverse=True)
        return [o.model_copy(deep=True) for o in orders]

    async def list_with_refund_requests(self, refund_status=None):
        return self._list_matching(
            lambda item: item.refund_requested_at is not None
            and (refund_status is None or item.refund_status == refund_status)
        )

    async def list_with_returns(self, status=None):
        return self._list_matching(
            lambda item: item.return_id is not None and (status is None or item.order_status == status)
        )

    def _list_matching(self, predicate):
        orders = [o for o in self._state.orders.values() if any(predicate(item) for item in o.items)]
        orders.sort(key=lambda o: o.ordered_at, reverse=True)
        return [o.model_copy(deep=True) for o in orders]

    async def identifier_exists(self, kind, value):
        for order in self._state.orders.values():
            if kind == IdentifierKind.ORDER and order.order_id == value:
                return True
            for item in order.items:
                if kind == IdentifierKind.ITEM and item.item_id == value:
                    return True
                if kind == IdentifierKind.CANCEL and item.cancel_id == value:
                    return True
                if kind == IdentifierKind.RETURN and item.return_id == value:
                    return True
        return False

    async def add(self, order):
        assert order.order_id not in self._state.orders
        self._state.orders[order.order_id] = order.model_copy(deep=True)

    async def save(self, order):
        assert order.order_id in self._state.orders
        self._state.orders[order.order_id] = order.model_copy(deep=True)


class InMemoryCatalogRepository(CatalogRepository):
    def __init__(self, state: StoreState):
        self._state = state

    async def get_active_product(self, product_id):
        product = self._state.products.get(product_id)
        return product if product and product.is_active else None

    async def get_active_color(self, color_id):
        color = self._state.colors.get(color_id)
        return color if color and color.is_active else None

    async def get_stock(self, product_id, color_id, size, for_update=False):
        level = self._state.stock.get((product_id, color_id, size))
        return level.model_copy() if level else None

    async def set_stock(self, product_id, color_id, size, stock):
        key = (product_id, color_id, size)
        self._state.stock[key] = self._state.stock[key].model_copy(update={"stock": stock})


class InMemoryCartRepository(CartRepository):
    def __init__(self, state: StoreState):
        self._state = state

    async def get_lines(self, user_id):
        return list(self._state.carts.get(user_id, []))

    async def remove_lines(self, user_id, lines):
        self._state.carts[user_id] = [
            cart_line for cart_line in self._state.carts.get(user_id, [])
            if not any(cart_line.matches(line.product_id, line.color_id, line.size) for line in lines)
        ]


class InMemoryOutboxRepository(OutboxRepository):
    def __init__(self, state: StoreState):
        self._state = state

    async def create(self, event_type, event_data, order_id):
        event_id = str(uuid.uuid4())
        self._state.outbox.append({
            "id": event_id,
            "event_type": event_type,
            "event_data": event_data,
            "order_id": order_id,
            "status": "pending",
        })
        return event_id

    async def get_pending(self, limit=10):
        return [dict(e) for e in self._state.outbox if e["status"] == "pending"][:limit]

    async def mark_as_published(self, event_id):
        for event in self._state.outbox:
            if event["id"] == event_id:
                event["status"] = "published"


class _InMemoryScope:
    def __init__(self, store: InMemoryStore):
        self._store = store
        self._working = copy.deepcopy(store.state)
        self.orders = InMemoryOrderRepository(self._working)
        self.catalog = InMemoryCatalogRepository(self._working)
        self.carts = InMemoryCartRepository(self._working)
        self.outbox = InMemoryOutboxRepository(self._working)

    async def commit(self):
        self._store.state = copy.deepcopy(self._working)
        self._store.commits += 1

    async def rollback(self):
        self._working.__dict__.update(copy.deepcopy(self._store.state).__dict__)


class InMemoryUnitOfWork:
    """Serializable scopes: one at a time, work on a copy, publish on commit."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    @asynccontextmanager
    async def __call__(self):
        async with self._store.lock:
            yield _InMemoryScope(self._store)


class FakePaymentsService(PaymentsService):
    def __init__(self, config: PaymentConfig | None = None):
        self.config = config or PaymentConfig()
        self.calls = 0

    async def get_payment_config(self):
        self.calls += 1
        return self.config


class FrozenClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def sequence_generator(values):
    """Identifier generator replaying fixed candidates, for collision tests."""
    candidates = iter(values)

    def generate(kind, now=None):
        return next(candidates)
    return generate


@pytest.fixture
def store():
    store = InMemoryStore()
    state = store.state
    state.products = {
        "prod-tee": Product(id="prod-tee", name="Classic Tee", discounted_price=Decimal("499.00")),
        "prod-hoodie": Product(
            id="prod-hoodie", name="Zip Hoodie", is_on_sale=True,
            discounted_price=Decimal("999.00"), sale_discounted_price=Decimal("799.00")
        ),
        "prod-retired": Product(
            id="prod-retired", name="Old Cap", is_active=False, discounted_price=Decimal("199.00")
        ),
    }
    state.colors = {
        "col-black": Color(id="col-black", name="Black", hex_code="#000000"),
        "col-red": Color(id="col-red", name="Red", hex_code="#FF0000", is_active=False),
    }
    state.stock = {
        ("prod-tee", "col-black", Size.M): StockLevel(product_id="prod-tee", color_id="col-black", size=Size.M, stock=5),
        ("prod-hoodie", "col-black", Size.L): StockLevel(
            product_id="prod-hoodie", color_id="col-black", size=Size.L, stock=1
        ),
        ("prod-retired", "col-black", Size.S): StockLevel(
            product_id="prod-retired", color_id="col-black", size=Size.S, stock=10
        ),
    }
    state.carts = {
        USER_ID: [
            CartLine(product_id="prod-tee", color_id="col-black", size=Size.M, quantity=3),
            CartLine(product_id="prod-hoodie", color_id="col-black", size=Size.L, quantity=1),
            CartLine(product_id="prod-retired", color_id="col-black", size=Size.S, quantity=1),
        ],
        OTHER_USER_ID: [
            CartLine(product_id="prod-hoodie", color_id="col-black", size=Size.L, quantity=1),
        ],
    }
    return store


@pytest.fixture
def uow(store):
    return InMemoryUnitOfWork(store)


@pytest.fixture
def payments():
    return FakePaymentsService()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def transitions(clock):
    return ItemTransitionService(IdentifierAllocator(), clock=clock)


@pytest.fixture
def shipping_info():
    return ShippingInfo(
        address="12 Park Street", city="Kolkata", state="WB", country="India",
        postal_code="700016", phone="+919800000000"
    )


@pytest.fixture
def create_order(uow, payments, clock, shipping_info):
    use_case = CreateOrderUseCase(uow, payments, clock=clock)

    async def _create(quantity=3, product_id="prod-tee", color_id="col-black", size=Size.M, user_id=USER_ID, **kwargs):
        kwargs.setdefault("payment_method", PaymentMethod.COD)
        dto = CreateOrderDTO(
            user_id=user_id,
            items=[OrderLineDTO(product_id=product_id, color_id=color_id, size=size, quantity=quantity)],
            shipping_info=shipping_info,
            **kwargs
        )
        return await use_case(dto)
    return _create


@pytest.fixture
def move_item(uow, transitions):
    """Admin transition helper: move_item(item_id, OrderStatus.SHIPPED, quantity=None)"""
    use_case = TransitionItemUseCase(uow, transitions)

    async def _move(item_id, target: OrderStatus, quantity=None, note=""):
        return await use_case(item_id, target, quantity, note)
    return _move


@pytest.fixture
def deliver(move_item):
    async def _deliver(item_id):
        await move_item(item_id, OrderStatus.SHIPPED)
        return await move_item(item_id, OrderStatus.DELIVERED)
    return _deliver


def stored_order(store, order_id):
    return store.state.orders[order_id]


def units_by_status(order):
    totals = {}
    for item in order.items:
        totals[item.order_status] = totals.get(item.order_status, 0) + item.quantity
    return totals
