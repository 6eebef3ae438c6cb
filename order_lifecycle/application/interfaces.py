from abc import ABC, abstractmethod
from typing import Optional, List

from order_lifecycle.domain.identifiers import IdentifierKind
from order_lifecycle.domain.models import (
    Order, Product, Color, StockLevel, CartLine, PaymentConfig, RefundStatus, Size
)
from order_lifecycle.domain.status import OrderStatus


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_order_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_item_id(self, item_id: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_return_id(self, return_id: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def list_with_refund_requests(self, refund_status: Optional[RefundStatus] = None) -> List[Order]:
        """Orders holding at least one item with a refund request, newest first"""
        pass

    @abstractmethod
    async def list_with_returns(self, status: Optional[OrderStatus] = None) -> List[Order]:
        """Orders holding at least one item that went through a return request, newest first"""
        pass

    @abstractmethod
    async def identifier_exists(self, kind: IdentifierKind, value: str) -> bool:
        pass

    @abstractmethod
    async def add(self, order: Order) -> None:
        pass

    @abstractmethod
    async def save(self, order: Order) -> None:
        pass


class CatalogRepository(ABC):
    @abstractmethod
    async def get_active_product(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_active_color(self, color_id: str) -> Optional[Color]:
        pass

    @abstractmethod
    async def get_stock(
        self, product_id: str, color_id: str, size: Size, for_update: bool = False
    ) -> Optional[StockLevel]:
        pass

    @abstractmethod
    async def set_stock(self, product_id: str, color_id: str, size: Size, stock: int) -> None:
        pass


class CartRepository(ABC):
    @abstractmethod
    async def get_lines(self, user_id: str) -> List[CartLine]:
        pass

    @abstractmethod
    async def remove_lines(self, user_id: str, lines: List[CartLine]) -> None:
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_published(self, event_id: str) -> None:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def catalog(self) -> CatalogRepository:
        pass

    @property
    @abstractmethod
    def carts(self) -> CartRepository:
        pass

    @property
    @abstractmethod
    def outbox(self) -> OutboxRepository:
        pass

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class PaymentsService(ABC):
    @abstractmethod
    async def get_payment_config(self) -> PaymentConfig:
        pass


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: dict, key: str) -> bool:
        pass
