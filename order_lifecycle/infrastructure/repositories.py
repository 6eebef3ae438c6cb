import uuid
from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy import select, insert, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from order_lifecycle.domain.identifiers import IdentifierKind
from order_lifecycle.domain.models import (
    Order, OrderItem, StatusHistoryEntry, ShippingInfo, ProductSnapshot, ProductImage, ColorSnapshot,
    Amount, RefundAccountDetails, RefundStatus, Product, Color, StockLevel, CartLine, Size
)
from order_lifecycle.domain.status import OrderStatus
from order_lifecycle.infrastructure.db_schema import (
    orders_tbl, order_items_tbl, order_item_history_tbl, products_tbl, colors_tbl,
    variant_stock_tbl, cart_items_tbl, outbox_events_tbl
)
from order_lifecycle.application.interfaces import (
    OrderRepository, CatalogRepository, CartRepository, OutboxRepository
)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Drivers without timezone support hand back naive UTC datetimes"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _image(data: Optional[dict]) -> Optional[ProductImage]:
    return ProductImage(**data) if data else None


class SQLAlchemyOrderRepository(OrderRepository):
    _identifier_columns = {
        IdentifierKind.ORDER: orders_tbl.c.order_id,
        IdentifierKind.ITEM: order_items_tbl.c.item_id,
        IdentifierKind.CANCEL: order_items_tbl.c.cancel_id,
        IdentifierKind.RETURN: order_items_tbl.c.return_id,
    }

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_order_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        stmt = select(orders_tbl).where(orders_tbl.c.order_id == order_id)
        if for_update:
            # the order row is the lock for the whole aggregate
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        return await self._load(row) if row else None

    async def get_by_item_id(self, item_id: str, for_update: bool = False) -> Optional[Order]:
        return await self._get_by_item_column(order_items_tbl.c.item_id, item_id, for_update)

    async def get_by_return_id(self, return_id: str, for_update: bool = False) -> Optional[Order]:
        return await self._get_by_item_column(order_items_tbl.c.return_id, return_id, for_update)

    async def list_by_user(self, user_id: str) -> List[Order]:
        result = await self._session.execute(
            select(orders_tbl)
            .where(orders_tbl.c.user_id == user_id)
            .order_by(orders_tbl.c.ordered_at.desc())
        )
        return [await self._load(row) for row in result.fetchall()]

    async def list_with_refund_requests(self, refund_status: Optional[RefundStatus] = None) -> List[Order]:
        criteria = [order_items_tbl.c.refund_requested_at.is_not(None)]
        if refund_status is not None:
            criteria.append(order_items_tbl.c.refund_status == refund_status)
        return await self._list_by_items(*criteria)

    async def list_with_returns(self, status: Optional[OrderStatus] = None) -> List[Order]:
        criteria = [order_items_tbl.c.return_id.is_not(None)]
        if status is not None:
            criteria.append(order_items_tbl.c.order_status == status)
        return await self._list_by_items(*criteria)

    async def _list_by_items(self, *criteria) -> List[Order]:
        matching = select(order_items_tbl.c.order_id).where(*criteria)
        result = await self._session.execute(
            select(orders_tbl)
            .where(orders_tbl.c.order_id.in_(matching))
            .order_by(orders_tbl.c.ordered_at.desc())
        )
        return [await self._load(row) for row in result.fetchall()]

    async def identifier_exists(self, kind: IdentifierKind, value: str) -> bool:
        column = self._identifier_columns[kind]
        result = await self._session.execute(select(column).where(column == value).limit(1))
        return result.fetchone() is not None

    async def add(self, order: Order) -> None:
        await self._session.execute(insert(orders_tbl).values(
            order_id=order.order_id,
            user_id=order.user_id,
            shipping_info=order.shipping_info.model_dump(),
            payment_method=order.payment_method,
            payment_provider=order.payment_provider,
            transaction_id=order.transaction_id,
            payment_status=order.payment_status,
            ordered_at=order.ordered_at,
            created_at=order.created_at,
            updated_at=order.updated_at
        ))
        for position, item in enumerate(order.items):
            await self._insert_item(order.order_id, position, item)

    async def save(self, order: Order) -> None:
        await self._session.execute(
            update(orders_tbl)
            .where(orders_tbl.c.order_id == order.order_id)
            .values(
                payment_status=order.payment_status,
                transaction_id=order.transaction_id,
                updated_at=order.updated_at
            )
        )

        result = await self._session.execute(
            select(order_items_tbl.c.item_id, func.count(order_item_history_tbl.c.position))
            .select_from(order_items_tbl.outerjoin(
                order_item_history_tbl, order_item_history_tbl.c.item_id == order_items_tbl.c.item_id
            ))
            .where(order_items_tbl.c.order_id == order.order_id)
            .group_by(order_items_tbl.c.item_id)
        )
        persisted = {row[0]: row[1] for row in result.fetchall()}

        for position, item in enumerate(order.items):
            if item.item_id not in persisted:
                await self._insert_item(order.order_id, position, item)
                continue
            await self._session.execute(
                update(order_items_tbl)
                .where(order_items_tbl.c.item_id == item.item_id)
                .values(**self._item_values(order.order_id, position, item))
            )
            # history is append-only: only entries past the stored ones are written
            await self._insert_history(item, start=persisted[item.item_id])

    async def _get_by_item_column(self, column, value: str, for_update: bool) -> Optional[Order]:
        result = await self._session.execute(
            select(order_items_tbl.c.order_id).where(column == value)
        )
        row = result.fetchone()
        return await self.get_by_order_id(row.order_id, for_update) if row else None

    async def _insert_item(self, order_id: str, position: int, item: OrderItem) -> None:
        await self._session.execute(
            insert(order_items_tbl).values(**self._item_values(order_id, position, item))
        )
        await self._insert_history(item, start=0)

    async def _insert_history(self, item: OrderItem, start: int) -> None:
        entries = item.status_history[start:]
        if not entries:
            return
        await self._session.execute(
            insert(order_item_history_tbl),
            [
                {
                    "item_id": item.item_id,
                    "position": start + offset,
                    "status": entry.status,
                    "note": entry.note,
                    "changed_at": entry.changed_at,
                }
                for offset, entry in enumerate(entries)
            ]
        )

    @staticmethod
    def _item_values(order_id: str, position: int, item: OrderItem) -> dict:
        return dict(
            item_id=item.item_id,
            order_id=order_id,
            position=position,
            product_id=item.product.product_id,
            product_name=item.product.name,
            product_image=item.product.image.model_dump() if item.product.image else None,
            color_name=item.color.name,
            color_hex_code=item.color.hex_code,
            size=item.size,
            quantity=item.quantity,
            unit_price=item.amount.unit_price,
            shipping_charges=item.amount.shipping_charges,
            total_amount=item.amount.total_amount,
            order_status=item.order_status,
            cancel_id=item.cancel_id,
            cancelled_at=item.cancelled_at,
            return_id=item.return_id,
            return_requested_at=item.return_requested_at,
            returned_at=item.returned_at,
            return_request_note=item.return_request_note,
            return_cancelled_at=item.return_cancelled_at,
            refund_amount=item.refund_amount,
            refund_status=item.refund_status,
            refund_processed_at=item.refund_processed_at,
            refund_requested_at=item.refund_requested_at,
            refund_requested_quantity=item.refund_requested_quantity,
            refund_request_note=item.refund_request_note,
            refund_account_details=(
                item.refund_account_details.model_dump(mode="json") if item.refund_account_details else None
            ),
            refund_approved_at=item.refund_approved_at,
            refund_rejected_at=item.refund_rejected_at,
            refund_rejection_reason=item.refund_rejection_reason,
        )

    async def _load(self, row) -> Order:
        items_result = await self._session.execute(
            select(order_items_tbl)
            .where(order_items_tbl.c.order_id == row.order_id)
            .order_by(order_items_tbl.c.position.asc())
        )
        item_rows = items_result.fetchall()

        history: dict[str, list[StatusHistoryEntry]] = {item_row.item_id: [] for item_row in item_rows}
        if item_rows:
            history_result = await self._session.execute(
                select(order_item_history_tbl)
                .where(order_item_history_tbl.c.item_id.in_(list(history)))
                .order_by(order_item_history_tbl.c.item_id, order_item_history_tbl.c.position.asc())
            )
            for entry in history_result.fetchall():
                history[entry.item_id].append(StatusHistoryEntry(
                    status=entry.status,
                    note=entry.note or "",
                    changed_at=_utc(entry.changed_at)
                ))

        return self._to_domain(row, item_rows, history)

    def _to_domain(self, row, item_rows, history) -> Order:
        """DB -> Domain"""
        return Order(
            order_id=row.order_id,
            user_id=row.user_id,
            items=[self._item_to_domain(item_row, history[item_row.item_id]) for item_row in item_rows],
            shipping_info=ShippingInfo(**row.shipping_info),
            payment_method=row.payment_method,
            payment_provider=row.payment_provider,
            transaction_id=row.transaction_id,
            payment_status=row.payment_status,
            ordered_at=_utc(row.ordered_at),
            created_at=_utc(row.created_at),
            updated_at=_utc(row.updated_at)
        )

    @staticmethod
    def _item_to_domain(row, history: list[StatusHistoryEntry]) -> OrderItem:
        return OrderItem(
            item_id=row.item_id,
            product=ProductSnapshot(
                product_id=row.product_id,
                name=row.product_name,
                image=_image(row.product_image),
            ),
            color=ColorSnapshot(name=row.color_name, hex_code=row.color_hex_code),
            size=row.size,
            quantity=row.quantity,
            amount=Amount(
                unit_price=row.unit_price,
                shipping_charges=row.shipping_charges,
                total_amount=row.total_amount,
            ),
            order_status=row.order_status,
            status_history=history,
            cancel_id=row.cancel_id,
            cancelled_at=_utc(row.cancelled_at),
            return_id=row.return_id,
            return_requested_at=_utc(row.return_requested_at),
            returned_at=_utc(row.returned_at),
            return_request_note=row.return_request_note,
            return_cancelled_at=_utc(row.return_cancelled_at),
            refund_amount=row.refund_amount,
            refund_status=row.refund_status,
            refund_processed_at=_utc(row.refund_processed_at),
            refund_requested_at=_utc(row.refund_requested_at),
            refund_requested_quantity=row.refund_requested_quantity,
            refund_request_note=row.refund_request_note,
            refund_account_details=(
                RefundAccountDetails(**row.refund_account_details) if row.refund_account_details else None
            ),
            refund_approved_at=_utc(row.refund_approved_at),
            refund_rejected_at=_utc(row.refund_rejected_at),
            refund_rejection_reason=row.refund_rejection_reason,
        )


class SQLAlchemyCatalogRepository(CatalogRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_active_product(self, product_id: str) -> Optional[Product]:
        result = await self._session.execute(
            select(products_tbl).where(products_tbl.c.id == product_id, products_tbl.c.is_active.is_(True))
        )
        row = result.fetchone()
        if not row:
            return None
        return Product(
            id=row.id,
            name=row.name,
            is_active=row.is_active,
            is_on_sale=row.is_on_sale,
            discounted_price=row.discounted_price,
            sale_discounted_price=row.sale_discounted_price,
            image=_image(row.image)
        )

    async def get_active_color(self, color_id: str) -> Optional[Color]:
        result = await self._session.execute(
            select(colors_tbl).where(colors_tbl.c.id == color_id, colors_tbl.c.is_active.is_(True))
        )
        row = result.fetchone()
        if not row:
            return None
        return Color(id=row.id, name=row.name, hex_code=row.hex_code, is_active=row.is_active)

    async def get_stock(
        self, product_id: str, color_id: str, size: Size, for_update: bool = False
    ) -> Optional[StockLevel]:
        stmt = select(variant_stock_tbl).where(
            variant_stock_tbl.c.product_id == product_id,
            variant_stock_tbl.c.color_id == color_id,
            variant_stock_tbl.c.size == size
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if not row:
            return None
        return StockLevel(
            product_id=row.product_id,
            color_id=row.color_id,
            size=row.size,
            stock=row.stock,
            image=_image(row.image)
        )

    async def set_stock(self, product_id: str, color_id: str, size: Size, stock: int) -> None:
        await self._session.execute(
            update(variant_stock_tbl)
            .where(
                variant_stock_tbl.c.product_id == product_id,
                variant_stock_tbl.c.color_id == color_id,
                variant_stock_tbl.c.size == size
            )
            .values(stock=stock)
        )


class SQLAlchemyCartRepository(CartRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_lines(self, user_id: str) -> List[CartLine]:
        result = await self._session.execute(
            select(cart_items_tbl).where(cart_items_tbl.c.user_id == user_id)
        )
        return [
            CartLine(product_id=row.product_id, color_id=row.color_id, size=row.size, quantity=row.quantity)
            for row in result.fetchall()
        ]

    async def remove_lines(self, user_id: str, lines: List[CartLine]) -> None:
        for line in lines:
            await self._session.execute(
                delete(cart_items_tbl).where(
                    cart_items_tbl.c.user_id == user_id,
                    cart_items_tbl.c.product_id == line.product_id,
                    cart_items_tbl.c.color_id == line.color_id,
                    cart_items_tbl.c.size == line.size
                )
            )


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(outbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,
            order_id=order_id,
            status="pending",
            created_at=datetime.now(timezone.utc)
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.status == "pending")
            .order_by(outbox_events_tbl.c.created_at.asc())
            .limit(limit)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "order_id": row.order_id
            }
            for row in rows
        ]

    async def mark_as_published(self, event_id: str) -> None:
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status="published")
        )
        await self._session.execute(stmt)
