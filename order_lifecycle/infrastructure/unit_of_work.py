import logging
from contextlib import asynccontextmanager
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_lifecycle.domain.exceptions import DuplicateIdentifierError, TransactionAbortedError
from order_lifecycle.infrastructure.repositories import (
    SQLAlchemyOrderRepository,
    SQLAlchemyCatalogRepository,
    SQLAlchemyCartRepository,
    SQLAlchemyOutboxRepository
)

logger = logging.getLogger(__name__)


def _is_unique_violation(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return "unique" in message or "duplicate key" in message


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                uow_impl = _UnitOfWorkImpl(session)
                yield uow_impl
                # nothing committed -> nothing persisted
                await session.rollback()
            except IntegrityError as e:
                await session.rollback()
                if _is_unique_violation(e):
                    logger.warning(f"Unique constraint hit, scope rolled back: {e.orig}")
                    raise DuplicateIdentifierError("Identifier already taken, retry the operation") from e
                logger.error(f"Integrity error, scope rolled back: {e.orig}")
                raise TransactionAbortedError("Transaction aborted") from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Database error, scope rolled back: {e}", exc_info=True)
                raise TransactionAbortedError("Transaction aborted") from e
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImpl:
    def __init__(self, session: AsyncSession):
        self._session = session
        self.orders = SQLAlchemyOrderRepository(session)
        self.catalog = SQLAlchemyCatalogRepository(session)
        self.carts = SQLAlchemyCartRepository(session)
        self.outbox = SQLAlchemyOutboxRepository(session)

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
