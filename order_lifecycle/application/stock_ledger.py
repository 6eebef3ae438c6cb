import logging

from order_lifecycle.application.interfaces import CatalogRepository
from order_lifecycle.domain.models import Size, StockLevel
from order_lifecycle.domain.exceptions import InsufficientStockError, VariantNotFoundError, ValidationError

logger = logging.getLogger(__name__)


class StockLedger:
    """Per (product, color, size) stock counters.

    Only order creation consumes stock. Nothing here puts units back: cancelled
    or returned units are restocked by staff through the catalog.
    """

    def __init__(self, catalog: CatalogRepository):
        self._catalog = catalog

    async def reserve(self, product_id: str, color_id: str, size: Size, quantity: int, label: str = "") -> StockLevel:
        if quantity < 1:
            raise ValidationError("Quantity must be a positive integer")

        # the stock row stays locked until the enclosing scope ends
        level = await self._catalog.get_stock(product_id, color_id, size, for_update=True)
        if level is None:
            raise VariantNotFoundError(f"Variant not found for product {label or product_id}, size {size.value}")
        if level.stock < quantity:
            raise InsufficientStockError(level.stock, quantity, f"{label or product_id} - size {size.value}")

        remaining = level.stock - quantity
        await self._catalog.set_stock(product_id, color_id, size, remaining)
        logger.info(f"Reserved {quantity} of {product_id}/{color_id}/{size.value}, {remaining} left")
        return level.model_copy(update={"stock": remaining})
