import logging
from typing import Callable, Collection

from order_lifecycle.domain.identifiers import IdentifierKind, generate_identifier
from order_lifecycle.domain.exceptions import DuplicateIdentifierError

logger = logging.getLogger(__name__)


class IdentifierAllocator:
    """Generate-and-check loop against the identifier store.

    The store's unique constraints stay the final authority: a collision that
    slips between the check and the commit surfaces as DuplicateIdentifierError
    from the unit of work.
    """

    def __init__(
        self,
        max_attempts: int = 10,
        generator: Callable[[IdentifierKind], str] = generate_identifier,
    ):
        self._max_attempts = max_attempts
        self._generate = generator

    async def allocate(self, uow, kind: IdentifierKind, reserved: Collection[str] = ()) -> str:
        """Return an identifier unused in the store and not in `reserved` (ids pending in this scope)."""
        for attempt in range(1, self._max_attempts + 1):
            candidate = self._generate(kind)
            if candidate in reserved or await uow.orders.identifier_exists(kind, candidate):
                logger.warning(f"Identifier collision on {candidate} (attempt {attempt}/{self._max_attempts})")
                continue
            return candidate
        raise DuplicateIdentifierError(
            f"Could not allocate a unique {kind.name.lower()} id after {self._max_attempts} attempts"
        )
