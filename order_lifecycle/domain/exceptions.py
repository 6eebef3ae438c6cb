class DomainException(Exception):
    code = "DOMAIN_ERROR"


class ValidationError(DomainException):
    code = "VALIDATION_ERROR"


class CartMismatchError(ValidationError):
    code = "CART_MISMATCH"


class PaymentMethodUnavailableError(ValidationError):
    code = "PAYMENT_METHOD_UNAVAILABLE"


class NotFoundError(DomainException):
    code = "NOT_FOUND"


class ProductNotFoundError(NotFoundError):
    pass


class ColorNotFoundError(NotFoundError):
    pass


class VariantNotFoundError(NotFoundError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class ItemNotFoundError(NotFoundError):
    pass


class ReturnNotFoundError(NotFoundError):
    pass


class InsufficientStockError(DomainException):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, available: int, required: int, label: str = ""):
        self.available = available
        self.required = required
        target = f" for {label}" if label else ""
        super().__init__(f"Insufficient stock{target}. Available: {available}, required: {required}")


class InvalidTransitionError(DomainException):
    code = "INVALID_TRANSITION"

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from {current.value} to {target.value}")


class InvalidQuantityError(DomainException):
    code = "INVALID_QUANTITY"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Requested quantity {requested} exceeds batch quantity {available}")


class ReturnWindowExpiredError(DomainException):
    code = "RETURN_WINDOW_EXPIRED"

    def __init__(self, days_elapsed: int, window_days: int):
        self.days_elapsed = days_elapsed
        self.window_days = window_days
        super().__init__(
            f"Return window expired ({days_elapsed} days since delivery, window is {window_days} days)"
        )


class RefundRequestConflictError(DomainException):
    code = "REFUND_REQUEST_CONFLICT"


class DuplicateIdentifierError(DomainException):
    """Identifier allocation collided; the whole operation may be retried."""
    code = "DUPLICATE_IDENTIFIER"
    retryable = True


class TransactionAbortedError(DomainException):
    code = "TRANSACTION_ABORTED"


class PaymentServiceError(DomainException):
    code = "PAYMENT_SERVICE_UNAVAILABLE"
