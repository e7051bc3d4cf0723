class DomainException(Exception):
    pass


class CatalogServiceError(DomainException):
    pass


class LedgerServiceError(DomainException):
    pass


class DeliveryServiceError(DomainException):
    pass


class ItemNotFoundError(DomainException):
    pass


class InsufficientStockError(DomainException):
    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"Insufficient stock. Available: {available}, required: {required}")


class StaleVersionError(DomainException):
    """A compare-and-set write lost against a concurrent writer."""


class StockConflictError(StaleVersionError):
    pass


class OrderNotFoundError(DomainException):
    pass


class DeliveryNotFoundError(DomainException):
    pass


class InvalidTransitionError(DomainException):
    pass


class OrderCancellationError(DomainException):
    pass


class DeliveryCancellationError(DomainException):
    pass


class EventNotReady(DomainException):
    """The outbox event must be retried later without counting an attempt."""


class InvalidAmountError(DomainException):
    pass
