import enum


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STORE = "store"
    CACHE = "cache"


class OrderServiceError(Exception):
    """Base class for every error raised by the order data-access layer.

    Callers branch on ``kind`` (or on the subclass), never on the message.
    """
    kind: ErrorKind

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value


class ValidationError(OrderServiceError):
    """Rejected input. Raised before any I/O, never worth retrying."""
    kind = ErrorKind.VALIDATION


class NotFoundError(OrderServiceError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(OrderServiceError):
    kind = ErrorKind.CONFLICT


class StoreError(OrderServiceError):
    kind = ErrorKind.STORE


class CacheError(OrderServiceError):
    """Only raised by cache adapters; the service always recovers from it."""
    kind = ErrorKind.CACHE
