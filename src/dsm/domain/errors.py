class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class InsufficientStockError(AppError):
    pass


class ConflictError(AppError):
    """Concurrent modification detected on a versioned row."""


class TransientIOError(AppError):
    """Timeout or network failure talking to the persistence layer."""


class AuthorizationError(AppError):
    pass
