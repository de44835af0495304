from .models import (
    Actor,
    Customer,
    Dealer,
    Product,
    ReconciliationEntry,
    Sale,
    SaleIntake,
    StockEntry,
    SupplyIntake,
)
from .errors import (
    AppError,
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)

__all__ = [
    "Actor",
    "Customer",
    "Dealer",
    "Product",
    "ReconciliationEntry",
    "Sale",
    "SaleIntake",
    "StockEntry",
    "SupplyIntake",
    "AppError",
    "AuthorizationError",
    "ConflictError",
    "InsufficientStockError",
    "NotFoundError",
    "TransientIOError",
    "ValidationError",
]
