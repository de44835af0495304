from .auth_service import AuthService
from .customer_resolver import CustomerResolver
from .reconciliation_log import ReconciliationLog
from .retry import RetryPolicy
from .sale_intake import SaleIntakeCoordinator, SaleResult
from .sale_record_store import SaleRecordStore
from .stock_ledger import StockLedger

__all__ = [
    "AuthService",
    "CustomerResolver",
    "ReconciliationLog",
    "RetryPolicy",
    "SaleIntakeCoordinator",
    "SaleResult",
    "SaleRecordStore",
    "StockLedger",
]
