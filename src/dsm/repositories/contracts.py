from __future__ import annotations

from typing import Optional, Protocol

from dsm.domain.models import Customer, Dealer, Product, ReconciliationEntry, Sale, StockEntry


class SalesApi(Protocol):
    """Data/API layer the intake workflow talks to.

    Every call is a potential suspension point and may raise
    ``TransientIOError``. Batch numbers are concrete here: ``None`` addresses
    the unbatched entry of a (dealer, product) pair.
    """

    # customers
    def search_customer(self, contact: str) -> Optional[Customer]: ...
    def get_customer(self, customer_id: int) -> Optional[Customer]: ...
    def create_customer(self, name: str, contact: str, role: str, flags: Optional[dict] = None) -> Customer: ...

    # reference data
    def get_product(self, product_id: int) -> Optional[Product]: ...
    def get_dealer(self, dealer_id: int) -> Optional[Dealer]: ...

    # stock
    def get_stock(self, dealer_id: int, product_id: int, batch_number: Optional[str] = None) -> Optional[StockEntry]: ...
    def list_stock(self, dealer_id: int, product_id: Optional[int] = None) -> list[StockEntry]: ...
    def apply_stock_delta(
        self, dealer_id: int, product_id: int, batch_number: Optional[str], delta: int, expected_version: int
    ) -> StockEntry: ...
    def create_or_increment_stock(
        self, dealer_id: int, product_id: int, batch_number: Optional[str], amount: int, expected_version: Optional[int]
    ) -> StockEntry: ...

    # sales
    def create_sale(
        self,
        product_id: int,
        dealer_id: int,
        company_id: int,
        customer_id: Optional[int],
        quantity: int,
        warranty_till: int,
        batch_number: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> Sale: ...
    def get_sale(self, sale_id: int) -> Optional[Sale]: ...
    def list_sales(self, dealer_id: Optional[int] = None) -> list[Sale]: ...


class ReconciliationStore(Protocol):
    """Durable store behind the reconciliation log.

    Kept separate from ``SalesApi`` so pending entries survive an outage of
    the remote sales service.
    """

    def add_reconciliation_entry(
        self,
        sale_id: int,
        dealer_id: int,
        product_id: int,
        batch_number: Optional[str],
        expected_delta: int,
        reason: str,
    ) -> ReconciliationEntry: ...
    def get_reconciliation_entry(self, entry_id: int) -> Optional[ReconciliationEntry]: ...
    def pending_reconciliation_for_sale(self, sale_id: int) -> Optional[ReconciliationEntry]: ...
    def list_pending_reconciliation(self) -> list[ReconciliationEntry]: ...
    def mark_reconciliation_resolved(self, entry_id: int) -> bool: ...
    def bump_reconciliation_attempts(self, entry_id: int) -> None: ...
