from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional

from dsm.domain.errors import AppError, ConflictError, InsufficientStockError, NotFoundError, ValidationError
from dsm.domain.models import Actor, Customer, Dealer, Product, Sale, SaleIntake, SupplyIntake
from dsm.repositories.contracts import SalesApi
from dsm.services.auth_service import AuthService
from dsm.services.customer_resolver import CustomerResolver, normalize_contact
from dsm.services.reconciliation_log import ReconciliationLog, reason_for
from dsm.services.retry import RetryPolicy, retry_call
from dsm.services.sale_record_store import SaleRecordStore
from dsm.services.stock_ledger import StockLedger

log = logging.getLogger("dsm.sales")


class IntakeState(str, Enum):
    VALIDATING = "VALIDATING"
    CUSTOMER_RESOLVED = "CUSTOMER_RESOLVED"
    STOCK_CHECKED = "STOCK_CHECKED"
    SALE_CREATED = "SALE_CREATED"
    STOCK_RECONCILED = "STOCK_RECONCILED"
    STOCK_RECONCILE_FAILED = "STOCK_RECONCILE_FAILED"


@dataclass(frozen=True)
class SaleResult:
    sale: Sale
    reconciled: bool
    state: IntakeState
    warning: Optional[str] = None
    stock_after: Optional[int] = None
    customer: Optional[Customer] = None
    reconciliation_entry_id: Optional[int] = None


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedGate:
    """Process-local mutual exclusion per stock key.

    A key's lock exists only while someone holds or waits for it. Waiting
    longer than ``timeout`` seconds raises ``ConflictError``.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._slots: dict[tuple, _Slot] = {}

    @contextmanager
    def hold(self, key: tuple) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(key, _Slot())
            slot.users += 1
        try:
            if not slot.lock.acquire(timeout=-1 if self.timeout is None else self.timeout):
                raise ConflictError(f"Another sale is updating stock for {key}. Try again.")
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._slots)


class SaleIntakeCoordinator:
    """Creates sales while keeping dealer stock consistent.

    The flow is a saga over independent resources:

        VALIDATING -> CUSTOMER_RESOLVED -> STOCK_CHECKED -> SALE_CREATED
            -> STOCK_RECONCILED | STOCK_RECONCILE_FAILED

    Failures before SALE_CREATED propagate and leave nothing behind. Once the
    sale exists it is permanent: a stock update that still fails after the
    retry budget is written to the reconciliation log and reported through
    ``SaleResult.reconciled = False`` instead of an exception.

    Checks and stock writes for one (dealer, product) pair are serialized
    inside this process so two intakes for the last unit cannot both pass the
    availability check. The check uses what a single decrement can take, so a
    sale that passes it is never refused by its own stock update. Across processes only the conditional update guards
    the counter and a lost race ends as an unreconciled sale.
    """

    def __init__(
        self,
        api: SalesApi,
        customers: CustomerResolver,
        stock: StockLedger,
        sales: SaleRecordStore,
        reconciliation: ReconciliationLog,
        policy: RetryPolicy | None = None,
        auth: AuthService | None = None,
        gate: KeyedGate | None = None,
    ):
        self.api = api
        self.customers = customers
        self.stock = stock
        self.sales = sales
        self.reconciliation = reconciliation
        self.policy = policy or RetryPolicy()
        self.auth = auth or AuthService()
        self.gate = gate if gate is not None else KeyedGate()

    # ---------- consumer flow ----------
    def create_sale(self, intake: SaleIntake, actor: Optional[Actor]) -> SaleResult:
        self._enter(IntakeState.VALIDATING, "consumer", intake)
        self.auth.require_action(actor, "create_customer_sale")
        self._validate_consumer(intake)
        self.auth.require_dealer_scope(actor, intake.dealer_id)
        product = self._require_product(intake.product_id)
        self._require_dealer(intake.dealer_id)

        customer = self._resolve_customer(intake)
        self._enter(IntakeState.CUSTOMER_RESOLVED, "consumer", intake)

        qty = int(intake.quantity)
        with self.gate.hold((int(intake.dealer_id), int(intake.product_id))):
            available = retry_call(
                lambda: self.stock.sellable(intake.dealer_id, intake.product_id, intake.batch_number),
                self.policy,
                op="stock_available",
            )
            if available < qty:
                raise InsufficientStockError(f"Not enough stock for product {intake.product_id}. Available: {available}")
            self._enter(IntakeState.STOCK_CHECKED, "consumer", intake)

            sale = self.sales.append(
                product_id=intake.product_id,
                dealer_id=intake.dealer_id,
                company_id=product.company_id,
                customer_id=customer.id,
                quantity=qty,
                warranty_till=intake.warranty_till,
                batch_number=intake.batch_number,
                created_by=actor.id,
            )
            self._enter(IntakeState.SALE_CREATED, "consumer", intake, sale_id=sale.id)

            return self._settle(
                sale,
                -qty,
                lambda: self.stock.apply_delta_with_retry(
                    intake.dealer_id, intake.product_id, -qty, batch=intake.batch_number, policy=self.policy
                ),
                customer=customer,
            )

    # ---------- dealer-supply flow ----------
    def create_supply_sale(self, intake: SupplyIntake, actor: Optional[Actor]) -> SaleResult:
        self._enter(IntakeState.VALIDATING, "supply", intake)
        self.auth.require_action(actor, "create_dealer_sale")
        self._validate_supply(intake)
        product = self._require_product(intake.product_id)
        self._require_dealer(intake.dealer_id)
        self.auth.require_company_scope(actor, product.company_id)

        batch = intake.batch_number.strip()
        qty = int(intake.quantity)
        sale = self.sales.append(
            product_id=intake.product_id,
            dealer_id=intake.dealer_id,
            company_id=product.company_id,
            customer_id=None,
            quantity=qty,
            warranty_till=intake.warranty_till,
            batch_number=batch,
            created_by=actor.id,
        )
        self._enter(IntakeState.SALE_CREATED, "supply", intake, sale_id=sale.id)

        return self._settle(
            sale,
            qty,
            lambda: self.stock.create_or_increment_with_retry(
                intake.dealer_id, intake.product_id, batch, qty, policy=self.policy
            ).quantity,
        )

    # ---------- steps ----------
    def _settle(
        self,
        sale: Sale,
        delta: int,
        apply: Callable[[], int],
        customer: Optional[Customer] = None,
    ) -> SaleResult:
        try:
            after = apply()
        except AppError as e:
            return self._reconcile_later(sale, delta, e, customer)
        log.info("sale_reconciled sale_id=%s delta=%s stock_after=%s", sale.id, delta, after)
        return SaleResult(
            sale=sale,
            reconciled=True,
            state=IntakeState.STOCK_RECONCILED,
            stock_after=int(after),
            customer=customer,
        )

    def _reconcile_later(
        self, sale: Sale, delta: int, error: AppError, customer: Optional[Customer]
    ) -> SaleResult:
        reason = reason_for(error)
        warning = (
            f"Sale #{sale.id} was created but the stock update did not apply ({reason}). "
            "It was logged for reconciliation; please check the dealer stock."
        )
        entry_id = None
        try:
            entry = self.reconciliation.record(
                sale.id, delta, reason, sale.dealer_id, sale.product_id, sale.batch_number
            )
            entry_id = entry.id
        except AppError as log_error:
            log.error(
                "reconciliation_record_failed sale_id=%s delta=%s error=%s", sale.id, delta, log_error, exc_info=True
            )
            warning = (
                f"Sale #{sale.id} was created but the stock update did not apply ({reason}) "
                "and could not be logged for reconciliation. Update the stock manually."
            )
        log.warning("sale_unreconciled sale_id=%s delta=%s reason=%s error=%s", sale.id, delta, reason, error)
        return SaleResult(
            sale=sale,
            reconciled=False,
            state=IntakeState.STOCK_RECONCILE_FAILED,
            warning=warning,
            customer=customer,
            reconciliation_entry_id=entry_id,
        )

    def _resolve_customer(self, intake: SaleIntake) -> Customer:
        if intake.customer_id is not None:
            return self.customers.get(intake.customer_id)
        return self.customers.resolve_or_create(intake.customer_contact, intake.customer_name)

    def _require_product(self, product_id: int) -> Product:
        product = retry_call(lambda: self.api.get_product(int(product_id)), self.policy, op="get_product")
        if not product:
            raise NotFoundError("Product not found.")
        return product

    def _require_dealer(self, dealer_id: int) -> Dealer:
        dealer = retry_call(lambda: self.api.get_dealer(int(dealer_id)), self.policy, op="get_dealer")
        if not dealer:
            raise NotFoundError("Dealer not found.")
        return dealer

    @staticmethod
    def _validate_common(product_id, dealer_id, quantity, warranty_till) -> None:
        checks = [
            (product_id, 1, "Product is required."),
            (dealer_id, 1, "Dealer is required."),
            (quantity, 1, "Quantity must be at least 1."),
            (warranty_till, 1, "Warranty must be at least 1 day."),
        ]
        for value, minimum, message in checks:
            try:
                ok = value is not None and int(value) >= minimum
            except (TypeError, ValueError):
                ok = False
            if not ok:
                raise ValidationError(message)

    def _validate_consumer(self, intake: SaleIntake) -> None:
        self._validate_common(intake.product_id, intake.dealer_id, intake.quantity, intake.warranty_till)
        has_contact = bool((intake.customer_contact or "").strip())
        if has_contact == (intake.customer_id is not None):
            raise ValidationError("Provide either a customer contact or a customer id.")
        if has_contact:
            normalize_contact(intake.customer_contact)
        if intake.batch_number is not None and not intake.batch_number.strip():
            raise ValidationError("Batch number must not be blank.")

    def _validate_supply(self, intake: SupplyIntake) -> None:
        self._validate_common(intake.product_id, intake.dealer_id, intake.quantity, intake.warranty_till)
        if not (intake.batch_number or "").strip():
            raise ValidationError("Batch number is required.")

    @staticmethod
    def _enter(state: IntakeState, flow: str, intake, **ctx) -> None:
        log.debug(
            "intake_state flow=%s state=%s product=%s dealer=%s %s",
            flow, state.value, intake.product_id, intake.dealer_id,
            " ".join(f"{k}={v}" for k, v in ctx.items()),
        )
