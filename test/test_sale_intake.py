import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from conftest import count_rows, fast_policy, make_coordinator, seed

from dsm.domain.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from dsm.domain.models import Actor, SaleIntake, SupplyIntake
from dsm.repositories.sqlite_repo import SqliteRepository
from dsm.services.sale_intake import IntakeState, KeyedGate
from dsm.services.stock_ledger import StockLedger

ADMIN = Actor(id=1, role="ADMIN")


def _setup(tmp_path: Path, repo_cls=SqliteRepository, stock=None, batch=None):
    repo = repo_cls(tmp_path / "intake.db")
    repo.init_db()
    pid, did = seed(repo, stock=stock, batch=batch)
    return repo, pid, did, make_coordinator(repo)


def _intake(pid, did, **kwargs):
    data = {"customer_contact": "9000000001", "customer_name": "Asha Rao", "warranty_till": 365}
    data.update(kwargs)
    return SaleIntake(product_id=pid, dealer_id=did, **data)


class StockWriteFails(SqliteRepository):
    """Stock writes raise `error` while `failing` is set."""

    def __init__(self, db_path, error=TransientIOError("stock update timed out")):
        super().__init__(db_path)
        self.error = error
        self.failing = False
        self.calls = 0

    def apply_stock_delta(self, *args, **kwargs):
        if self.failing:
            self.calls += 1
            raise self.error
        return super().apply_stock_delta(*args, **kwargs)

    def create_or_increment_stock(self, *args, **kwargs):
        if self.failing:
            self.calls += 1
            raise self.error
        return super().create_or_increment_stock(*args, **kwargs)


# ---------- consumer flow ----------
def test_sale_decrements_stock(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=5)

    result = coordinator.create_sale(_intake(pid, did), ADMIN)

    assert result.reconciled is True
    assert result.state == IntakeState.STOCK_RECONCILED
    assert result.warning is None
    assert result.stock_after == 4
    assert result.sale.company_id == 1
    assert result.sale.created_by == ADMIN.id
    assert StockLedger(repo).available(did, pid) == 4
    assert count_rows(repo, "sales") == 1


def test_sale_with_no_stock_creates_nothing(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=0)

    with pytest.raises(InsufficientStockError, match="Available: 0"):
        coordinator.create_sale(_intake(pid, did), ADMIN)

    assert count_rows(repo, "sales") == 0
    assert count_rows(repo, "reconciliation_entries") == 0


def test_sale_for_new_contact_creates_customer(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=2)
    assert repo.search_customer("9000000001") is None

    result = coordinator.create_sale(_intake(pid, did), ADMIN)

    customer = repo.search_customer("9000000001")
    assert customer is not None
    assert result.customer.id == customer.id
    assert result.sale.customer_id == customer.id


def test_sale_for_existing_customer_id(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=2)
    customer = repo.create_customer("Ravi", "9876543210")

    intake = _intake(pid, did, customer_contact=None, customer_name=None, customer_id=customer.id)
    result = coordinator.create_sale(intake, ADMIN)

    assert result.sale.customer_id == customer.id
    assert count_rows(repo, "customers") == 1


def test_unknown_customer_id_is_not_found(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=2)
    intake = _intake(pid, did, customer_contact=None, customer_name=None, customer_id=42)

    with pytest.raises(NotFoundError):
        coordinator.create_sale(intake, ADMIN)
    assert count_rows(repo, "sales") == 0


def test_batched_sale_uses_that_batch(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=3, batch="B-1")
    repo.create_or_increment_stock(did, pid, "B-2", 7, None)

    result = coordinator.create_sale(_intake(pid, did, batch_number="B-2", quantity=2), ADMIN)

    assert result.stock_after == 5
    assert result.sale.batch_number == "B-2"
    assert repo.get_stock(did, pid, "B-1").quantity == 3


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"quantity": 0}, "Quantity"),
        ({"warranty_till": 0}, "Warranty"),
        ({"customer_contact": "12345"}, "10 digits"),
        ({"customer_contact": None}, "either a customer contact or a customer id"),
        ({"customer_id": 3}, "either a customer contact or a customer id"),
        ({"batch_number": "  "}, "Batch"),
        ({"customer_name": None}, "name is required"),
    ],
)
def test_invalid_intake_leaves_no_sale(tmp_path: Path, overrides, message):
    repo, pid, did, coordinator = _setup(tmp_path, stock=5)

    with pytest.raises(ValidationError, match=message):
        coordinator.create_sale(_intake(pid, did, **overrides), ADMIN)

    assert count_rows(repo, "sales") == 0
    assert StockLedger(repo).available(did, pid) == 5


def test_unknown_product_is_not_found(tmp_path: Path):
    repo, _pid, did, coordinator = _setup(tmp_path, stock=5)

    with pytest.raises(NotFoundError, match="Product"):
        coordinator.create_sale(_intake(999, did), ADMIN)
    assert count_rows(repo, "sales") == 0


# ---------- degraded success ----------
def test_stock_timeout_after_sale_is_logged_for_reconciliation(tmp_path: Path, caplog):
    caplog.set_level(logging.WARNING, logger="dsm.sales")
    repo, pid, did, coordinator = _setup(tmp_path, StockWriteFails, stock=5)
    repo.failing = True

    result = coordinator.create_sale(_intake(pid, did), ADMIN)

    assert result.reconciled is False
    assert result.state == IntakeState.STOCK_RECONCILE_FAILED
    assert f"Sale #{result.sale.id}" in result.warning
    assert repo.get_sale(result.sale.id) is not None
    assert repo.calls == 3

    pending = coordinator.reconciliation.list_pending()
    assert len(pending) == 1
    entry = pending[0]
    assert entry.id == result.reconciliation_entry_id
    assert entry.sale_id == result.sale.id
    assert entry.expected_delta == -1
    assert entry.reason == "transient_io"
    assert "sale_unreconciled" in caplog.text

    # manual repair once the stock service is back
    repo.failing = False
    assert coordinator.stock.apply_delta(did, pid, entry.expected_delta) == 4
    resolved = coordinator.reconciliation.resolve(entry.id)
    assert resolved.resolved == 1
    assert resolved.resolved_at
    assert coordinator.reconciliation.list_pending() == []


def test_pending_entry_is_repaired_by_retry_sweep(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, StockWriteFails, stock=5)
    repo.failing = True
    result = coordinator.create_sale(_intake(pid, did, quantity=2), ADMIN)
    repo.failing = False

    sweep = coordinator.reconciliation.retry_pending(coordinator.stock, fast_policy())

    assert sweep.resolved == [result.reconciliation_entry_id]
    assert sweep.failed == []
    assert StockLedger(repo).available(did, pid) == 3


def test_exhausted_conflicts_are_recorded_as_conflict(tmp_path: Path):
    repo, pid, did, coordinator = _setup(
        tmp_path, lambda p: StockWriteFails(p, ConflictError("version moved")), stock=5
    )
    repo.failing = True

    result = coordinator.create_sale(_intake(pid, did), ADMIN)

    assert result.reconciled is False
    assert repo.calls == 3
    assert coordinator.reconciliation.pending_for_sale(result.sale.id).reason == "conflict"


def test_insufficient_stock_at_update_is_not_retried(tmp_path: Path):
    repo, pid, did, coordinator = _setup(
        tmp_path, lambda p: StockWriteFails(p, InsufficientStockError("sold elsewhere")), stock=5
    )
    repo.failing = True

    result = coordinator.create_sale(_intake(pid, did), ADMIN)

    assert result.reconciled is False
    assert repo.calls == 1
    assert coordinator.reconciliation.pending_for_sale(result.sale.id).reason == "insufficient_stock"


class SaleWriteFails(SqliteRepository):
    def create_sale(self, *args, **kwargs):
        raise TransientIOError("sales service unavailable")


def test_sale_persist_failure_propagates(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, SaleWriteFails, stock=5)

    with pytest.raises(TransientIOError):
        coordinator.create_sale(_intake(pid, did), ADMIN)

    assert count_rows(repo, "reconciliation_entries") == 0
    assert StockLedger(repo).available(did, pid) == 5


class ReconciliationWriteFails(SqliteRepository):
    def add_reconciliation_entry(self, *args, **kwargs):
        raise TransientIOError("disk full")


def test_reconciliation_write_failure_still_returns_sale(tmp_path: Path):
    repo = StockWriteFails(tmp_path / "intake.db")
    repo.init_db()
    pid, did = seed(repo, stock=5)
    recon_store = ReconciliationWriteFails(tmp_path / "intake.db")
    coordinator = make_coordinator(repo, recon_store=recon_store)
    repo.failing = True

    result = coordinator.create_sale(_intake(pid, did), ADMIN)

    assert result.reconciled is False
    assert result.reconciliation_entry_id is None
    assert "could not be logged" in result.warning
    assert count_rows(repo, "sales") == 1


# ---------- concurrency ----------
class SlowCheck(SqliteRepository):
    """Widens the window between the availability check and the stock write."""

    def list_stock(self, dealer_id, product_id=None):
        rows = super().list_stock(dealer_id, product_id)
        time.sleep(0.05)
        return rows


def test_last_unit_race_has_one_winner(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, SlowCheck, stock=1)
    customer = repo.create_customer("Ravi", "9876543210")
    intake = _intake(pid, did, customer_contact=None, customer_name=None, customer_id=customer.id)

    def sell():
        try:
            return coordinator.create_sale(intake, ADMIN)
        except InsufficientStockError as e:
            return e

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(lambda _: sell(), range(2)))

    wins = [o for o in outcomes if not isinstance(o, Exception)]
    losses = [o for o in outcomes if isinstance(o, InsufficientStockError)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert wins[0].reconciled is True
    assert wins[0].stock_after == 0
    assert count_rows(repo, "sales") == 1
    assert count_rows(repo, "reconciliation_entries") == 0


# ---------- dealer supply ----------
def test_supply_creates_new_batch_entry(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path)
    assert repo.get_stock(did, pid, "B-7") is None

    result = coordinator.create_supply_sale(
        SupplyIntake(product_id=pid, dealer_id=did, quantity=12, batch_number="B-7", warranty_till=730), ADMIN
    )

    assert result.reconciled is True
    assert result.stock_after == 12
    assert result.sale.customer_id is None
    assert result.sale.batch_number == "B-7"
    assert repo.get_stock(did, pid, "B-7").quantity == 12


def test_supply_increments_existing_batch(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=3, batch="B-7")

    result = coordinator.create_supply_sale(
        SupplyIntake(product_id=pid, dealer_id=did, quantity=2, batch_number="B-7", warranty_till=730), ADMIN
    )

    assert result.stock_after == 5
    assert repo.get_stock(did, pid, "B-7").version == 2


def test_supply_requires_batch(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path)

    with pytest.raises(ValidationError, match="Batch number is required"):
        coordinator.create_supply_sale(
            SupplyIntake(product_id=pid, dealer_id=did, quantity=2, batch_number=" ", warranty_till=730), ADMIN
        )
    assert count_rows(repo, "sales") == 0


def test_supply_stock_failure_records_positive_delta(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, StockWriteFails)
    repo.failing = True

    result = coordinator.create_supply_sale(
        SupplyIntake(product_id=pid, dealer_id=did, quantity=4, batch_number="B-9", warranty_till=730), ADMIN
    )

    entry = coordinator.reconciliation.pending_for_sale(result.sale.id)
    assert result.reconciled is False
    assert entry.expected_delta == 4
    assert entry.batch_number == "B-9"


# ---------- authorization ----------
def test_anonymous_actor_is_rejected(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=5)

    with pytest.raises(AuthorizationError, match="not authenticated"):
        coordinator.create_sale(_intake(pid, did), None)
    assert count_rows(repo, "sales") == 0


def test_dealer_cannot_record_supply(tmp_path: Path):
    _repo, pid, did, coordinator = _setup(tmp_path)
    dealer = Actor(id=5, role="DEALER", dealer_id=did)

    with pytest.raises(AuthorizationError):
        coordinator.create_supply_sale(
            SupplyIntake(product_id=pid, dealer_id=did, quantity=1, batch_number="B-1", warranty_till=30), dealer
        )


def test_dealer_sells_only_own_stock(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=5)

    with pytest.raises(AuthorizationError, match="own stock"):
        coordinator.create_sale(_intake(pid, did), Actor(id=5, role="DEALER", dealer_id=did + 100))

    result = coordinator.create_sale(_intake(pid, did), Actor(id=5, role="DEALER", dealer_id=did))
    assert result.reconciled is True
    assert count_rows(repo, "sales") == 1


def test_company_ships_only_own_products(tmp_path: Path):
    _repo, pid, did, coordinator = _setup(tmp_path)
    intake = SupplyIntake(product_id=pid, dealer_id=did, quantity=1, batch_number="B-1", warranty_till=30)

    with pytest.raises(AuthorizationError, match="own products"):
        coordinator.create_supply_sale(intake, Actor(id=9, role="COMPANY", company_id=2))

    result = coordinator.create_supply_sale(intake, Actor(id=9, role="COMPANY", company_id=1))
    assert result.reconciled is True


# ---------- lost responses and split batches ----------
class LostStockResponse(SqliteRepository):
    """The first stock write commits but its caller sees a timeout."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.lost = 1

    def _answer(self, entry):
        if self.lost:
            self.lost -= 1
            raise TransientIOError("gateway timeout")
        return entry

    def apply_stock_delta(self, *args, **kwargs):
        return self._answer(super().apply_stock_delta(*args, **kwargs))

    def create_or_increment_stock(self, *args, **kwargs):
        return self._answer(super().create_or_increment_stock(*args, **kwargs))


def test_sale_with_lost_stock_response_decrements_once(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, LostStockResponse, stock=5)

    result = coordinator.create_sale(_intake(pid, did), ADMIN)

    assert result.reconciled is True
    assert result.stock_after == 4
    assert repo.get_stock(did, pid).quantity == 4
    assert count_rows(repo, "reconciliation_entries") == 0


def test_supply_with_lost_stock_response_adds_once(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, LostStockResponse)

    result = coordinator.create_supply_sale(
        SupplyIntake(product_id=pid, dealer_id=did, quantity=10, batch_number="B-5", warranty_till=365), ADMIN
    )

    assert result.reconciled is True
    assert result.stock_after == 10
    assert repo.get_stock(did, pid, "B-5").quantity == 10


def test_unbatched_sale_larger_than_any_batch_is_refused_up_front(tmp_path: Path):
    repo, pid, did, coordinator = _setup(tmp_path, stock=2, batch="B-1")
    repo.create_or_increment_stock(did, pid, "B-2", 2, None)

    with pytest.raises(InsufficientStockError, match="Available: 2"):
        coordinator.create_sale(_intake(pid, did, quantity=3), ADMIN)
    assert count_rows(repo, "sales") == 0

    result = coordinator.create_sale(_intake(pid, did, quantity=2), ADMIN)
    assert result.reconciled is True
    assert StockLedger(repo).available(did, pid) == 2


# ---------- gate ----------
def test_gate_drops_idle_keys(tmp_path: Path):
    _repo, pid, did, coordinator = _setup(tmp_path, stock=5)

    coordinator.create_sale(_intake(pid, did), ADMIN)
    with pytest.raises(InsufficientStockError):
        coordinator.create_sale(_intake(pid, did, quantity=50), ADMIN)

    assert coordinator.gate.active_keys() == 0


def test_gate_wait_is_bounded():
    gate = KeyedGate(timeout=0.01)

    with gate.hold((1, 2)):
        with pytest.raises(ConflictError, match="Try again"):
            with gate.hold((1, 2)):
                pass
        with gate.hold((1, 3)):
            assert gate.active_keys() == 2

    assert gate.active_keys() == 0
