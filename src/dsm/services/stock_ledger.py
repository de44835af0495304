from __future__ import annotations

import logging
from typing import Callable, Optional

from dsm.domain.errors import ConflictError, InsufficientStockError, NotFoundError, TransientIOError, ValidationError
from dsm.domain.models import STOCK_ACTIVE, StockEntry
from dsm.repositories.contracts import SalesApi
from dsm.services.retry import RetryPolicy, retry_call

log = logging.getLogger("dsm.stock")


class StockLedger:
    """Per (dealer, product, batch) quantity counters.

    Every write is one conditional update against the entry version read just
    before it. A version mismatch raises ``ConflictError`` and the caller
    decides whether to retry with a fresh read; a write that would leave the
    counter below zero raises ``InsufficientStockError`` and is never retried.

    With ``batch=None`` reads cover all ACTIVE entries of the product and a
    decrement is taken from the oldest ACTIVE entry that can cover it, so
    ``sellable`` (the largest ACTIVE entry) is what one unbatched sale can take.

    The ``*_with_retry`` variants re-read and retry after a conflict. After a
    transient failure the write is repeated with the same expected version,
    since the first attempt may have committed without a response.
    """

    def __init__(self, api: SalesApi, policy: RetryPolicy | None = None):
        self.api = api
        self.policy = policy or RetryPolicy()

    def entry(self, dealer_id: int, product_id: int, batch: Optional[str] = None) -> Optional[StockEntry]:
        return self.api.get_stock(int(dealer_id), int(product_id), batch)

    def list_for_dealer(self, dealer_id: int, product_id: Optional[int] = None) -> list[StockEntry]:
        return self.api.list_stock(int(dealer_id), product_id)

    def _active(self, dealer_id: int, product_id: int) -> list[StockEntry]:
        return [e for e in self.list_for_dealer(dealer_id, product_id) if e.status == STOCK_ACTIVE]

    def available(self, dealer_id: int, product_id: int, batch: Optional[str] = None) -> int:
        if batch:
            e = self.entry(dealer_id, product_id, batch)
            return int(e.quantity) if e and e.status == STOCK_ACTIVE else 0
        return sum(int(e.quantity) for e in self._active(dealer_id, product_id))

    def sellable(self, dealer_id: int, product_id: int, batch: Optional[str] = None) -> int:
        """Largest quantity a single decrement can take."""
        if batch:
            return self.available(dealer_id, product_id, batch)
        return max((int(e.quantity) for e in self._active(dealer_id, product_id)), default=0)

    def _target(self, dealer_id: int, product_id: int, batch: Optional[str], need: int) -> Optional[StockEntry]:
        if batch:
            return self.entry(dealer_id, product_id, batch)
        active = self._active(dealer_id, product_id)
        if not active:
            return None
        for e in active:
            if e.quantity >= need:
                return e
        return max(active, key=lambda e: e.quantity)

    def _checked_target(self, dealer_id: int, product_id: int, delta: int, batch: Optional[str]) -> StockEntry:
        if delta == 0:
            raise ValidationError("Stock delta must not be zero.")
        target = self._target(dealer_id, product_id, batch, max(0, -delta))
        if target is None:
            if delta < 0:
                raise InsufficientStockError(f"No stock for product {product_id} at dealer {dealer_id}.")
            raise NotFoundError("Stock entry not found.")
        if delta < 0 and target.status != STOCK_ACTIVE:
            raise InsufficientStockError(f"Stock entry {target.id} is inactive.")
        if target.quantity + delta < 0:
            raise InsufficientStockError(f"Not enough stock for product {product_id}. Available: {target.quantity}")
        return target

    @staticmethod
    def _log_delta(dealer_id, product_id, target: StockEntry, delta: int, updated: StockEntry) -> None:
        log.info(
            "stock_delta_applied dealer=%s product=%s batch=%s delta=%s before=%s after=%s",
            dealer_id, product_id, target.batch_number, delta, target.quantity, updated.quantity,
        )

    def apply_delta(self, dealer_id: int, product_id: int, delta: int, batch: Optional[str] = None) -> int:
        delta = int(delta)
        target = self._checked_target(dealer_id, product_id, delta, batch)
        updated = self.api.apply_stock_delta(
            int(dealer_id), int(product_id), target.batch_number, delta, target.version
        )
        self._log_delta(dealer_id, product_id, target, delta, updated)
        return int(updated.quantity)

    def create_or_increment(self, dealer_id: int, product_id: int, batch: Optional[str], amount: int) -> StockEntry:
        amount = int(amount)
        if amount <= 0:
            raise ValidationError("Amount must be >= 1.")
        existing = self.entry(dealer_id, product_id, batch)
        entry = self.api.create_or_increment_stock(
            int(dealer_id),
            int(product_id),
            batch,
            amount,
            existing.version if existing else None,
        )
        self._log_increment(dealer_id, product_id, batch, amount, existing, entry)
        return entry

    @staticmethod
    def _log_increment(dealer_id, product_id, batch, amount, existing: Optional[StockEntry], entry: StockEntry) -> None:
        log.info(
            "stock_%s dealer=%s product=%s batch=%s amount=%s after=%s",
            "incremented" if existing else "created", dealer_id, product_id, batch, amount, entry.quantity,
        )

    def _confirmed_write(
        self,
        write: Callable[[], StockEntry],
        dealer_id: int,
        product_id: int,
        batch: Optional[str],
        before: Optional[StockEntry],
        delta: int,
        policy: RetryPolicy,
        op: str,
    ) -> StockEntry:
        """Sends one conditional write, repeating it unchanged after transient failures.

        A repeat that conflicts means the entry moved. If it moved by exactly
        this write (one version, ``delta`` units) the earlier attempt committed
        and its result is returned. Any other movement cannot be attributed and
        raises ``TransientIOError``; the caller must not apply the delta again.
        """
        attempts = max(1, int(policy.max_attempts))
        unanswered = False
        for attempt in range(1, attempts + 1):
            try:
                return write()
            except TransientIOError as e:
                if attempt >= attempts:
                    log.warning("stock_write_unconfirmed op=%s attempts=%s error=%s", op, attempt, e)
                    raise
                unanswered = True
                delay = policy.delay_for(attempt)
                log.info("repeating op=%s attempt=%s delay=%.3f error=%s", op, attempt, delay, e)
                policy.sleep(delay)
            except ConflictError:
                if not unanswered:
                    raise
                current = retry_call(lambda: self.entry(dealer_id, product_id, batch), policy, op="stock_entry")
                if self._is_own_write(before, current, delta):
                    log.info("stock_write_confirmed op=%s dealer=%s product=%s batch=%s", op, dealer_id, product_id, batch)
                    return current
                log.warning(
                    "stock_write_ambiguous op=%s dealer=%s product=%s batch=%s delta=%s",
                    op, dealer_id, product_id, batch, delta,
                )
                raise TransientIOError(
                    f"Stock write for product {product_id} at dealer {dealer_id} lost its response "
                    "and the entry changed since; the outcome is unknown."
                )
        raise AssertionError("unreachable")

    @staticmethod
    def _is_own_write(before: Optional[StockEntry], current: Optional[StockEntry], delta: int) -> bool:
        if current is None:
            return False
        if before is None:
            return current.version == 1 and current.quantity == delta
        return current.version == before.version + 1 and current.quantity == before.quantity + delta

    def apply_delta_with_retry(
        self, dealer_id: int, product_id: int, delta: int, batch: Optional[str] = None, policy: RetryPolicy | None = None
    ) -> int:
        policy = policy or self.policy
        delta = int(delta)

        def attempt() -> int:
            target = retry_call(
                lambda: self._checked_target(dealer_id, product_id, delta, batch), policy, op="stock_target"
            )
            updated = self._confirmed_write(
                lambda: self.api.apply_stock_delta(
                    int(dealer_id), int(product_id), target.batch_number, delta, target.version
                ),
                dealer_id, product_id, target.batch_number, target, delta, policy, op="apply_stock_delta",
            )
            self._log_delta(dealer_id, product_id, target, delta, updated)
            return int(updated.quantity)

        return retry_call(attempt, policy, op="apply_stock_delta", retry_on=(ConflictError,))

    def create_or_increment_with_retry(
        self, dealer_id: int, product_id: int, batch: Optional[str], amount: int, policy: RetryPolicy | None = None
    ) -> StockEntry:
        policy = policy or self.policy
        amount = int(amount)
        if amount <= 0:
            raise ValidationError("Amount must be >= 1.")

        def attempt() -> StockEntry:
            existing = retry_call(lambda: self.entry(dealer_id, product_id, batch), policy, op="stock_entry")
            entry = self._confirmed_write(
                lambda: self.api.create_or_increment_stock(
                    int(dealer_id), int(product_id), batch, amount, existing.version if existing else None
                ),
                dealer_id, product_id, batch, existing, amount, policy, op="create_or_increment_stock",
            )
            self._log_increment(dealer_id, product_id, batch, amount, existing, entry)
            return entry

        return retry_call(attempt, policy, op="create_or_increment_stock", retry_on=(ConflictError,))
