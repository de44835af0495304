from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from dsm.domain.errors import (
    AppError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from dsm.domain.models import ReconciliationEntry
from dsm.repositories.contracts import ReconciliationStore
from dsm.services.retry import RetryPolicy

log = logging.getLogger("dsm.reconciliation")

REASON_CONFLICT = "conflict"
REASON_TRANSIENT_IO = "transient_io"
REASON_INSUFFICIENT_STOCK = "insufficient_stock"
REASON_NOT_FOUND = "not_found"
REASON_ERROR = "error"


def reason_for(exc: BaseException) -> str:
    if isinstance(exc, ConflictError):
        return REASON_CONFLICT
    if isinstance(exc, TransientIOError):
        return REASON_TRANSIENT_IO
    if isinstance(exc, InsufficientStockError):
        return REASON_INSUFFICIENT_STOCK
    if isinstance(exc, NotFoundError):
        return REASON_NOT_FOUND
    return REASON_ERROR


@dataclass
class ReconciliationSweep:
    resolved: list[int] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)


class ReconciliationLog:
    """Audit trail of sales whose stock adjustment did not apply.

    At most one unresolved entry exists per sale; recording again for the
    same sale returns the open entry.
    """

    def __init__(self, store: ReconciliationStore):
        self.store = store

    def record(
        self,
        sale_id: int,
        expected_delta: int,
        reason: str,
        dealer_id: int,
        product_id: int,
        batch_number: Optional[str] = None,
    ) -> ReconciliationEntry:
        if int(expected_delta) == 0:
            raise ValidationError("Expected delta must not be zero.")
        existing = self.store.pending_reconciliation_for_sale(int(sale_id))
        if existing:
            return existing
        try:
            entry = self.store.add_reconciliation_entry(
                int(sale_id), int(dealer_id), int(product_id), batch_number, int(expected_delta), reason
            )
        except ConflictError:
            existing = self.store.pending_reconciliation_for_sale(int(sale_id))
            if existing is None:
                raise
            return existing
        log.warning(
            "reconciliation_recorded entry_id=%s sale_id=%s delta=%s reason=%s",
            entry.id, entry.sale_id, entry.expected_delta, entry.reason,
        )
        return entry

    def get(self, entry_id: int) -> ReconciliationEntry:
        entry = self.store.get_reconciliation_entry(int(entry_id))
        if not entry:
            raise NotFoundError("Reconciliation entry not found.")
        return entry

    def pending_for_sale(self, sale_id: int) -> Optional[ReconciliationEntry]:
        return self.store.pending_reconciliation_for_sale(int(sale_id))

    def list_pending(self) -> list[ReconciliationEntry]:
        return self.store.list_pending_reconciliation()

    def resolve(self, entry_id: int) -> ReconciliationEntry:
        entry = self.get(entry_id)
        if entry.resolved:
            return entry
        if self.store.mark_reconciliation_resolved(entry.id):
            log.info("reconciliation_resolved entry_id=%s sale_id=%s", entry.id, entry.sale_id)
        return self.get(entry.id)

    def retry_pending(self, stock_ledger, policy: RetryPolicy | None = None) -> ReconciliationSweep:
        """Re-apply every pending delta and resolve the entries that succeed."""
        sweep = ReconciliationSweep()
        for entry in self.list_pending():
            try:
                if entry.expected_delta < 0:
                    stock_ledger.apply_delta_with_retry(
                        entry.dealer_id, entry.product_id, entry.expected_delta, batch=entry.batch_number, policy=policy
                    )
                else:
                    stock_ledger.create_or_increment_with_retry(
                        entry.dealer_id, entry.product_id, entry.batch_number, entry.expected_delta, policy=policy
                    )
            except AppError as e:
                self.store.bump_reconciliation_attempts(entry.id)
                sweep.failed.append((entry.id, reason_for(e)))
                log.warning("reconciliation_retry_failed entry_id=%s sale_id=%s error=%s", entry.id, entry.sale_id, e)
                continue
            self.resolve(entry.id)
            sweep.resolved.append(entry.id)
        log.info("reconciliation_sweep resolved=%s failed=%s", len(sweep.resolved), len(sweep.failed))
        return sweep

    def export_pending_excel(self, path: Path | str) -> Path:
        wb = Workbook()
        ws = wb.active
        ws.title = "Pending"

        headers = ["Entry", "Sale", "Dealer", "Product", "Batch", "Expected delta", "Reason", "Created", "Attempts"]
        ws.append(headers)
        for c in ws[1]:
            c.font = Font(bold=True)

        pending = self.list_pending()
        for e in pending:
            ws.append([
                e.id,
                e.sale_id,
                e.dealer_id,
                e.product_id,
                e.batch_number or "",
                e.expected_delta,
                e.reason,
                e.created_at,
                e.attempts,
            ])

        if pending:
            ref = f"A1:{get_column_letter(len(headers))}{len(pending) + 1}"
            tab = Table(displayName="PendingReconciliation", ref=ref)
            tab.tableStyleInfo = TableStyleInfo(
                name="TableStyleMedium9",
                showRowStripes=True,
                showColumnStripes=False,
            )
            ws.add_table(tab)

        for idx, width in enumerate([8, 8, 8, 8, 14, 14, 18, 20, 10], start=1):
            ws.column_dimensions[get_column_letter(idx)].width = width

        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        wb.save(out)
        log.info("reconciliation_exported path=%s rows=%s", out, len(pending))
        return out
