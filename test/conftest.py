import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def no_sleep(_seconds: float) -> None:
    return None


def fast_policy(max_attempts: int = 3):
    from dsm.services.retry import RetryPolicy

    return RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, sleep=no_sleep)


def seed(repo, stock=None, batch=None, company_id: int = 1):
    """Creates one product and one dealer; optionally puts `stock` units on hand."""
    product_id = repo.add_product("Inverter 1kVA", company_id)
    dealer_id = repo.add_dealer("Dealer D", company_id)
    if stock is not None:
        repo.create_or_increment_stock(dealer_id, product_id, batch, stock, None)
    return product_id, dealer_id


def make_coordinator(repo, policy=None, recon_store=None):
    from dsm.services.customer_resolver import CustomerResolver
    from dsm.services.reconciliation_log import ReconciliationLog
    from dsm.services.sale_intake import SaleIntakeCoordinator
    from dsm.services.sale_record_store import SaleRecordStore
    from dsm.services.stock_ledger import StockLedger

    policy = policy or fast_policy()
    return SaleIntakeCoordinator(
        repo,
        CustomerResolver(repo, policy=policy),
        StockLedger(repo, policy=policy),
        SaleRecordStore(repo),
        ReconciliationLog(recon_store or repo),
        policy=policy,
    )


def count_rows(repo, table: str) -> int:
    conn = repo._conn()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(*) FROM {table}")
    n = int(cur.fetchone()[0])
    conn.close()
    return n
