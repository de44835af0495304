from __future__ import annotations

import json
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from dsm.domain.errors import ConflictError, InsufficientStockError, NotFoundError, TransientIOError
from dsm.domain.models import (
    CUSTOMER_ROLE,
    STOCK_ACTIVE,
    Customer,
    Dealer,
    Product,
    ReconciliationEntry,
    Sale,
    StockEntry,
)


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def _batch_key(batch_number: Optional[str]) -> str:
    return (batch_number or "").strip()


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class SqliteRepository:
    """Local implementation of the sales data layer.

    Each call opens its own connection, so the repository is safe to share
    between threads. Lock contention beyond ``timeout`` seconds surfaces as
    ``TransientIOError``.
    """

    def __init__(self, db_path: Path | str, timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = float(timeout)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        conn = self._conn()
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            if _is_busy(exc):
                raise TransientIOError(f"Database busy: {exc}") from exc
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_base),
                (2, self._migration_v2_append_only_sales),
                (3, self._migration_v3_reconciliation),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                company_id INTEGER NOT NULL,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS dealers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                company_id INTEGER NOT NULL,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS customers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                contact TEXT NOT NULL UNIQUE,
                address TEXT,
                email TEXT,
                role TEXT NOT NULL DEFAULT 'USER',
                flags TEXT,
                created_at TEXT NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dealer_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                batch_number TEXT NOT NULL DEFAULT '',
                quantity INTEGER NOT NULL CHECK(quantity >= 0),
                status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK(status IN ('ACTIVE','INACTIVE')),
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(dealer_id) REFERENCES dealers(id),
                FOREIGN KEY(product_id) REFERENCES products(id),
                UNIQUE(dealer_id, product_id, batch_number)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sales (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                product_id INTEGER NOT NULL,
                dealer_id INTEGER NOT NULL,
                company_id INTEGER NOT NULL,
                customer_id INTEGER,
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                batch_number TEXT,
                warranty_till INTEGER NOT NULL CHECK(warranty_till >= 1),
                created_by INTEGER,
                created_at TEXT NOT NULL,
                FOREIGN KEY(product_id) REFERENCES products(id),
                FOREIGN KEY(dealer_id) REFERENCES dealers(id),
                FOREIGN KEY(customer_id) REFERENCES customers(id)
            )
            """
        )

    def _migration_v2_append_only_sales(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS sales_no_update
            BEFORE UPDATE ON sales
            BEGIN
                SELECT RAISE(ABORT, 'sales are append-only');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS sales_no_delete
            BEFORE DELETE ON sales
            BEGIN
                SELECT RAISE(ABORT, 'sales are append-only');
            END
            """
        )

    def _migration_v3_reconciliation(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS reconciliation_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sale_id INTEGER NOT NULL,
                dealer_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                batch_number TEXT,
                expected_delta INTEGER NOT NULL CHECK(expected_delta != 0),
                reason TEXT NOT NULL,
                created_at TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0 CHECK(resolved IN (0,1)),
                resolved_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        # at most one open entry per sale
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_reconciliation_pending_sale
            ON reconciliation_entries(sale_id) WHERE resolved = 0
            """
        )

    # ---------- Reference data ----------
    def add_product(self, name: str, company_id: int) -> int:
        with self._cursor() as cur:
            cur.execute("INSERT INTO products (name, company_id) VALUES (?, ?)", (name, int(company_id)))
            return int(cur.lastrowid)

    def add_dealer(self, name: str, company_id: int) -> int:
        with self._cursor() as cur:
            cur.execute("INSERT INTO dealers (name, company_id) VALUES (?, ?)", (name, int(company_id)))
            return int(cur.lastrowid)

    def get_product(self, product_id: int) -> Optional[Product]:
        with self._cursor() as cur:
            cur.execute("SELECT id, name, company_id, active FROM products WHERE id=? AND active=1", (int(product_id),))
            r = cur.fetchone()
        if not r:
            return None
        return Product(id=int(r[0]), name=str(r[1]), company_id=int(r[2]), active=int(r[3]))

    def get_dealer(self, dealer_id: int) -> Optional[Dealer]:
        with self._cursor() as cur:
            cur.execute("SELECT id, name, company_id, active FROM dealers WHERE id=? AND active=1", (int(dealer_id),))
            r = cur.fetchone()
        if not r:
            return None
        return Dealer(id=int(r[0]), name=str(r[1]), company_id=int(r[2]), active=int(r[3]))

    # ---------- Customers ----------
    @staticmethod
    def _customer(r) -> Customer:
        return Customer(
            id=int(r[0]),
            name=str(r[1]),
            contact=str(r[2]),
            address=(r[3] if r[3] is not None else None),
            email=(r[4] if r[4] is not None else None),
            role=str(r[5]),
        )

    def search_customer(self, contact: str) -> Optional[Customer]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, name, contact, address, email, role FROM customers WHERE contact=?",
                (contact,),
            )
            r = cur.fetchone()
        return self._customer(r) if r else None

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, name, contact, address, email, role FROM customers WHERE id=?",
                (int(customer_id),),
            )
            r = cur.fetchone()
        return self._customer(r) if r else None

    def create_customer(self, name: str, contact: str, role: str = CUSTOMER_ROLE, flags: Optional[dict] = None) -> Customer:
        flags = dict(flags or {})
        with self._cursor() as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO customers (name, contact, address, email, role, flags, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        name,
                        contact,
                        flags.pop("address", None),
                        flags.pop("email", None),
                        role,
                        json.dumps(flags) if flags else None,
                        _now_iso(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"Customer with contact {contact} already exists.") from exc
            cur.execute(
                "SELECT id, name, contact, address, email, role FROM customers WHERE id=?",
                (int(cur.lastrowid),),
            )
            return self._customer(cur.fetchone())

    # ---------- Stock ----------
    _STOCK_COLUMNS = "id, dealer_id, product_id, batch_number, quantity, status, version"

    @staticmethod
    def _stock(r) -> StockEntry:
        return StockEntry(
            id=int(r[0]),
            dealer_id=int(r[1]),
            product_id=int(r[2]),
            batch_number=(str(r[3]) or None),
            quantity=int(r[4]),
            status=str(r[5]),
            version=int(r[6]),
        )

    def _stock_row(self, cur: sqlite3.Cursor, dealer_id: int, product_id: int, batch: str):
        cur.execute(
            f"""
            SELECT {self._STOCK_COLUMNS}
            FROM stock_entries
            WHERE dealer_id=? AND product_id=? AND batch_number=?
            """,
            (int(dealer_id), int(product_id), batch),
        )
        return cur.fetchone()

    def get_stock(self, dealer_id: int, product_id: int, batch_number: Optional[str] = None) -> Optional[StockEntry]:
        with self._cursor() as cur:
            r = self._stock_row(cur, dealer_id, product_id, _batch_key(batch_number))
        return self._stock(r) if r else None

    def list_stock(self, dealer_id: int, product_id: Optional[int] = None) -> list[StockEntry]:
        with self._cursor() as cur:
            if product_id is None:
                cur.execute(
                    f"SELECT {self._STOCK_COLUMNS} FROM stock_entries WHERE dealer_id=? ORDER BY product_id, id",
                    (int(dealer_id),),
                )
            else:
                cur.execute(
                    f"SELECT {self._STOCK_COLUMNS} FROM stock_entries WHERE dealer_id=? AND product_id=? ORDER BY id",
                    (int(dealer_id), int(product_id)),
                )
            rows = cur.fetchall()
        return [self._stock(r) for r in rows]

    def apply_stock_delta(
        self, dealer_id: int, product_id: int, batch_number: Optional[str], delta: int, expected_version: int
    ) -> StockEntry:
        batch = _batch_key(batch_number)
        with self._cursor() as cur:
            try:
                cur.execute(
                    """
                    UPDATE stock_entries
                    SET quantity = quantity + ?, version = version + 1, updated_at = ?
                    WHERE dealer_id=? AND product_id=? AND batch_number=? AND version=?
                    """,
                    (int(delta), _now_iso(), int(dealer_id), int(product_id), batch, int(expected_version)),
                )
            except sqlite3.IntegrityError as exc:
                raise InsufficientStockError(
                    f"Delta {delta} would make stock negative for dealer {dealer_id}, product {product_id}."
                ) from exc
            if cur.rowcount == 0:
                if self._stock_row(cur, dealer_id, product_id, batch) is None:
                    raise NotFoundError("Stock entry not found.")
                raise ConflictError(f"Stock entry changed since version {expected_version}.")
            return self._stock(self._stock_row(cur, dealer_id, product_id, batch))

    def create_or_increment_stock(
        self, dealer_id: int, product_id: int, batch_number: Optional[str], amount: int, expected_version: Optional[int]
    ) -> StockEntry:
        batch = _batch_key(batch_number)
        with self._cursor() as cur:
            if expected_version is None:
                try:
                    cur.execute(
                        """
                        INSERT INTO stock_entries (dealer_id, product_id, batch_number, quantity, status, version, updated_at)
                        VALUES (?, ?, ?, ?, ?, 1, ?)
                        """,
                        (int(dealer_id), int(product_id), batch, int(amount), STOCK_ACTIVE, _now_iso()),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConflictError("Stock entry was created concurrently.") from exc
            else:
                cur.execute(
                    """
                    UPDATE stock_entries
                    SET quantity = quantity + ?, status = ?, version = version + 1, updated_at = ?
                    WHERE dealer_id=? AND product_id=? AND batch_number=? AND version=?
                    """,
                    (int(amount), STOCK_ACTIVE, _now_iso(), int(dealer_id), int(product_id), batch, int(expected_version)),
                )
                if cur.rowcount == 0:
                    raise ConflictError(f"Stock entry changed since version {expected_version}.")
            return self._stock(self._stock_row(cur, dealer_id, product_id, batch))

    def set_stock_status(self, dealer_id: int, product_id: int, batch_number: Optional[str], status: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE stock_entries
                SET status = ?, version = version + 1, updated_at = ?
                WHERE dealer_id=? AND product_id=? AND batch_number=?
                """,
                (status, _now_iso(), int(dealer_id), int(product_id), _batch_key(batch_number)),
            )
            return cur.rowcount > 0

    # ---------- Sales ----------
    _SALE_COLUMNS = (
        "id, product_id, dealer_id, company_id, customer_id, quantity, batch_number, warranty_till, created_by, created_at"
    )

    @staticmethod
    def _sale(r) -> Sale:
        return Sale(
            id=int(r[0]),
            product_id=int(r[1]),
            dealer_id=int(r[2]),
            company_id=int(r[3]),
            customer_id=(int(r[4]) if r[4] is not None else None),
            quantity=int(r[5]),
            batch_number=(r[6] if r[6] else None),
            warranty_till=int(r[7]),
            created_by=(int(r[8]) if r[8] is not None else None),
            created_at=str(r[9]),
        )

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
    ) -> Sale:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO sales (
                    product_id, dealer_id, company_id, customer_id, quantity,
                    batch_number, warranty_till, created_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(product_id),
                    int(dealer_id),
                    int(company_id),
                    customer_id,
                    int(quantity),
                    batch_number,
                    int(warranty_till),
                    created_by,
                    _now_iso(),
                ),
            )
            cur.execute(f"SELECT {self._SALE_COLUMNS} FROM sales WHERE id=?", (int(cur.lastrowid),))
            return self._sale(cur.fetchone())

    def get_sale(self, sale_id: int) -> Optional[Sale]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {self._SALE_COLUMNS} FROM sales WHERE id=?", (int(sale_id),))
            r = cur.fetchone()
        return self._sale(r) if r else None

    def list_sales(self, dealer_id: Optional[int] = None) -> list[Sale]:
        with self._cursor() as cur:
            if dealer_id is None:
                cur.execute(f"SELECT {self._SALE_COLUMNS} FROM sales ORDER BY id")
            else:
                cur.execute(f"SELECT {self._SALE_COLUMNS} FROM sales WHERE dealer_id=? ORDER BY id", (int(dealer_id),))
            rows = cur.fetchall()
        return [self._sale(r) for r in rows]

    # ---------- Reconciliation ----------
    _RECON_COLUMNS = (
        "id, sale_id, dealer_id, product_id, batch_number, expected_delta, reason, "
        "created_at, resolved, resolved_at, attempts"
    )

    @staticmethod
    def _recon(r) -> ReconciliationEntry:
        return ReconciliationEntry(
            id=int(r[0]),
            sale_id=int(r[1]),
            dealer_id=int(r[2]),
            product_id=int(r[3]),
            batch_number=(r[4] if r[4] else None),
            expected_delta=int(r[5]),
            reason=str(r[6]),
            created_at=str(r[7]),
            resolved=int(r[8]),
            resolved_at=(r[9] if r[9] is not None else None),
            attempts=int(r[10]),
        )

    def add_reconciliation_entry(
        self,
        sale_id: int,
        dealer_id: int,
        product_id: int,
        batch_number: Optional[str],
        expected_delta: int,
        reason: str,
    ) -> ReconciliationEntry:
        with self._cursor() as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO reconciliation_entries (
                        sale_id, dealer_id, product_id, batch_number, expected_delta, reason, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (int(sale_id), int(dealer_id), int(product_id), batch_number, int(expected_delta), reason, _now_iso()),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"Sale {sale_id} already has a pending reconciliation entry.") from exc
            cur.execute(f"SELECT {self._RECON_COLUMNS} FROM reconciliation_entries WHERE id=?", (int(cur.lastrowid),))
            return self._recon(cur.fetchone())

    def get_reconciliation_entry(self, entry_id: int) -> Optional[ReconciliationEntry]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {self._RECON_COLUMNS} FROM reconciliation_entries WHERE id=?", (int(entry_id),))
            r = cur.fetchone()
        return self._recon(r) if r else None

    def pending_reconciliation_for_sale(self, sale_id: int) -> Optional[ReconciliationEntry]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {self._RECON_COLUMNS} FROM reconciliation_entries WHERE sale_id=? AND resolved=0",
                (int(sale_id),),
            )
            r = cur.fetchone()
        return self._recon(r) if r else None

    def list_pending_reconciliation(self) -> list[ReconciliationEntry]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {self._RECON_COLUMNS} FROM reconciliation_entries WHERE resolved=0 ORDER BY created_at, id"
            )
            rows = cur.fetchall()
        return [self._recon(r) for r in rows]

    def mark_reconciliation_resolved(self, entry_id: int) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE reconciliation_entries SET resolved=1, resolved_at=? WHERE id=? AND resolved=0",
                (_now_iso(), int(entry_id)),
            )
            return cur.rowcount > 0

    def bump_reconciliation_attempts(self, entry_id: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE reconciliation_entries SET attempts = attempts + 1 WHERE id=?",
                (int(entry_id),),
            )

