from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from dsm.config import IntakeSettings
from dsm.repositories.contracts import SalesApi
from dsm.repositories.http_api import HttpSalesApi
from dsm.repositories.sqlite_repo import SqliteRepository
from dsm.services.auth_service import AuthService
from dsm.services.customer_resolver import CustomerResolver
from dsm.services.reconciliation_log import ReconciliationLog
from dsm.services.retry import RetryPolicy
from dsm.services.sale_intake import KeyedGate, SaleIntakeCoordinator
from dsm.services.sale_record_store import SaleRecordStore
from dsm.services.stock_ledger import StockLedger


@dataclass(frozen=True)
class AppContainer:
    settings: IntakeSettings
    store: SqliteRepository
    api: SalesApi
    policy: RetryPolicy
    auth: AuthService
    customers: CustomerResolver
    stock: StockLedger
    sales: SaleRecordStore
    reconciliation: ReconciliationLog
    coordinator: SaleIntakeCoordinator


def build_container(
    db_path: Path | str,
    settings: IntakeSettings | None = None,
    session: Optional[requests.Session] = None,
) -> AppContainer:
    settings = settings or IntakeSettings()

    # the reconciliation log always lives in the local store
    store = SqliteRepository(db_path, timeout=settings.db_timeout)
    store.init_db()

    api: SalesApi
    if settings.api_url:
        api = HttpSalesApi(settings.api_url, token=settings.api_token, timeout=settings.api_timeout, session=session)
    else:
        api = store

    policy = RetryPolicy(max_attempts=settings.stock_retry_attempts, base_delay=settings.stock_retry_base_delay)
    auth = AuthService()
    customers = CustomerResolver(api, policy=policy, zone_id=settings.customer_zone_id)
    stock = StockLedger(api, policy=policy)
    sales = SaleRecordStore(api)
    reconciliation = ReconciliationLog(store)
    coordinator = SaleIntakeCoordinator(
        api,
        customers,
        stock,
        sales,
        reconciliation,
        policy=policy,
        auth=auth,
        gate=KeyedGate(timeout=settings.stock_lock_timeout),
    )

    return AppContainer(
        settings=settings,
        store=store,
        api=api,
        policy=policy,
        auth=auth,
        customers=customers,
        stock=stock,
        sales=sales,
        reconciliation=reconciliation,
        coordinator=coordinator,
    )
