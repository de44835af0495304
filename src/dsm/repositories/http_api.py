from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from dsm.domain.errors import (
    AppError,
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from dsm.domain.models import CUSTOMER_ROLE, Customer, Dealer, Product, Sale, StockEntry

log = logging.getLogger("dsm.api")


SEARCH_CUSTOMER = """
query SearchUser($contact: String!) {
  searchUser(whereSearchInput: {contact1: $contact, role: USER}) {
    id name contact1 address email role
  }
}
"""

GET_CUSTOMER = """
query GetUserById($id: Int!) {
  getUserById(id: $id) { id name contact1 address email role }
}
"""

CREATE_CUSTOMER = """
mutation CreateUser($inputType: CreateUserInput!) {
  createUser(inputType: $inputType) { id name contact1 address email role }
}
"""

GET_PRODUCT = """
query GetProductById($id: Int!) {
  getProductById(id: $id) { id name company_id status }
}
"""

GET_DEALER = """
query GetDealerById($id: Int!) {
  getDealerById(id: $id) { id name company_id status }
}
"""

SEARCH_DEALER_STOCK = """
query SearchDealerStock($whereSearchInput: WhereDealerStockSearchInput!) {
  searchDealerStock(whereSearchInput: $whereSearchInput) {
    id dealer_id product_id batch_number quantity status version
  }
}
"""

LIST_DEALER_STOCK = """
query GetAllDealerStock($whereSearchInput: WhereDealerStockSearchInput!) {
  getAllDealerStock(whereSearchInput: $whereSearchInput) {
    id dealer_id product_id batch_number quantity status version
  }
}
"""

APPLY_STOCK_DELTA = """
mutation UpdateDealerStockByProduct(
  $dealerId: Int!, $productId: Int!, $batchNumber: String, $quantityChange: Int!, $expectedVersion: Int!
) {
  updateDealerStockByProduct(
    dealerId: $dealerId, productId: $productId, batchNumber: $batchNumber,
    quantityChange: $quantityChange, expectedVersion: $expectedVersion
  ) {
    id dealer_id product_id batch_number quantity status version
  }
}
"""

CREATE_DEALER_STOCK = """
mutation CreateDealerStock($inputType: CreateDealerStockInput!) {
  createDealerStock(inputType: $inputType) {
    id dealer_id product_id batch_number quantity status version
  }
}
"""

CREATE_SALE = """
mutation CreateSales($inputType: CreateSalesInput!) {
  createSales(inputType: $inputType) {
    id product_id dealer_id company_id customer_id quantity batch_number warranty_till createdById createdAt
  }
}
"""

GET_SALE = """
query GetSalesById($id: Int!) {
  getSalesById(id: $id) {
    id product_id dealer_id company_id customer_id quantity batch_number warranty_till createdById createdAt
  }
}
"""

LIST_SALES = """
query GetAllSales($whereSearchInput: WhereSalesSearchInput!) {
  getAllSales(whereSearchInput: $whereSearchInput) {
    id product_id dealer_id company_id customer_id quantity batch_number warranty_till createdById createdAt
  }
}
"""

_ERROR_CODES: dict[str, type[AppError]] = {
    "NOT_FOUND": NotFoundError,
    "CONFLICT": ConflictError,
    "INSUFFICIENT_STOCK": InsufficientStockError,
    "BAD_USER_INPUT": ValidationError,
    "UNAUTHENTICATED": AuthorizationError,
    "FORBIDDEN": AuthorizationError,
}


def _error_message(err: dict) -> str:
    # nested originalError carries the validator text; it may be a list of messages
    original = (err.get("extensions") or {}).get("originalError")
    if isinstance(original, dict) and original.get("message") is not None:
        msg = original["message"]
        return str(msg[0]) if isinstance(msg, list) and msg else str(msg)
    return str(err.get("message") or "Unknown API error")


def _classify(err: dict) -> AppError:
    code = str((err.get("extensions") or {}).get("code") or "").upper()
    cls = _ERROR_CODES.get(code, AppError)
    return cls(_error_message(err))


def _is_active(status) -> bool:
    if status is None:
        return True
    if isinstance(status, bool):
        return status
    return str(status).strip().upper() not in ("INACTIVE", "FALSE", "0")


class HttpSalesApi:
    """Sales data layer backed by the remote GraphQL endpoint.

    Every request carries a timeout. Timeouts, dropped connections and 5xx
    responses raise ``TransientIOError``; GraphQL errors are mapped onto the
    domain errors through ``extensions.code``.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.token = token
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _call(self, query: str, variables: dict[str, Any], field: str) -> Any:
        try:
            r = self.session.post(
                self.url,
                json={"query": query, "variables": variables},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            log.warning("api_transport_failed field=%s error=%s", field, e)
            raise TransientIOError(f"{field}: {e}") from e

        if r.status_code >= 500:
            raise TransientIOError(f"{field}: server error {r.status_code}")
        if r.status_code in (401, 403):
            raise AuthorizationError(f"{field}: not authorized ({r.status_code})")
        try:
            r.raise_for_status()
            payload = r.json()
        except (requests.RequestException, ValueError) as e:
            raise AppError(f"{field}: invalid API response: {e}") from e

        data = payload.get("data") or {}
        errors = payload.get("errors") or []
        if errors and data.get(field) is None:
            raise _classify(errors[0])
        return data.get(field)

    # ---------- mapping ----------
    @staticmethod
    def _customer(d: dict) -> Customer:
        return Customer(
            id=int(d["id"]),
            name=str(d["name"]),
            contact=str(d["contact1"]),
            address=d.get("address"),
            email=d.get("email"),
            role=str(d.get("role") or CUSTOMER_ROLE),
        )

    @staticmethod
    def _stock(d: dict) -> StockEntry:
        return StockEntry(
            id=int(d["id"]),
            dealer_id=int(d["dealer_id"]),
            product_id=int(d["product_id"]),
            batch_number=(d.get("batch_number") or None),
            quantity=int(d["quantity"]),
            status=str(d.get("status") or "ACTIVE"),
            version=int(d.get("version") or 1),
        )

    @staticmethod
    def _sale(d: dict) -> Sale:
        return Sale(
            id=int(d["id"]),
            product_id=int(d["product_id"]),
            dealer_id=int(d["dealer_id"]),
            company_id=int(d["company_id"]),
            customer_id=(int(d["customer_id"]) if d.get("customer_id") is not None else None),
            quantity=int(d["quantity"]),
            batch_number=(d.get("batch_number") or None),
            warranty_till=int(d["warranty_till"]),
            created_by=(int(d["createdById"]) if d.get("createdById") is not None else None),
            created_at=str(d.get("createdAt") or ""),
        )

    # ---------- customers ----------
    def search_customer(self, contact: str) -> Optional[Customer]:
        try:
            found = self._call(SEARCH_CUSTOMER, {"contact": contact}, "searchUser")
        except NotFoundError:
            return None
        if isinstance(found, list):
            found = found[0] if found else None
        return self._customer(found) if found else None

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        try:
            found = self._call(GET_CUSTOMER, {"id": int(customer_id)}, "getUserById")
        except NotFoundError:
            return None
        return self._customer(found) if found else None

    def create_customer(self, name: str, contact: str, role: str = CUSTOMER_ROLE, flags: Optional[dict] = None) -> Customer:
        input_type = {"name": name, "contact1": contact, "role": role}
        input_type.update(flags or {})
        created = self._call(CREATE_CUSTOMER, {"inputType": input_type}, "createUser")
        return self._customer(created)

    # ---------- reference data ----------
    def get_product(self, product_id: int) -> Optional[Product]:
        try:
            d = self._call(GET_PRODUCT, {"id": int(product_id)}, "getProductById")
        except NotFoundError:
            return None
        if not d or not _is_active(d.get("status")):
            return None
        return Product(id=int(d["id"]), name=str(d["name"]), company_id=int(d["company_id"]))

    def get_dealer(self, dealer_id: int) -> Optional[Dealer]:
        try:
            d = self._call(GET_DEALER, {"id": int(dealer_id)}, "getDealerById")
        except NotFoundError:
            return None
        if not d or not _is_active(d.get("status")):
            return None
        return Dealer(id=int(d["id"]), name=str(d["name"]), company_id=int(d["company_id"]))

    # ---------- stock ----------
    def get_stock(self, dealer_id: int, product_id: int, batch_number: Optional[str] = None) -> Optional[StockEntry]:
        where = {"dealer_id": int(dealer_id), "product_id": int(product_id), "batch_number": batch_number or ""}
        d = self._call(SEARCH_DEALER_STOCK, {"whereSearchInput": where}, "searchDealerStock")
        return self._stock(d) if d else None

    def list_stock(self, dealer_id: int, product_id: Optional[int] = None) -> list[StockEntry]:
        where: dict[str, Any] = {"dealer_id": int(dealer_id)}
        if product_id is not None:
            where["product_id"] = int(product_id)
        rows = self._call(LIST_DEALER_STOCK, {"whereSearchInput": where}, "getAllDealerStock") or []
        return [self._stock(d) for d in rows]

    def apply_stock_delta(
        self, dealer_id: int, product_id: int, batch_number: Optional[str], delta: int, expected_version: int
    ) -> StockEntry:
        d = self._call(
            APPLY_STOCK_DELTA,
            {
                "dealerId": int(dealer_id),
                "productId": int(product_id),
                "batchNumber": batch_number or "",
                "quantityChange": int(delta),
                "expectedVersion": int(expected_version),
            },
            "updateDealerStockByProduct",
        )
        return self._stock(d)

    def create_or_increment_stock(
        self, dealer_id: int, product_id: int, batch_number: Optional[str], amount: int, expected_version: Optional[int]
    ) -> StockEntry:
        if expected_version is not None:
            return self.apply_stock_delta(dealer_id, product_id, batch_number, amount, expected_version)
        input_type = {
            "dealer_id": int(dealer_id),
            "product_id": int(product_id),
            "batch_number": batch_number or "",
            "quantity": int(amount),
            "status": "ACTIVE",
        }
        d = self._call(CREATE_DEALER_STOCK, {"inputType": input_type}, "createDealerStock")
        return self._stock(d)

    # ---------- sales ----------
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
        input_type: dict[str, Any] = {
            "product_id": int(product_id),
            "dealer_id": int(dealer_id),
            "company_id": int(company_id),
            "quantity": int(quantity),
            "warranty_till": int(warranty_till),
        }
        if customer_id is not None:
            input_type["customer_id"] = int(customer_id)
        if batch_number:
            input_type["batch_number"] = batch_number
        if created_by is not None:
            input_type["createdById"] = int(created_by)
        d = self._call(CREATE_SALE, {"inputType": input_type}, "createSales")
        return self._sale(d)

    def get_sale(self, sale_id: int) -> Optional[Sale]:
        try:
            d = self._call(GET_SALE, {"id": int(sale_id)}, "getSalesById")
        except NotFoundError:
            return None
        return self._sale(d) if d else None

    def list_sales(self, dealer_id: Optional[int] = None) -> list[Sale]:
        where: dict[str, Any] = {}
        if dealer_id is not None:
            where["dealer_id"] = int(dealer_id)
        rows = self._call(LIST_SALES, {"whereSearchInput": where}, "getAllSales") or []
        return [self._sale(d) for d in rows]
