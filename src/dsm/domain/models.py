from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

STOCK_ACTIVE = "ACTIVE"
STOCK_INACTIVE = "INACTIVE"

CUSTOMER_ROLE = "USER"


@dataclass(frozen=True)
class Product:
    id: int
    name: str
    company_id: int
    active: int = 1


@dataclass(frozen=True)
class Dealer:
    id: int
    name: str
    company_id: int
    active: int = 1


@dataclass(frozen=True)
class Customer:
    id: int
    name: str
    contact: str
    address: Optional[str] = None
    email: Optional[str] = None
    role: str = CUSTOMER_ROLE


@dataclass(frozen=True)
class StockEntry:
    id: int
    dealer_id: int
    product_id: int
    batch_number: Optional[str]
    quantity: int
    status: str
    version: int


@dataclass(frozen=True)
class Sale:
    id: int
    product_id: int
    dealer_id: int
    company_id: int
    customer_id: Optional[int]
    quantity: int
    batch_number: Optional[str]
    warranty_till: int
    created_by: Optional[int]
    created_at: str


@dataclass(frozen=True)
class ReconciliationEntry:
    id: int
    sale_id: int
    dealer_id: int
    product_id: int
    batch_number: Optional[str]
    expected_delta: int
    reason: str
    created_at: str
    resolved: int = 0
    resolved_at: Optional[str] = None
    attempts: int = 0


@dataclass(frozen=True)
class Actor:
    id: int
    role: str
    company_id: Optional[int] = None
    dealer_id: Optional[int] = None


@dataclass(frozen=True)
class SaleIntake:
    """Consumer sale: one dealer sells to one customer."""

    product_id: int
    dealer_id: int
    warranty_till: int
    quantity: int = 1
    customer_contact: Optional[str] = None
    customer_name: Optional[str] = None
    customer_id: Optional[int] = None
    batch_number: Optional[str] = None


@dataclass(frozen=True)
class SupplyIntake:
    """Dealer-supply sale: a company ships a batch to a dealer."""

    product_id: int
    dealer_id: int
    quantity: int
    batch_number: str
    warranty_till: int
