from __future__ import annotations

import logging
import re
from typing import Optional

from dsm.domain.errors import ConflictError, NotFoundError, ValidationError
from dsm.domain.models import CUSTOMER_ROLE, Customer
from dsm.repositories.contracts import SalesApi
from dsm.services.retry import RetryPolicy, retry_call

log = logging.getLogger("dsm.customers")

CONTACT_LENGTH = 10
_CONTACT_RE = re.compile(rf"^\d{{{CONTACT_LENGTH}}}$")


def normalize_contact(contact: str) -> str:
    value = (contact or "").strip()
    if not _CONTACT_RE.match(value):
        raise ValidationError(f"Contact number must be {CONTACT_LENGTH} digits.")
    return value


class CustomerResolver:
    """Finds customers by contact number and creates the missing ones.

    ``create`` is idempotent on the contact: the store enforces a uniqueness
    constraint and a losing concurrent insert falls back to reading the
    winner's row.
    """

    def __init__(self, api: SalesApi, policy: RetryPolicy | None = None, zone_id: int = 1):
        self.api = api
        self.policy = policy or RetryPolicy()
        self.zone_id = int(zone_id)

    def resolve(self, contact: str) -> Customer:
        contact = normalize_contact(contact)
        found = retry_call(lambda: self.api.search_customer(contact), self.policy, op="search_customer")
        if not found:
            raise NotFoundError(f"No customer with contact {contact}.")
        return found

    def get(self, customer_id: int) -> Customer:
        found = retry_call(lambda: self.api.get_customer(int(customer_id)), self.policy, op="get_customer")
        if not found:
            raise NotFoundError("Customer not found.")
        return found

    def create(
        self,
        contact: str,
        name: str,
        address: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Customer:
        contact = normalize_contact(contact)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Customer name is required.")

        flags: dict = {"is_dealer": False, "is_manufacturer": False, "zone_id": self.zone_id}
        if address:
            flags["address"] = address.strip()
        if email:
            flags["email"] = email.strip()

        def attempt() -> Customer:
            try:
                return self.api.create_customer(name, contact, CUSTOMER_ROLE, dict(flags))
            except ConflictError:
                existing = self.api.search_customer(contact)
                if existing is None:
                    # the conflicting row is not visible yet; let the retry loop read again
                    raise
                log.info("customer_create_converged contact=%s customer_id=%s", contact, existing.id)
                return existing

        customer = retry_call(attempt, self.policy, op="create_customer")
        log.info("customer_ready contact=%s customer_id=%s", contact, customer.id)
        return customer

    def resolve_or_create(self, contact: str, name: Optional[str] = None, **profile) -> Customer:
        try:
            return self.resolve(contact)
        except NotFoundError:
            return self.create(contact, name or "", **profile)
