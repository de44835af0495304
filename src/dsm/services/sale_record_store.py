from __future__ import annotations

import logging
from typing import Optional

from dsm.domain.errors import NotFoundError
from dsm.domain.models import Sale
from dsm.repositories.contracts import SalesApi

log = logging.getLogger("dsm.sales")


class SaleRecordStore:
    """Append-only access to sale records.

    ``append`` is not idempotent and is never retried here: a timeout may
    still have created the row on the other side.
    """

    def __init__(self, api: SalesApi):
        self.api = api

    def append(
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
        sale = self.api.create_sale(
            product_id=int(product_id),
            dealer_id=int(dealer_id),
            company_id=int(company_id),
            customer_id=customer_id,
            quantity=int(quantity),
            warranty_till=int(warranty_till),
            batch_number=batch_number,
            created_by=created_by,
        )
        log.info(
            "sale_created sale_id=%s product=%s dealer=%s customer=%s qty=%s actor=%s",
            sale.id, sale.product_id, sale.dealer_id, sale.customer_id, sale.quantity, created_by,
        )
        return sale

    def get(self, sale_id: int) -> Sale:
        sale = self.api.get_sale(int(sale_id))
        if not sale:
            raise NotFoundError("Sale not found.")
        return sale

    def list_for_dealer(self, dealer_id: int) -> list[Sale]:
        return self.api.list_sales(int(dealer_id))
