from __future__ import annotations

from typing import Optional

from dsm.domain.errors import AuthorizationError
from dsm.domain.models import Actor

ROLE_ADMIN = "ADMIN"
ROLE_COMPANY = "COMPANY"
ROLE_DEALER = "DEALER"

PERMISSIONS: dict[str, set[str]] = {
    "create_customer_sale": {ROLE_ADMIN, ROLE_DEALER},
    "create_dealer_sale": {ROLE_ADMIN, ROLE_COMPANY},
    "view_reconciliation": {ROLE_ADMIN, ROLE_COMPANY, ROLE_DEALER},
    "resolve_reconciliation": {ROLE_ADMIN, ROLE_COMPANY},
}


class AuthService:
    def can(self, actor: Optional[Actor], action: str) -> bool:
        if actor is None:
            return False
        allowed_roles = PERMISSIONS.get(action)
        if not allowed_roles:
            return False
        return actor.role.upper() in allowed_roles

    def require_action(self, actor: Optional[Actor], action: str) -> None:
        if actor is None:
            raise AuthorizationError("User not authenticated.")
        if not self.can(actor, action):
            raise AuthorizationError(f"Role '{actor.role}' is not allowed to perform '{action}'.")

    def require_dealer_scope(self, actor: Actor, dealer_id: int) -> None:
        if actor.role.upper() == ROLE_DEALER and actor.dealer_id is not None and int(actor.dealer_id) != int(dealer_id):
            raise AuthorizationError("Dealers can only record sales for their own stock.")

    def require_company_scope(self, actor: Actor, company_id: int) -> None:
        if actor.role.upper() == ROLE_COMPANY and actor.company_id is not None and int(actor.company_id) != int(company_id):
            raise AuthorizationError("Companies can only ship their own products.")
