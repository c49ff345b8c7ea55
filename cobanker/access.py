"""
Access Control Module

Roles carried in bearer tokens, the authenticated Principal, and the tenant
(bank) isolation check the core applies to every row it touches.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from .errors import AccessDenied


class Role(Enum):
    """Caller roles issued by the external auth service"""
    ADMIN = "admin"
    BANK_EMPLOYEE = "bank_employee"
    BRANCH_EMPLOYEE = "branch_employee"
    MANAGER = "manager"
    TELLER = "teller"
    CUSTOMER = "customer"


# Role groups used for endpoint gating
ACCOUNT_WRITERS: FrozenSet[Role] = frozenset({Role.ADMIN, Role.BANK_EMPLOYEE, Role.BRANCH_EMPLOYEE})
TRANSACTION_ROLES: FrozenSet[Role] = ACCOUNT_WRITERS | {Role.MANAGER, Role.TELLER}
REVERSAL_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.MANAGER})
STATS_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.BANK_EMPLOYEE})
RECONCILIATION_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.BANK_EMPLOYEE, Role.MANAGER})
ADMIN_ONLY: FrozenSet[Role] = frozenset({Role.ADMIN})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller"""
    user_id: str
    role: Role
    bank_id: Optional[str] = None
    branch_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> 'Principal':
        """
        Build a principal from decoded token claims.

        Raises:
            ValueError: if `sub` is missing or `role` is unknown
        """
        user_id = claims.get("sub")
        if not user_id:
            raise ValueError("Token has no subject")
        return cls(
            user_id=str(user_id),
            role=Role(claims.get("role")),
            bank_id=claims.get("bank_id"),
            branch_id=claims.get("branch_id"),
        )


def ensure_bank_access(principal: Principal, bank_id: Optional[str]) -> None:
    """
    Raise AccessDenied unless the principal may act on rows of `bank_id`.

    Admins see every bank; everyone else only their own.
    """
    if principal.is_admin:
        return
    if principal.bank_id is None or principal.bank_id != bank_id:
        raise AccessDenied("Access denied to resources of another bank")


def bank_scope(principal: Principal) -> Optional[str]:
    """Bank id to filter listings by, or None for unrestricted (admin)"""
    return None if principal.is_admin else principal.bank_id
