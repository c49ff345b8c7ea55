"""
Directory Module

Banks, branches and customers: the reference data accounts hang off.
These records carry no balance invariants; the ledger only needs to know
they exist, which bank they belong to, and whether they are active.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .access import Principal, ensure_bank_access
from .audit import AuditTrail, AuditEventType
from .errors import InvalidState, NotFound, ValidationError
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("cobanker.directory")

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


class CustomerStatus(Enum):
    """Customer lifecycle states"""
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


def _timestamps(data: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(data)
    for key in ('created_at', 'updated_at'):
        if isinstance(data.get(key), str):
            data[key] = datetime.fromisoformat(data[key])
    return data


@dataclass
class Bank(StorageRecord):
    """A tenant: every account, customer and branch belongs to one bank"""
    name: str
    code: str
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bank':
        return cls(**_timestamps(data))


@dataclass
class Branch(StorageRecord):
    bank_id: str
    name: str
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Branch':
        return cls(**_timestamps(data))


@dataclass
class Customer(StorageRecord):
    """Account holder"""
    name: str
    email: str
    bank_id: str
    branch_id: str
    phone: Optional[str] = None
    status: CustomerStatus = CustomerStatus.PENDING
    kyc_verified: bool = False

    def __post_init__(self):
        if not re.match(EMAIL_PATTERN, self.email):
            raise ValidationError("Invalid email format")

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        data = _timestamps(data)
        data['status'] = CustomerStatus(data['status'])
        return cls(**data)


class DirectoryManager:
    """
    Registers and looks up banks, branches and customers
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.banks_table = "banks"
        self.branches_table = "branches"
        self.customers_table = "customers"

        self.storage.ensure_unique_index(self.banks_table, "code")
        self.storage.ensure_unique_index(self.customers_table, "email")

    # Banks

    def create_bank(self, name: str, code: str, principal: Principal) -> Bank:
        """Register a bank; `code` is unique and stored upper-cased"""
        name = (name or "").strip()
        code = (code or "").strip().upper()
        if not name:
            raise ValidationError("Bank name is required")
        if not re.fullmatch(r"[A-Z0-9_]{2,20}", code):
            raise ValidationError("Bank code must be 2-20 letters, digits or underscores")

        now = datetime.now(timezone.utc)
        bank = Bank(id=str(uuid.uuid4()), created_at=now, updated_at=now, name=name, code=code)
        self.audit_trail.write_with_event(
            lambda: self.storage.insert(self.banks_table, bank.id, bank.to_dict()),
            AuditEventType.BANK_CREATED, "bank", bank.id,
            metadata={"code": code, "name": name}, user_id=principal.user_id
        )
        log_action(logger, "info", f"Bank {code} created", user_id=principal.user_id,
                   action="create_bank", resource=f"bank:{bank.id}")
        return bank

    def get_bank(self, bank_id: str) -> Optional[Bank]:
        data = self.storage.load(self.banks_table, bank_id)
        return Bank.from_dict(data) if data else None

    # Branches

    def create_branch(self, bank_id: str, name: str, principal: Principal) -> Branch:
        """Register a branch under an existing bank"""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Branch name is required")
        if self.get_bank(bank_id) is None:
            raise NotFound("bank", bank_id)
        ensure_bank_access(principal, bank_id)

        now = datetime.now(timezone.utc)
        branch = Branch(id=str(uuid.uuid4()), created_at=now, updated_at=now,
                        bank_id=bank_id, name=name)
        self.audit_trail.write_with_event(
            lambda: self.storage.insert(self.branches_table, branch.id, branch.to_dict()),
            AuditEventType.BRANCH_CREATED, "branch", branch.id,
            metadata={"bank_id": bank_id, "name": name}, user_id=principal.user_id
        )
        return branch

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        data = self.storage.load(self.branches_table, branch_id)
        return Branch.from_dict(data) if data else None

    # Customers

    def create_customer(self, name: str, email: str, bank_id: str, branch_id: str,
                        principal: Principal, phone: Optional[str] = None,
                        kyc_verified: bool = False) -> Customer:
        """
        Create a pending customer at a branch of `bank_id`

        Raises:
            NotFound: bank or branch missing
            ValidationError: bad name/email, or branch of another bank
            AccessDenied: caller is not staff of `bank_id`
            Conflict: email already registered
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Customer name is required")
        if self.get_bank(bank_id) is None:
            raise NotFound("bank", bank_id)
        branch = self.get_branch(branch_id)
        if branch is None:
            raise NotFound("branch", branch_id)
        ensure_bank_access(principal, bank_id)
        if branch.bank_id != bank_id:
            raise ValidationError("Branch does not belong to the given bank")

        now = datetime.now(timezone.utc)
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            email=(email or "").strip().lower(),
            bank_id=bank_id,
            branch_id=branch_id,
            phone=phone,
            kyc_verified=kyc_verified,
        )
        self.audit_trail.write_with_event(
            lambda: self.storage.insert(self.customers_table, customer.id, customer.to_dict()),
            AuditEventType.CUSTOMER_CREATED, "customer", customer.id,
            metadata={"bank_id": bank_id, "branch_id": branch_id},
            user_id=principal.user_id
        )
        log_action(logger, "info", "Customer created", user_id=principal.user_id,
                   action="create_customer", resource=f"customer:{customer.id}")
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.customers_table, customer_id)
        return Customer.from_dict(data) if data else None

    def read_customer(self, customer_id: str, principal: Principal) -> Customer:
        """Load a customer visible to the principal"""
        customer = self.get_customer(customer_id)
        if customer is None:
            raise NotFound("customer", customer_id)
        ensure_bank_access(principal, customer.bank_id)
        return customer

    def activate_customer(self, customer_id: str, principal: Principal) -> Customer:
        """Move a customer to active; already active is a no-op"""
        customer = self.read_customer(customer_id, principal)
        if customer.is_active:
            return customer

        customer.status = CustomerStatus.ACTIVE
        customer.updated_at = datetime.now(timezone.utc)
        self.audit_trail.write_with_event(
            lambda: self.storage.save(self.customers_table, customer.id, customer.to_dict()),
            AuditEventType.CUSTOMER_ACTIVATED, "customer", customer.id,
            user_id=principal.user_id
        )
        return customer

    def require_active_customer(self, customer_id: str) -> Customer:
        customer = self.get_customer(customer_id)
        if customer is None:
            raise NotFound("customer", customer_id)
        if not customer.is_active:
            raise InvalidState(f"Customer {customer_id} is not active")
        return customer

    def require_active_branch(self, branch_id: str) -> Branch:
        branch = self.get_branch(branch_id)
        if branch is None:
            raise NotFound("branch", branch_id)
        if not branch.is_active:
            raise InvalidState(f"Branch {branch_id} is not active")
        return branch
