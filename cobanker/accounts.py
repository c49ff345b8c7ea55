"""
Account Management Module

Manages the account record and its lifecycle: opening, lookups, field
updates and the pending -> active -> suspended/closed state machine.

Balances are NEVER written here except at opening; every later balance
change goes through the ledger workflow in transactions.py. All writes to an
existing account are compare-and-swap on its `version`, so lifecycle
transitions serialize with concurrent ledger movements.
"""

import itertools
import logging
import random
import re
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .access import Principal, bank_scope, ensure_bank_access
from .audit import AuditTrail, AuditEventType, is_sequence_race
from .directory import DirectoryManager
from .errors import Conflict, DuplicateRecordError, InvalidState, NotFound, ValidationError
from .logging_config import log_action
from .money import ZERO, non_negative_amount, to_amount
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("cobanker.accounts")

ACCOUNT_NUMBER_PATTERN = re.compile(r"^[A-Z]{2}\d{12}$")
MAX_DESCRIPTION_LENGTH = 500


class AccountType(Enum):
    """Banking product types"""
    SAVINGS = "savings"
    CURRENT = "current"
    FIXED_DEPOSIT = "fixed_deposit"
    RECURRING_DEPOSIT = "recurring_deposit"
    LOAN = "loan"
    DEMAT = "demat"


class AccountStatus(Enum):
    """Account lifecycle states"""
    PENDING = "pending"        # Opened, not yet usable
    ACTIVE = "active"          # Normal operation
    INACTIVE = "inactive"      # Dormant, can be reactivated
    SUSPENDED = "suspended"    # Blocked with a reason, reversible
    CLOSED = "closed"          # Terminal


@dataclass
class Account(StorageRecord):
    """
    Customer account. `version` is bumped on every write.
    """
    account_number: str
    customer_id: str
    account_type: AccountType
    bank_id: str
    branch_id: str
    balance: Decimal = ZERO
    opening_balance: Decimal = ZERO
    interest_rate: Decimal = ZERO
    minimum_balance: Decimal = ZERO
    overdraft_limit: Decimal = ZERO
    monthly_maintenance_fee: Decimal = ZERO
    status: AccountStatus = AccountStatus.PENDING
    status_reason: Optional[str] = None
    description: Optional[str] = None
    version: int = 1

    @property
    def balance_floor(self) -> Decimal:
        """Lowest balance a debit may leave behind"""
        return self.minimum_balance - self.overdraft_limit

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def summary(self) -> Dict[str, Any]:
        """Read-only projection of the account"""
        return {
            "id": self.id,
            "account_number": self.account_number,
            "account_type": self.account_type.value,
            "balance": self.balance,
            "status": self.status.value,
            "interest_rate": self.interest_rate,
            "minimum_balance": self.minimum_balance,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['account_type'] = AccountType(data['account_type'])
        data['status'] = AccountStatus(data['status'])
        for key in ('balance', 'opening_balance', 'interest_rate', 'minimum_balance',
                    'overdraft_limit', 'monthly_maintenance_fee'):
            data[key] = Decimal(data[key])
        return cls(**data)


class AccountNumberGenerator:
    """
    Generates account numbers as PREFIX + 12 digits.

    A counter starting at a random offset is pushed through an affine
    permutation of [0, 10**12), so numbers look scattered but never repeat
    within one generator. Collisions between processes are caught by the
    unique index on account_number.
    """

    MODULUS = 10 ** 12
    MULTIPLIER = 7_919_346_573  # Coprime to 10**12
    INCREMENT = 104_729

    def __init__(self, prefix: str = "CB", seed: Optional[int] = None):
        if not re.fullmatch(r"[A-Z]{2}", prefix):
            raise ValueError("Account number prefix must be two uppercase letters")
        self.prefix = prefix
        rng = random.Random(seed) if seed is not None else random.SystemRandom()
        self._counter = itertools.count(rng.randrange(self.MODULUS))
        self._lock = threading.Lock()

    def next_value(self) -> int:
        """Next 12-digit value as an integer"""
        with self._lock:
            n = next(self._counter) % self.MODULUS
        return (n * self.MULTIPLIER + self.INCREMENT) % self.MODULUS

    def next_number(self) -> str:
        return f"{self.prefix}{self.next_value():012d}"


def parse_account_type(value: Union[str, AccountType]) -> AccountType:
    if isinstance(value, AccountType):
        return value
    try:
        return AccountType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in AccountType)
        raise ValidationError(f"Invalid account type '{value}'. Allowed: {allowed}")


def _interest_rate(value: Any) -> Decimal:
    rate = to_amount(value, "interest_rate")
    if rate < 0 or rate > 100:
        raise ValidationError("interest_rate must be between 0 and 100")
    return rate


def _description(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"description must be at most {MAX_DESCRIPTION_LENGTH} characters")
    return value


def paginate(items: List[Any], page: int, limit: int) -> Dict[str, Any]:
    """Slice a newest-first list into one page"""
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1:
        raise ValidationError("limit must be at least 1")
    start = (page - 1) * limit
    return {
        "items": items[start:start + limit],
        "total": len(items),
        "page": page,
        "limit": limit,
        "pages": (len(items) + limit - 1) // limit,
    }


class AccountManager:
    """
    Manages account lifecycle and lookups
    """

    UPDATABLE_FIELDS = ("account_type", "interest_rate", "minimum_balance",
                        "overdraft_limit", "monthly_maintenance_fee", "description")

    def __init__(
        self,
        storage: StorageInterface,
        directory: DirectoryManager,
        audit_trail: AuditTrail,
        number_generator: Optional[AccountNumberGenerator] = None,
        number_attempts: int = 5,
        max_attempts: int = 25
    ):
        self.storage = storage
        self.directory = directory
        self.audit_trail = audit_trail
        self.number_generator = number_generator or AccountNumberGenerator()
        self.number_attempts = number_attempts
        self.max_attempts = max_attempts
        self.accounts_table = "accounts"

        self.storage.ensure_unique_index(self.accounts_table, "account_number")

    def open_account(
        self,
        principal: Principal,
        customer_id: str,
        account_type: Union[str, AccountType],
        branch_id: str,
        bank_id: str,
        initial_balance: Any = 0,
        interest_rate: Any = 0,
        minimum_balance: Any = 0,
        overdraft_limit: Any = 0,
        monthly_maintenance_fee: Any = 0,
        description: Optional[str] = None
    ) -> Account:
        """
        Open a pending account for an active customer at an active branch

        Raises:
            ValidationError: bad type, negative amount, or cross-bank references
            NotFound: customer or branch missing
            InvalidState: customer or branch not active
            AccessDenied: caller is not staff of `bank_id`
            Conflict: no free account number after the configured attempts
        """
        account_type = parse_account_type(account_type)
        balance = non_negative_amount(initial_balance, "initial_balance")
        rate = _interest_rate(interest_rate)
        minimum = non_negative_amount(minimum_balance, "minimum_balance")
        overdraft = non_negative_amount(overdraft_limit, "overdraft_limit")
        fee = non_negative_amount(monthly_maintenance_fee, "monthly_maintenance_fee")
        description = _description(description)

        customer = self.directory.require_active_customer(customer_id)
        branch = self.directory.require_active_branch(branch_id)
        ensure_bank_access(principal, bank_id)
        if customer.bank_id != bank_id:
            raise ValidationError("Customer does not belong to the given bank")
        if branch.bank_id != bank_id:
            raise ValidationError("Branch does not belong to the given bank")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number="",
            customer_id=customer_id,
            account_type=account_type,
            bank_id=bank_id,
            branch_id=branch_id,
            balance=balance,
            opening_balance=balance,
            interest_rate=rate,
            minimum_balance=minimum,
            overdraft_limit=overdraft,
            monthly_maintenance_fee=fee,
            description=description,
        )

        for attempt in range(1, self.number_attempts + 1):
            account.account_number = self.number_generator.next_number()
            try:
                self.audit_trail.write_with_event(
                    lambda: self.storage.insert(self.accounts_table, account.id, account.to_dict()),
                    AuditEventType.ACCOUNT_CREATED, "account", account.id,
                    metadata={
                        "account_number": account.account_number,
                        "customer_id": customer_id,
                        "account_type": account_type.value,
                        "opening_balance": balance,
                    },
                    user_id=principal.user_id
                )
                break
            except DuplicateRecordError as e:
                if e.field != "account_number":
                    raise
                log_action(logger, "warning", "Account number collision, regenerating",
                           action="open_account", extra={"attempt": attempt})
        else:
            raise Conflict("Could not allocate a unique account number")

        log_action(logger, "info", f"Account {account.account_number} opened",
                   user_id=principal.user_id, action="open_account",
                   resource=f"account:{account.id}")
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def read_account(self, account_id: str, principal: Principal) -> Account:
        """Load an account visible to the principal"""
        account = self.get_account(account_id)
        if account is None:
            raise NotFound("account", account_id)
        ensure_bank_access(principal, account.bank_id)
        return account

    def get_account_by_number(self, account_number: str, principal: Principal) -> Account:
        """Get account by its human-facing number"""
        if not ACCOUNT_NUMBER_PATTERN.match(account_number or ""):
            raise ValidationError("Account number must be two letters followed by 12 digits")
        matches = self.storage.find(self.accounts_table, {"account_number": account_number})
        if not matches:
            raise NotFound("account", account_number)
        account = Account.from_dict(matches[0])
        ensure_bank_access(principal, account.bank_id)
        return account

    def get_summary(self, account_id: str, principal: Principal) -> Dict[str, Any]:
        return self.read_account(account_id, principal).summary()

    def list_customer_accounts(
        self,
        customer_id: str,
        principal: Principal,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        account_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Paginated accounts of a customer, newest first"""
        customer = self.directory.get_customer(customer_id)
        if customer is None:
            raise NotFound("customer", customer_id)
        ensure_bank_access(principal, customer.bank_id)

        filters: Dict[str, Any] = {"customer_id": customer_id}
        if status:
            try:
                filters["status"] = AccountStatus(status).value
            except ValueError:
                raise ValidationError(f"Invalid account status '{status}'")
        if account_type:
            filters["account_type"] = parse_account_type(account_type).value

        accounts = [Account.from_dict(d) for d in self.storage.find(self.accounts_table, filters)]
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        return paginate(accounts, page, limit)

    def update_account(self, account_id: str, principal: Principal, **fields) -> Account:
        """
        Edit product terms; balance and status are never touched here
        """
        unknown = set(fields) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        parsed: Dict[str, Any] = {}
        for name, value in fields.items():
            if value is None and name != "description":
                continue
            if name == "account_type":
                parsed[name] = parse_account_type(value)
            elif name == "interest_rate":
                parsed[name] = _interest_rate(value)
            elif name == "description":
                parsed[name] = _description(value)
            else:
                parsed[name] = non_negative_amount(value, name)

        def change(account: Account) -> bool:
            if account.status == AccountStatus.CLOSED:
                raise InvalidState(f"Account {account.id} is closed")
            for name, value in parsed.items():
                setattr(account, name, value)
            return True

        def event(before: Account, after: Account) -> None:
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_UPDATED, "account", after.id,
                metadata={"fields": sorted(parsed)}, user_id=principal.user_id
            )

        account, _ = self._swap(account_id, principal, change, event)
        return account

    def activate(self, account_id: str, principal: Principal) -> Account:
        """pending/inactive/suspended -> active; already active is a no-op"""
        def change(account: Account) -> bool:
            if account.status == AccountStatus.CLOSED:
                raise InvalidState("Closed accounts cannot be reactivated")
            if account.status == AccountStatus.ACTIVE:
                return False
            account.status = AccountStatus.ACTIVE
            account.status_reason = None
            return True

        return self._transition(account_id, principal, change, AuditEventType.ACCOUNT_ACTIVATED)

    def suspend(self, account_id: str, principal: Principal, reason: Optional[str]) -> Account:
        """Suspend with a mandatory reason; already suspended is a no-op"""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to suspend an account")

        def change(account: Account) -> bool:
            if account.status == AccountStatus.CLOSED:
                raise InvalidState("Closed accounts cannot be suspended")
            if account.status == AccountStatus.SUSPENDED:
                return False
            account.status = AccountStatus.SUSPENDED
            account.status_reason = reason
            return True

        return self._transition(account_id, principal, change, AuditEventType.ACCOUNT_SUSPENDED,
                                {"reason": reason})

    def close(self, account_id: str, principal: Principal) -> Account:
        """Close an account; only allowed at a zero balance"""
        def change(account: Account) -> bool:
            if account.status == AccountStatus.CLOSED:
                raise InvalidState(f"Account {account.id} is already closed")
            if account.balance != ZERO:
                raise InvalidState(
                    f"Cannot close account with non-zero balance: {account.balance}"
                )
            account.status = AccountStatus.CLOSED
            return True

        return self._transition(account_id, principal, change, AuditEventType.ACCOUNT_CLOSED)

    def account_stats(self, principal: Principal, bank_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts and balance totals by type and by status"""
        scope = bank_scope(principal)
        if scope is not None:
            if bank_id is not None and bank_id != scope:
                ensure_bank_access(principal, bank_id)
            bank_id = scope

        filters = {"bank_id": bank_id} if bank_id else {}
        accounts = [Account.from_dict(d) for d in self.storage.find(self.accounts_table, filters)]

        by_type: Dict[str, Dict[str, Any]] = {}
        by_status: Dict[str, Dict[str, Any]] = {}
        total = ZERO
        for account in accounts:
            total += account.balance
            for bucket, key in ((by_type, account.account_type.value),
                                (by_status, account.status.value)):
                entry = bucket.setdefault(key, {"count": 0, "total_balance": ZERO})
                entry["count"] += 1
                entry["total_balance"] += account.balance

        return {
            "bank_id": bank_id,
            "total_accounts": len(accounts),
            "total_balance": total,
            "by_type": by_type,
            "by_status": by_status,
        }

    def _transition(self, account_id: str, principal: Principal,
                    change: Callable[[Account], bool], event_type: AuditEventType,
                    metadata: Optional[Dict[str, Any]] = None) -> Account:
        def event(before: Account, after: Account) -> None:
            self.audit_trail.log_event(
                event_type, "account", after.id,
                metadata={"from": before.status.value, "to": after.status.value,
                          **(metadata or {})},
                user_id=principal.user_id
            )

        try:
            account, before = self._swap(account_id, principal, change, event)
        except InvalidState as e:
            log_action(logger, "warning", e.message, user_id=principal.user_id,
                       action=event_type.value, resource=f"account:{account_id}")
            raise
        if before is not None:
            log_action(logger, "info", f"Account {account.account_number} is now {account.status.value}",
                       user_id=principal.user_id, action=event_type.value,
                       resource=f"account:{account.id}",
                       extra={"from": before.status.value})
        return account

    def _swap(self, account_id: str, principal: Principal,
              change: Callable[[Account], bool],
              event: Callable[[Account, Account], None]) -> Tuple[Account, Optional[Account]]:
        """
        Apply `change` to a fresh copy and compare-and-swap it in.

        `change` returns False for a no-op, in which case nothing is written.
        Otherwise `event(before, after)` is logged in the same unit as the
        swap, with `before` being the row the swap actually replaced.
        A lost swap reloads and re-applies.

        Returns:
            (account, before) where before is None for a no-op
        """
        for _ in range(self.max_attempts):
            account = self.read_account(account_id, principal)
            before = replace(account)
            if not change(account):
                return account, None
            account.version = before.version + 1
            account.updated_at = datetime.now(timezone.utc)
            try:
                with self.storage.atomic():
                    swapped = self.storage.compare_and_swap(
                        self.accounts_table, account.id,
                        {"version": before.version}, account.to_dict()
                    )
                    if swapped:
                        event(before, account)
            except DuplicateRecordError as e:
                if not is_sequence_race(e):
                    raise
                continue
            if swapped:
                return account, before
        raise Conflict(f"Account {account_id} is being modified concurrently")
