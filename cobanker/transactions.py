"""
Transaction Processing Module

The account ledger workflow: every balance change is a movement that
updates the account, inserts an immutable transaction record and appends
its audit events in one atomic unit. Supports typed transactions,
reference-number idempotency, reversals and balance reconciliation.

Concurrency: the account row is compare-and-swapped on the `version` the
workflow observed. If another writer got there first the unit writes
nothing, and the movement is re-evaluated from a fresh read, so the floor
check always runs against the balance it actually replaces.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .access import Principal, bank_scope, ensure_bank_access
from .accounts import Account, AccountManager, MAX_DESCRIPTION_LENGTH, paginate
from .audit import AuditTrail, AuditEventType, is_sequence_race
from .errors import (
    Conflict, DuplicateRecordError, InsufficientFunds, InvalidState, NotFound, ValidationError
)
from .logging_config import log_action
from .money import ZERO, positive_amount
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("cobanker.transactions")

REVERSAL_PREFIX = "REV-"


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOAN_REPAYMENT = "loan_repayment"
    INTER_BRANCH_TRANSFER = "inter_branch_transfer"  # Debits the source account only
    ADJUSTMENT = "adjustment"
    REVERSAL = "reversal"


class MovementDirection(Enum):
    CREDIT = "credit"
    DEBIT = "debit"

    @property
    def opposite(self) -> 'MovementDirection':
        return MovementDirection.DEBIT if self is MovementDirection.CREDIT else MovementDirection.CREDIT


class TransactionStatus(Enum):
    """States of a transaction; the workflow only ever writes COMPLETED"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Types whose direction is implied
TYPE_DIRECTIONS = {
    TransactionType.DEPOSIT: MovementDirection.CREDIT,
    TransactionType.LOAN_REPAYMENT: MovementDirection.CREDIT,
    TransactionType.WITHDRAWAL: MovementDirection.DEBIT,
    TransactionType.INTER_BRANCH_TRANSFER: MovementDirection.DEBIT,
}


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger record of one movement
    """
    account_id: str
    bank_id: str
    transaction_type: TransactionType
    direction: MovementDirection
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    performed_by: str
    description: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    reference_number: Optional[str] = None
    member_id: Optional[str] = None
    reverses_transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction is MovementDirection.CREDIT else -self.amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['direction'] = MovementDirection(data['direction'])
        data['status'] = TransactionStatus(data['status'])
        for key in ('amount', 'balance_before', 'balance_after'):
            data[key] = Decimal(data[key])
        return cls(**data)


@dataclass
class MovementResult:
    """Outcome of a movement: the account after it and the transaction written"""
    account: Account
    transaction: Transaction
    replayed: bool = False


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {label} '{value}'. Allowed: {allowed}")


class LedgerWorkflow:
    """
    Applies movements to accounts and keeps the transaction history
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        audit_trail: AuditTrail,
        max_attempts: int = 25
    ):
        self.storage = storage
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.max_attempts = max_attempts
        self.transactions_table = "transactions"

        self.storage.ensure_unique_index(self.transactions_table, "reference_number")

    def record_movement(
        self,
        account_id: str,
        amount: Any,
        direction: Union[str, MovementDirection],
        principal: Principal,
        description: Optional[str] = None,
        reference_number: Optional[str] = None,
        transaction_type: TransactionType = TransactionType.ADJUSTMENT,
        member_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        reverses_transaction_id: Optional[str] = None,
        allow_replay: bool = True
    ) -> MovementResult:
        """
        Credit or debit an account.

        Args:
            account_id: Target account
            amount: Positive amount, rounded to cents
            direction: credit or debit
            principal: Acting caller
            description: Free text, at most 500 characters
            reference_number: Optional idempotency key, unique across transactions
            transaction_type: Type recorded on the transaction
            allow_replay: Return the original result when the reference was already applied

        Returns:
            MovementResult with the updated account and the transaction

        Raises:
            ValidationError: bad amount, direction or description
            NotFound: account missing
            AccessDenied: account belongs to another bank
            InvalidState: account is not active
            InsufficientFunds: debit would cross minimum_balance - overdraft_limit
            Conflict: reference reused with different parameters, or the
                account stayed contended for every attempt
        """
        amount = positive_amount(amount)
        direction = _parse_enum(MovementDirection, direction, "direction")
        if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"description must be at most {MAX_DESCRIPTION_LENGTH} characters")
        if reference_number is not None:
            reference_number = reference_number.strip()
            if not reference_number:
                raise ValidationError("reference_number cannot be blank")

        for attempt in range(1, self.max_attempts + 1):
            account = self.accounts.read_account(account_id, principal)

            if reference_number:
                existing = self._find_by_reference(reference_number)
                if existing is not None:
                    if (allow_replay and existing.account_id == account.id
                            and existing.direction is direction and existing.amount == amount):
                        return MovementResult(account=account, transaction=existing, replayed=True)
                    raise Conflict(f"Reference number {reference_number} already used")

            if not account.is_active:
                log_action(logger, "warning", f"Movement rejected, account is {account.status.value}",
                           user_id=principal.user_id, action="record_movement",
                           resource=f"account:{account.id}")
                raise InvalidState(f"Account {account.id} is {account.status.value}, not active")

            before = account.balance
            after = before + amount if direction is MovementDirection.CREDIT else before - amount
            if direction is MovementDirection.DEBIT and after < account.balance_floor:
                log_action(logger, "warning", "Movement rejected, insufficient funds",
                           user_id=principal.user_id, action="record_movement",
                           resource=f"account:{account.id}",
                           extra={"balance": before, "amount": amount, "floor": account.balance_floor})
                raise InsufficientFunds(
                    f"Insufficient funds: balance {before}, debit {amount}, floor {account.balance_floor}"
                )

            now = datetime.now(timezone.utc)
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account.id,
                bank_id=account.bank_id,
                transaction_type=transaction_type,
                direction=direction,
                amount=amount,
                balance_before=before,
                balance_after=after,
                performed_by=principal.user_id,
                description=description,
                reference_number=reference_number,
                member_id=member_id,
                reverses_transaction_id=reverses_transaction_id,
                metadata=metadata or {},
            )

            observed = account.version
            account.balance = after
            account.version = observed + 1
            account.updated_at = now

            try:
                with self.storage.atomic():
                    swapped = self.storage.compare_and_swap(
                        self.accounts.accounts_table, account.id,
                        {"version": observed}, account.to_dict()
                    )
                    if swapped:
                        self.storage.insert(self.transactions_table, transaction.id,
                                            transaction.to_dict())
                        self._log_movement_events(account, transaction, principal)
            except DuplicateRecordError as e:
                # Another request committed the same reference first, or took
                # the next audit sequence number; nothing of this unit was kept
                if e.field == "reference_number" or is_sequence_race(e):
                    continue
                raise

            if swapped:
                log_action(logger, "info",
                           f"{transaction.direction.value.capitalize()} of {transaction.amount} "
                           f"on {account.account_number}",
                           user_id=principal.user_id, action="record_movement",
                           resource=f"transaction:{transaction.id}",
                           extra={"balance_after": transaction.balance_after})
                return MovementResult(account=account, transaction=transaction)

            log_action(logger, "debug", "Lost compare-and-swap, retrying",
                       action="record_movement", resource=f"account:{account.id}",
                       extra={"attempt": attempt})

        log_action(logger, "warning", "Movement abandoned after repeated contention",
                   user_id=principal.user_id, action="record_movement",
                   resource=f"account:{account_id}")
        raise Conflict(f"Account {account_id} is being modified concurrently")

    def post_transaction(
        self,
        principal: Principal,
        account_id: str,
        transaction_type: Union[str, TransactionType],
        amount: Any,
        direction: Optional[Union[str, MovementDirection]] = None,
        description: Optional[str] = None,
        reference_number: Optional[str] = None,
        member_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> MovementResult:
        """Typed entry point: derives the direction from the transaction type"""
        transaction_type = _parse_enum(TransactionType, transaction_type, "transaction type")
        if transaction_type is TransactionType.REVERSAL:
            raise ValidationError("Reversals are created by reversing an existing transaction")

        implied = TYPE_DIRECTIONS.get(transaction_type)
        if direction is not None:
            direction = _parse_enum(MovementDirection, direction, "direction")
        if implied is None:
            if direction is None:
                raise ValidationError(f"{transaction_type.value} requires an explicit direction")
        elif direction is not None and direction is not implied:
            raise ValidationError(f"{transaction_type.value} is always a {implied.value}")
        else:
            direction = implied

        return self.record_movement(
            account_id, amount, direction, principal,
            description=description,
            reference_number=reference_number,
            transaction_type=transaction_type,
            member_id=member_id,
            metadata=metadata,
        )

    def reverse_transaction(self, transaction_id: str, principal: Principal,
                            reason: Optional[str] = None) -> MovementResult:
        """
        Offset a completed transaction with one in the opposite direction.

        Each transaction can be reversed once; reversals themselves cannot be
        reversed. Reversing a credit is a debit and must clear the floor.
        """
        original = self.read_transaction(transaction_id, principal)
        if original.transaction_type is TransactionType.REVERSAL:
            raise InvalidState("A reversal cannot itself be reversed")
        if original.status is not TransactionStatus.COMPLETED:
            raise InvalidState(f"Transaction {transaction_id} is {original.status.value}")

        reference = f"{REVERSAL_PREFIX}{original.id}"
        if self._find_by_reference(reference) is not None:
            raise Conflict(f"Transaction {transaction_id} has already been reversed")

        result = self.record_movement(
            original.account_id,
            original.amount,
            original.direction.opposite,
            principal,
            description=reason or f"Reversal of {original.id}",
            reference_number=reference,
            transaction_type=TransactionType.REVERSAL,
            reverses_transaction_id=original.id,
            metadata={"reason": reason} if reason else None,
            allow_replay=False,
        )
        return result

    def reconcile_account(self, account_id: str, principal: Principal) -> Dict[str, Any]:
        """
        Check balance == opening_balance + sum(credits) - sum(debits)
        """
        # Read account and history under one unit so no movement lands in between
        with self.storage.atomic():
            account = self.accounts.read_account(account_id, principal)
            history = self._load({"account_id": account_id})

        credits = sum((t.amount for t in history if t.direction is MovementDirection.CREDIT), ZERO)
        debits = sum((t.amount for t in history if t.direction is MovementDirection.DEBIT), ZERO)
        expected = account.opening_balance + credits - debits
        report = {
            "account_id": account.id,
            "account_number": account.account_number,
            "opening_balance": account.opening_balance,
            "total_credits": credits,
            "total_debits": debits,
            "transaction_count": len(history),
            "expected_balance": expected,
            "actual_balance": account.balance,
            "difference": account.balance - expected,
            "balanced": account.balance == expected,
        }

        if not report["balanced"]:
            log_action(logger, "error", "Account balance does not reconcile",
                       user_id=principal.user_id, action="reconcile_account",
                       resource=f"account:{account.id}", extra=report)
        self.audit_trail.try_log_event(
            AuditEventType.ACCOUNT_RECONCILED, "account", account.id,
            metadata={"balanced": report["balanced"], "difference": report["difference"]},
            user_id=principal.user_id
        )
        return report

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        return Transaction.from_dict(data) if data else None

    def read_transaction(self, transaction_id: str, principal: Principal) -> Transaction:
        """Load a transaction visible to the principal"""
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise NotFound("transaction", transaction_id)
        ensure_bank_access(principal, transaction.bank_id)
        return transaction

    def list_transactions(
        self,
        principal: Principal,
        account_id: Optional[str] = None,
        member_id: Optional[str] = None,
        transaction_type: Optional[str] = None,
        status: Optional[str] = None,
        direction: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Dict[str, Any]:
        """Filtered, tenant-scoped, newest-first page of transactions"""
        filters: Dict[str, Any] = {}
        if account_id:
            self.accounts.read_account(account_id, principal)
            filters["account_id"] = account_id
        scope = bank_scope(principal)
        if scope is not None:
            filters["bank_id"] = scope
        if member_id:
            filters["member_id"] = member_id
        if transaction_type:
            filters["transaction_type"] = _parse_enum(TransactionType, transaction_type,
                                                      "transaction type").value
        if status:
            filters["status"] = _parse_enum(TransactionStatus, status, "status").value
        if direction:
            filters["direction"] = _parse_enum(MovementDirection, direction, "direction").value

        transactions = self._load(filters)
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return paginate(transactions, page, limit)

    def get_account_transactions(self, account_id: str, principal: Principal,
                                 page: int = 1, limit: int = 10) -> Dict[str, Any]:
        return self.list_transactions(principal, account_id=account_id, page=page, limit=limit)

    def _log_movement_events(self, account: Account, transaction: Transaction,
                             principal: Principal) -> None:
        # Runs inside the ledger unit
        self.audit_trail.log_event(
            AuditEventType.TRANSACTION_POSTED, "transaction", transaction.id,
            metadata={
                "account_id": account.id,
                "type": transaction.transaction_type.value,
                "direction": transaction.direction.value,
                "amount": transaction.amount,
                "balance_after": transaction.balance_after,
            },
            user_id=principal.user_id
        )
        if transaction.reverses_transaction_id:
            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_REVERSED, "transaction",
                transaction.reverses_transaction_id,
                metadata={"reversal_id": transaction.id,
                          "reason": transaction.metadata.get("reason")},
                user_id=principal.user_id
            )

    def _find_by_reference(self, reference_number: str) -> Optional[Transaction]:
        matches = self.storage.find(self.transactions_table, {"reference_number": reference_number})
        return Transaction.from_dict(matches[0]) if matches else None

    def _load(self, filters: Dict[str, Any]) -> List[Transaction]:
        return [Transaction.from_dict(d) for d in self.storage.find(self.transactions_table, filters)]
