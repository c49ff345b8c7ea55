"""
Test suite for the ledger workflow

Covers movements, the balance floor, typed transactions, reference-number
replay, reversals, reconciliation and transaction queries.
"""

import random
from decimal import Decimal

import pytest

from cobanker.accounts import AccountStatus
from cobanker.errors import (
    AccessDenied, Conflict, DuplicateRecordError, InsufficientFunds, InvalidState, NotFound,
    StorageFailure, ValidationError
)
from cobanker.transactions import MovementDirection, TransactionStatus, TransactionType
from conftest import ADMIN, build_world, make_system, open_active


class TestRecordMovement:

    def setup_method(self):
        self.system = make_system()
        self.world = build_world(self.system)
        self.ledger = self.system.ledger
        self.staff = self.world.staff

    def test_savings_floor_scenario(self):
        account = open_active(self.world, balance="1000", minimum="500")

        with pytest.raises(InsufficientFunds):
            self.ledger.record_movement(account.id, "600", "debit", self.staff)
        assert self.system.account_manager.get_account(account.id).balance == Decimal("1000.00")

        result = self.ledger.record_movement(account.id, "300", "debit", self.staff)
        assert result.account.balance == Decimal("700.00")

        result = self.ledger.record_movement(account.id, "50", "credit", self.staff)
        assert result.account.balance == Decimal("750.00")

    def test_close_then_movement_fails(self):
        account = open_active(self.world)
        self.system.account_manager.close(account.id, self.staff)
        with pytest.raises(InvalidState):
            self.ledger.record_movement(account.id, "10", "credit", self.staff)

    def test_debit_down_to_exact_floor(self):
        account = open_active(self.world, balance="100", minimum="20", overdraft="30")
        result = self.ledger.record_movement(account.id, "110", "debit", self.staff)
        assert result.account.balance == Decimal("-10.00")
        with pytest.raises(InsufficientFunds):
            self.ledger.record_movement(account.id, "0.01", "debit", self.staff)

    def test_transaction_record_written_with_movement(self):
        account = open_active(self.world, balance="100")
        result = self.ledger.record_movement(account.id, "40", "debit", self.staff,
                                             description="cash")
        txn = self.ledger.get_transaction(result.transaction.id)
        assert txn.amount == Decimal("40.00")
        assert txn.direction == MovementDirection.DEBIT
        assert txn.balance_before == Decimal("100.00")
        assert txn.balance_after == Decimal("60.00")
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.performed_by == self.staff.user_id
        assert txn.bank_id == self.world.bank.id
        assert result.account.version == account.version + 1

    @pytest.mark.parametrize("amount", ["0", "-5", "0.004", "abc", None])
    def test_non_positive_or_invalid_amount(self, amount):
        account = open_active(self.world, balance="100")
        with pytest.raises(ValidationError):
            self.ledger.record_movement(account.id, amount, "credit", self.staff)

    def test_unknown_direction(self):
        account = open_active(self.world)
        with pytest.raises(ValidationError):
            self.ledger.record_movement(account.id, "1", "sideways", self.staff)

    def test_pending_and_suspended_accounts_reject_movements(self):
        manager = self.system.account_manager
        pending = manager.open_account(self.staff, self.world.customer.id, "savings",
                                       self.world.branch.id, self.world.bank.id)
        with pytest.raises(InvalidState):
            self.ledger.record_movement(pending.id, "1", "credit", self.staff)

        active = open_active(self.world)
        manager.suspend(active.id, self.staff, "hold")
        with pytest.raises(InvalidState):
            self.ledger.record_movement(active.id, "1", "credit", self.staff)

    def test_missing_account(self):
        with pytest.raises(NotFound):
            self.ledger.record_movement("ghost", "1", "credit", self.staff)

    def test_other_bank_denied(self):
        account = open_active(self.world, balance="100")
        other = build_world(self.system, code="OTHR")
        with pytest.raises(AccessDenied):
            self.ledger.record_movement(account.id, "1", "debit", other.staff)
        assert self.system.account_manager.get_account(account.id).balance == Decimal("100.00")

    def test_failed_insert_leaves_balance_unchanged(self, monkeypatch):
        account = open_active(self.world, balance="100")
        storage = self.system.storage
        real_insert = storage.insert

        def failing_insert(table, record_id, data):
            if table == "transactions":
                raise StorageFailure("disk full")
            return real_insert(table, record_id, data)

        monkeypatch.setattr(storage, "insert", failing_insert)
        with pytest.raises(StorageFailure):
            self.ledger.record_movement(account.id, "30", "debit", self.staff)

        stored = self.system.account_manager.get_account(account.id)
        assert stored.balance == Decimal("100.00")
        assert stored.version == account.version
        assert storage.count("transactions") == 0

    def test_failed_audit_write_leaves_balance_unchanged(self, monkeypatch):
        account = open_active(self.world, balance="100")
        events_before = self.system.audit_trail.count_events()

        def failing_log_event(*args, **kwargs):
            raise StorageFailure("audit store unreachable")

        monkeypatch.setattr(self.system.audit_trail, "log_event", failing_log_event)
        with pytest.raises(StorageFailure):
            self.ledger.record_movement(account.id, "40", "debit", self.staff)
        monkeypatch.undo()

        stored = self.system.account_manager.get_account(account.id)
        assert stored.balance == Decimal("100.00")
        assert stored.version == account.version
        assert self.system.storage.count("transactions") == 0
        assert self.system.audit_trail.count_events() == events_before

        # The client's retry applies the debit exactly once
        result = self.ledger.record_movement(account.id, "40", "debit", self.staff)
        assert result.account.balance == Decimal("60.00")
        assert self.system.storage.count("transactions") == 1

    def test_taken_audit_sequence_reruns_the_unit(self, monkeypatch):
        account = open_active(self.world, balance="100")
        audit = self.system.audit_trail
        real_log_event = audit.log_event
        raced = []

        def racing_log_event(*args, **kwargs):
            if not raced:
                raced.append(1)
                raise DuplicateRecordError("audit_events", "sequence", "1")
            return real_log_event(*args, **kwargs)

        monkeypatch.setattr(audit, "log_event", racing_log_event)
        result = self.ledger.record_movement(account.id, "40", "debit", self.staff)

        assert raced
        assert result.account.balance == Decimal("60.00")
        assert self.system.storage.count("transactions") == 1
        events = audit.get_events_for_entity("transaction", result.transaction.id)
        assert [e.event_type.value for e in events] == ["transaction_posted"]
        assert audit.verify_integrity()["valid"]

    def test_movement_and_audit_event_commit_together(self):
        account = open_active(self.world, balance="100")
        result = self.ledger.record_movement(account.id, "10", "credit", self.staff)
        events = self.system.audit_trail.get_events_for_entity("transaction",
                                                               result.transaction.id)
        assert len(events) == 1
        assert events[0].metadata["account_id"] == account.id

    def test_lost_swap_is_retried_against_fresh_balance(self, monkeypatch):
        account = open_active(self.world, balance="100")
        storage = self.system.storage
        real_swap = storage.compare_and_swap
        calls = []

        def interfering_swap(table, record_id, expected, data):
            if not calls:
                calls.append(1)
                # A concurrent writer debits 80 first
                self.ledger.record_movement(account.id, "80", "debit", self.staff)
            return real_swap(table, record_id, expected, data)

        monkeypatch.setattr(storage, "compare_and_swap", interfering_swap)
        with pytest.raises(InsufficientFunds):
            self.ledger.record_movement(account.id, "50", "debit", self.staff)
        assert self.system.account_manager.get_account(account.id).balance == Decimal("20.00")

    def test_endless_contention_is_conflict(self, monkeypatch):
        account = open_active(self.world, balance="100")
        monkeypatch.setattr(self.system.storage, "compare_and_swap", lambda *a, **k: False)
        with pytest.raises(Conflict):
            self.ledger.record_movement(account.id, "1", "debit", self.staff)


class TestBalanceProperties:
    """Seeded random checks of the ledger invariants"""

    def setup_method(self):
        self.system = make_system(enable_audit_logging=False)
        self.world = build_world(self.system)
        self.ledger = self.system.ledger
        self.staff = self.world.staff

    def test_floor_never_crossed(self):
        rng = random.Random(20240601)
        for _ in range(150):
            balance = Decimal(rng.randint(0, 200000)) / 100
            minimum = Decimal(rng.randint(0, 100000)) / 100
            overdraft = Decimal(rng.randint(0, 50000)) / 100
            if balance < minimum - overdraft:
                balance = minimum - overdraft
            if balance < 0:
                balance = Decimal("0")
            amount = Decimal(rng.randint(1, 300000)) / 100

            account = open_active(self.world, balance=str(balance), minimum=str(minimum),
                                  overdraft=str(overdraft))
            floor = account.balance_floor
            try:
                result = self.ledger.record_movement(account.id, amount, "debit", self.staff)
            except InsufficientFunds:
                assert account.balance - amount < floor
                stored = self.system.account_manager.get_account(account.id)
                assert stored.balance == account.balance
            else:
                assert result.account.balance >= floor
                assert result.account.balance == account.balance - amount

    def test_balance_equals_opening_plus_history(self):
        rng = random.Random(7)
        account = open_active(self.world, balance="500", minimum="100", overdraft="50")
        for _ in range(200):
            direction = rng.choice(["credit", "debit"])
            amount = Decimal(rng.randint(1, 40000)) / 100
            try:
                self.ledger.record_movement(account.id, amount, direction, self.staff)
            except InsufficientFunds:
                pass

        stored = self.system.account_manager.get_account(account.id)
        history = self.ledger._load({"account_id": account.id})
        net = sum((t.signed_amount for t in history), Decimal("0"))
        assert stored.balance == stored.opening_balance + net
        assert stored.balance >= stored.balance_floor

        report = self.ledger.reconcile_account(account.id, self.staff)
        assert report["balanced"]
        assert report["transaction_count"] == len(history)


class TestTypedTransactions:

    def setup_method(self):
        self.system = make_system()
        self.world = build_world(self.system)
        self.ledger = self.system.ledger
        self.staff = self.world.staff
        self.account = open_active(self.world, balance="1000")

    @pytest.mark.parametrize("txn_type, expected", [
        ("deposit", Decimal("1100.00")),
        ("loan_repayment", Decimal("1100.00")),
        ("withdrawal", Decimal("900.00")),
        ("inter_branch_transfer", Decimal("900.00")),
    ])
    def test_type_implies_direction(self, txn_type, expected):
        result = self.ledger.post_transaction(self.staff, self.account.id, txn_type, "100")
        assert result.account.balance == expected
        assert result.transaction.transaction_type == TransactionType(txn_type)

    def test_adjustment_needs_direction(self):
        with pytest.raises(ValidationError):
            self.ledger.post_transaction(self.staff, self.account.id, "adjustment", "5")
        result = self.ledger.post_transaction(self.staff, self.account.id, "adjustment", "5",
                                              direction="debit")
        assert result.account.balance == Decimal("995.00")

    def test_contradicting_direction_rejected(self):
        with pytest.raises(ValidationError):
            self.ledger.post_transaction(self.staff, self.account.id, "deposit", "5",
                                         direction="debit")

    def test_reversal_type_not_postable(self):
        with pytest.raises(ValidationError):
            self.ledger.post_transaction(self.staff, self.account.id, "reversal", "5",
                                         direction="credit")

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            self.ledger.post_transaction(self.staff, self.account.id, "dividend", "5")

    def test_member_and_metadata_recorded(self):
        result = self.ledger.post_transaction(self.staff, self.account.id, "deposit", "5",
                                              member_id="M-1", metadata={"channel": "branch"})
        txn = self.ledger.get_transaction(result.transaction.id)
        assert txn.member_id == "M-1"
        assert txn.metadata == {"channel": "branch"}


class TestReferenceReplay:

    def setup_method(self):
        self.system = make_system()
        self.world = build_world(self.system)
        self.ledger = self.system.ledger
        self.staff = self.world.staff
        self.account = open_active(self.world, balance="100")

    def test_same_request_replays(self):
        first = self.ledger.post_transaction(self.staff, self.account.id, "withdrawal", "30",
                                             reference_number="REF-1")
        second = self.ledger.post_transaction(self.staff, self.account.id, "withdrawal", "30",
                                              reference_number="REF-1")
        assert not first.replayed
        assert second.replayed
        assert second.transaction.id == first.transaction.id
        assert self.system.account_manager.get_account(self.account.id).balance == Decimal("70.00")
        assert self.system.storage.count("transactions") == 1

    def test_reuse_with_different_amount_conflicts(self):
        self.ledger.post_transaction(self.staff, self.account.id, "deposit", "30",
                                     reference_number="REF-2")
        with pytest.raises(Conflict):
            self.ledger.post_transaction(self.staff, self.account.id, "deposit", "31",
                                         reference_number="REF-2")

    def test_reuse_on_another_account_conflicts(self):
        other = open_active(self.world, balance="100")
        self.ledger.post_transaction(self.staff, self.account.id, "deposit", "30",
                                     reference_number="REF-3")
        with pytest.raises(Conflict):
            self.ledger.post_transaction(self.staff, other.id, "deposit", "30",
                                         reference_number="REF-3")

    def test_duplicate_reference_race_replays(self, monkeypatch):
        storage = self.system.storage
        real_find = storage.find
        raced = []

        def racing_find(table, filters):
            # The first reference lookup misses while a twin request commits
            if table == "transactions" and "reference_number" in filters and not raced:
                raced.append(1)
                monkeypatch.setattr(storage, "find", real_find)
                self.ledger.post_transaction(self.staff, self.account.id, "deposit", "10",
                                             reference_number="REF-R")
                return []
            return real_find(table, filters)

        monkeypatch.setattr(storage, "find", racing_find)
        result = self.ledger.post_transaction(self.staff, self.account.id, "deposit", "10",
                                              reference_number="REF-R")
        assert result.replayed
        assert self.system.account_manager.get_account(self.account.id).balance == Decimal("110.00")


class TestReversals:

    def setup_method(self):
        self.system = make_system()
        self.world = build_world(self.system)
        self.ledger = self.system.ledger
        self.staff = self.world.staff

    def test_reverse_debit_restores_balance(self):
        account = open_active(self.world, balance="100")
        original = self.ledger.post_transaction(self.staff, account.id, "withdrawal", "40")
        reversal = self.ledger.reverse_transaction(original.transaction.id, ADMIN, "teller error")

        assert reversal.account.balance == Decimal("100.00")
        txn = reversal.transaction
        assert txn.transaction_type == TransactionType.REVERSAL
        assert txn.direction == MovementDirection.CREDIT
        assert txn.reference_number == f"REV-{original.transaction.id}"
        assert txn.reverses_transaction_id == original.transaction.id

    def test_reverse_only_once(self):
        account = open_active(self.world, balance="100")
        original = self.ledger.post_transaction(self.staff, account.id, "deposit", "40")
        self.ledger.reverse_transaction(original.transaction.id, ADMIN)
        with pytest.raises(Conflict):
            self.ledger.reverse_transaction(original.transaction.id, ADMIN)
        assert self.system.account_manager.get_account(account.id).balance == Decimal("100.00")

    def test_reversal_cannot_be_reversed(self):
        account = open_active(self.world, balance="100")
        original = self.ledger.post_transaction(self.staff, account.id, "deposit", "40")
        reversal = self.ledger.reverse_transaction(original.transaction.id, ADMIN)
        with pytest.raises(InvalidState):
            self.ledger.reverse_transaction(reversal.transaction.id, ADMIN)

    def test_reversing_credit_respects_floor(self):
        account = open_active(self.world, balance="0")
        deposit = self.ledger.post_transaction(self.staff, account.id, "deposit", "100")
        self.ledger.post_transaction(self.staff, account.id, "withdrawal", "80")
        with pytest.raises(InsufficientFunds):
            self.ledger.reverse_transaction(deposit.transaction.id, ADMIN)

    def test_unknown_transaction(self):
        with pytest.raises(NotFound):
            self.ledger.reverse_transaction("ghost", ADMIN)


class TestReconciliationAndQueries:

    def setup_method(self):
        self.system = make_system()
        self.world = build_world(self.system)
        self.ledger = self.system.ledger
        self.staff = self.world.staff
        self.account = open_active(self.world, balance="200")

    def test_reconcile_detects_tampering(self):
        self.ledger.post_transaction(self.staff, self.account.id, "deposit", "50")
        report = self.ledger.reconcile_account(self.account.id, self.staff)
        assert report["balanced"]
        assert report["expected_balance"] == Decimal("250.00")

        data = self.system.storage.load("accounts", self.account.id)
        data["balance"] = "999.00"
        self.system.storage.save("accounts", self.account.id, data)

        report = self.ledger.reconcile_account(self.account.id, self.staff)
        assert not report["balanced"]
        assert report["difference"] == Decimal("749.00")

    def test_reconcile_report_survives_audit_failure(self, monkeypatch):
        def failing_log_event(*args, **kwargs):
            raise StorageFailure("audit store unreachable")

        monkeypatch.setattr(self.system.audit_trail, "log_event", failing_log_event)
        report = self.ledger.reconcile_account(self.account.id, self.staff)
        assert report["balanced"]
        assert report["expected_balance"] == Decimal("200.00")

    def test_list_filters_and_newest_first(self):
        first = self.ledger.post_transaction(self.staff, self.account.id, "deposit", "10",
                                             member_id="M-1")
        second = self.ledger.post_transaction(self.staff, self.account.id, "withdrawal", "5")
        third = self.ledger.post_transaction(self.staff, self.account.id, "deposit", "1")

        page = self.ledger.list_transactions(self.staff, account_id=self.account.id)
        assert [t.id for t in page["items"]] == [
            third.transaction.id, second.transaction.id, first.transaction.id
        ]

        deposits = self.ledger.list_transactions(self.staff, transaction_type="deposit")
        assert deposits["total"] == 2
        debits = self.ledger.list_transactions(self.staff, direction="debit")
        assert [t.id for t in debits["items"]] == [second.transaction.id]
        by_member = self.ledger.list_transactions(self.staff, member_id="M-1")
        assert [t.id for t in by_member["items"]] == [first.transaction.id]

    def test_listing_is_tenant_scoped(self):
        self.ledger.post_transaction(self.staff, self.account.id, "deposit", "10")
        other = build_world(self.system, code="OTHR")
        other_account = open_active(other, balance="10")
        self.ledger.post_transaction(other.staff, other_account.id, "deposit", "10")

        assert self.ledger.list_transactions(self.staff)["total"] == 1
        assert self.ledger.list_transactions(ADMIN)["total"] == 2
        with pytest.raises(AccessDenied):
            self.ledger.list_transactions(other.staff, account_id=self.account.id)

    def test_get_transaction_tenant_check(self):
        result = self.ledger.post_transaction(self.staff, self.account.id, "deposit", "10")
        other = build_world(self.system, code="OTHR")
        with pytest.raises(AccessDenied):
            self.ledger.read_transaction(result.transaction.id, other.staff)
        with pytest.raises(NotFound):
            self.ledger.read_transaction("ghost", self.staff)

    def test_closed_account_history_still_readable(self):
        account = open_active(self.world, balance="10")
        self.ledger.post_transaction(self.staff, account.id, "withdrawal", "10")
        self.system.account_manager.close(account.id, self.staff)
        assert self.system.account_manager.get_account(account.id).status == AccountStatus.CLOSED
        history = self.ledger.get_account_transactions(account.id, self.staff)
        assert history["total"] == 1
