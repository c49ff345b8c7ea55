"""
Account management endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import BankingSystem, get_banking_system, get_current_principal, require_roles
from .schemas import (
    BalanceAdjustmentRequest,
    CreateAccountRequest,
    SuspendAccountRequest,
    UpdateAccountRequest,
    account_response,
    movement_response,
    page_response,
    to_json,
    transaction_response,
)
from ..access import ACCOUNT_WRITERS, RECONCILIATION_ROLES, STATS_ROLES, Principal
from ..transactions import TransactionType


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open a new pending account"""
    account = system.account_manager.open_account(
        principal,
        customer_id=request.customer_id,
        account_type=request.account_type,
        branch_id=request.branch_id,
        bank_id=request.bank_id,
        initial_balance=request.initial_balance,
        interest_rate=request.interest_rate,
        minimum_balance=request.minimum_balance,
        overdraft_limit=request.overdraft_limit,
        monthly_maintenance_fee=request.monthly_maintenance_fee,
        description=request.description,
    )
    return {
        "account": account_response(account),
        "message": "Account created successfully"
    }


@router.get("/stats")
def account_stats(
    bank_id: Optional[str] = None,
    principal: Principal = Depends(require_roles(STATS_ROLES)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Counts and balance totals by type and status"""
    stats = system.retry(lambda: system.account_manager.account_stats(principal, bank_id),
                         "account_stats")
    return to_json(stats)


@router.get("/number/{account_number}")
def get_account_by_number(
    account_number: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.retry(
        lambda: system.account_manager.get_account_by_number(account_number, principal),
        "get_account_by_number",
    )
    return account_response(account)


@router.get("/customer/{customer_id}")
def list_customer_accounts(
    customer_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    status: Optional[str] = None,
    account_type: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Accounts of a customer, newest first"""
    result = system.retry(
        lambda: system.account_manager.list_customer_accounts(
            customer_id, principal,
            page=page, limit=system.page_limit(limit),
            status=status, account_type=account_type,
        ),
        "list_customer_accounts",
    )
    return page_response(result, "accounts", account_response)


@router.get("/{account_id}")
def get_account(
    account_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get account details"""
    account = system.retry(lambda: system.account_manager.read_account(account_id, principal),
                           "get_account")
    return account_response(account)


@router.get("/{account_id}/summary")
def get_account_summary(
    account_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    summary = system.retry(lambda: system.account_manager.get_summary(account_id, principal),
                           "get_summary")
    return to_json(summary)


@router.get("/{account_id}/transactions")
def get_account_transactions(
    account_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get transaction history for account"""
    result = system.retry(
        lambda: system.ledger.get_account_transactions(
            account_id, principal, page=page, limit=system.page_limit(limit)
        ),
        "get_account_transactions",
    )
    return page_response(result, "transactions", transaction_response)


@router.get("/{account_id}/reconciliation")
def reconcile_account(
    account_id: str,
    principal: Principal = Depends(require_roles(RECONCILIATION_ROLES)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Compare the balance with opening balance plus the transaction history"""
    report = system.retry(lambda: system.ledger.reconcile_account(account_id, principal),
                          "reconcile_account")
    return to_json(report)


@router.put("/{account_id}")
def update_account(
    account_id: str,
    request: UpdateAccountRequest,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Edit product terms of an account"""
    account = system.account_manager.update_account(
        account_id, principal, **request.model_dump(exclude_unset=True)
    )
    return account_response(account)


@router.patch("/{account_id}/balance")
def adjust_balance(
    account_id: str,
    request: BalanceAdjustmentRequest,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Manual credit or debit recorded as an adjustment"""
    def apply():
        return system.ledger.record_movement(
            account_id, request.amount, request.direction, principal,
            description=request.description,
            reference_number=request.reference_number,
            transaction_type=TransactionType.ADJUSTMENT,
        )

    # Only a referenced movement is safe to repeat
    result = system.retry(apply, "adjust_balance") if request.reference_number else apply()
    return movement_response(result)


@router.patch("/{account_id}/close")
def close_account(
    account_id: str,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    return account_response(system.account_manager.close(account_id, principal))


@router.patch("/{account_id}/suspend")
def suspend_account(
    account_id: str,
    request: SuspendAccountRequest,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    return account_response(system.account_manager.suspend(account_id, principal, request.reason))


@router.patch("/{account_id}/activate")
def activate_account(
    account_id: str,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    return account_response(system.account_manager.activate(account_id, principal))
