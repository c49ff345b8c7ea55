"""
Transaction processing endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import BankingSystem, get_banking_system, require_roles
from .schemas import (
    CreateTransactionRequest,
    ReverseTransactionRequest,
    movement_response,
    page_response,
    transaction_response,
)
from ..access import REVERSAL_ROLES, TRANSACTION_ROLES, Principal


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_transaction(
    request: CreateTransactionRequest,
    principal: Principal = Depends(require_roles(TRANSACTION_ROLES)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Post a typed transaction against one account"""
    def post():
        return system.ledger.post_transaction(
            principal,
            account_id=request.account_id,
            transaction_type=request.transaction_type,
            amount=request.amount,
            direction=request.direction,
            description=request.description,
            reference_number=request.reference_number,
            member_id=request.member_id,
            metadata=request.metadata,
        )

    result = system.retry(post, "post_transaction") if request.reference_number else post()
    return movement_response(result)


@router.get("")
def list_transactions(
    account_id: Optional[str] = None,
    member_id: Optional[str] = None,
    transaction_type: Optional[str] = None,
    status: Optional[str] = None,
    direction: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(require_roles(TRANSACTION_ROLES)),
    system: BankingSystem = Depends(get_banking_system)
):
    """List transactions visible to the caller, newest first"""
    result = system.retry(
        lambda: system.ledger.list_transactions(
            principal,
            account_id=account_id,
            member_id=member_id,
            transaction_type=transaction_type,
            status=status,
            direction=direction,
            page=page,
            limit=system.page_limit(limit),
        ),
        "list_transactions",
    )
    return page_response(result, "transactions", transaction_response)


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: str,
    principal: Principal = Depends(require_roles(TRANSACTION_ROLES)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get transaction details"""
    transaction = system.retry(
        lambda: system.ledger.read_transaction(transaction_id, principal), "get_transaction"
    )
    return transaction_response(transaction)


@router.post("/{transaction_id}/reverse", status_code=status.HTTP_201_CREATED)
def reverse_transaction(
    transaction_id: str,
    request: Optional[ReverseTransactionRequest] = None,
    principal: Principal = Depends(require_roles(REVERSAL_ROLES)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Offset a transaction with one in the opposite direction"""
    reason = request.reason if request else None
    result = system.ledger.reverse_transaction(transaction_id, principal, reason)
    return movement_response(result)
