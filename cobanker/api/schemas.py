"""
Pydantic schemas for API requests and response serialization
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, Field

from ..accounts import Account
from ..money import format_amount
from ..transactions import MovementResult, Transaction


def to_json(value: Any) -> Any:
    """Render amounts as fixed two-place strings, never floats"""
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    return value


# Account schemas
class CreateAccountRequest(BaseModel):
    customer_id: str
    account_type: str = Field(..., description="savings, current, fixed_deposit, recurring_deposit, loan, demat")
    branch_id: str
    bank_id: str
    initial_balance: Decimal = Decimal("0")
    interest_rate: Decimal = Decimal("0")
    minimum_balance: Decimal = Decimal("0")
    overdraft_limit: Decimal = Decimal("0")
    monthly_maintenance_fee: Decimal = Decimal("0")
    description: Optional[str] = None


class UpdateAccountRequest(BaseModel):
    account_type: Optional[str] = None
    interest_rate: Optional[Decimal] = None
    minimum_balance: Optional[Decimal] = None
    overdraft_limit: Optional[Decimal] = None
    monthly_maintenance_fee: Optional[Decimal] = None
    description: Optional[str] = None


class BalanceAdjustmentRequest(BaseModel):
    amount: Decimal
    direction: str = Field(..., validation_alias=AliasChoices("direction", "transaction_type"),
                           description="credit or debit")
    description: Optional[str] = None
    reference_number: Optional[str] = None


class SuspendAccountRequest(BaseModel):
    reason: Optional[str] = None


# Transaction schemas
class CreateTransactionRequest(BaseModel):
    account_id: str
    transaction_type: str = Field(..., description="deposit, withdrawal, loan_repayment, inter_branch_transfer, adjustment")
    amount: Decimal
    direction: Optional[str] = Field(None, description="Required for adjustments")
    description: Optional[str] = None
    reference_number: Optional[str] = None
    member_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReverseTransactionRequest(BaseModel):
    reason: Optional[str] = None


# Directory schemas
class CreateBankRequest(BaseModel):
    name: str
    code: str


class CreateBranchRequest(BaseModel):
    bank_id: str
    name: str


class CreateCustomerRequest(BaseModel):
    name: str
    email: str
    bank_id: str
    branch_id: str
    phone: Optional[str] = None
    kyc_verified: bool = False


def account_response(account: Account) -> Dict[str, Any]:
    data = to_json(account.to_dict())
    data["balance_floor"] = format_amount(account.balance_floor)
    return data


def transaction_response(transaction: Transaction) -> Dict[str, Any]:
    return to_json(transaction.to_dict())


def movement_response(result: MovementResult) -> Dict[str, Any]:
    return {
        "account": to_json(result.account.summary()),
        "transaction": transaction_response(result.transaction),
        "replayed": result.replayed,
    }


def page_response(page: Dict[str, Any], key: str, render) -> Dict[str, Any]:
    return {
        key: [render(item) for item in page["items"]],
        "pagination": {
            "total": page["total"],
            "page": page["page"],
            "limit": page["limit"],
            "pages": page["pages"],
        },
    }


def directory_response(record: Any) -> Dict[str, Any]:
    """Banks, branches and customers serialize field-for-field"""
    return to_json(record.to_dict())
