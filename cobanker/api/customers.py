"""
Bank, branch and customer endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import BankingSystem, get_banking_system, get_current_principal, require_roles
from .schemas import (
    CreateBankRequest,
    CreateBranchRequest,
    CreateCustomerRequest,
    directory_response,
)
from ..access import ACCOUNT_WRITERS, ADMIN_ONLY, Principal


router = APIRouter()


@router.post("/banks", status_code=status.HTTP_201_CREATED)
def create_bank(
    request: CreateBankRequest,
    principal: Principal = Depends(require_roles(ADMIN_ONLY)),
    system: BankingSystem = Depends(get_banking_system)
):
    bank = system.directory.create_bank(request.name, request.code, principal)
    return directory_response(bank)


@router.post("/branches", status_code=status.HTTP_201_CREATED)
def create_branch(
    request: CreateBranchRequest,
    principal: Principal = Depends(require_roles(ADMIN_ONLY)),
    system: BankingSystem = Depends(get_banking_system)
):
    branch = system.directory.create_branch(request.bank_id, request.name, principal)
    return directory_response(branch)


@router.post("/customers", status_code=status.HTTP_201_CREATED)
def create_customer(
    request: CreateCustomerRequest,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    """Create a new pending customer"""
    customer = system.directory.create_customer(
        name=request.name,
        email=request.email,
        bank_id=request.bank_id,
        branch_id=request.branch_id,
        principal=principal,
        phone=request.phone,
        kyc_verified=request.kyc_verified,
    )
    return directory_response(customer)


@router.get("/customers/{customer_id}")
def get_customer(
    customer_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get customer details"""
    customer = system.retry(lambda: system.directory.read_customer(customer_id, principal),
                            "get_customer")
    return directory_response(customer)


@router.patch("/customers/{customer_id}/activate")
def activate_customer(
    customer_id: str,
    principal: Principal = Depends(require_roles(ACCOUNT_WRITERS)),
    system: BankingSystem = Depends(get_banking_system)
):
    customer = system.directory.activate_customer(customer_id, principal)
    return directory_response(customer)
