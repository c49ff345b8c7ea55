"""
Shared fixtures and builders for the CoBanker test suite
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from cobanker.access import Principal, Role
from cobanker.accounts import Account
from cobanker.api.auth import BankingSystem
from cobanker.config import CobankerConfig
from cobanker.directory import Bank, Branch, Customer
from cobanker.storage import InMemoryStorage, StorageInterface

SECRET = "test-secret"

ADMIN = Principal(user_id="admin-1", role=Role.ADMIN)


def make_config(**overrides) -> CobankerConfig:
    values = dict(
        database_url="memory://",
        jwt_secret=SECRET,
        log_format="text",
        storage_retry_base_delay=0.0,
        storage_retry_max_delay=0.0,
    )
    values.update(overrides)
    return CobankerConfig(**values)


def make_system(storage: StorageInterface = None, **overrides) -> BankingSystem:
    return BankingSystem(make_config(**overrides), storage=storage or InMemoryStorage())


@dataclass
class World:
    """One bank with a branch, an active customer and a staff member"""
    system: BankingSystem
    bank: Bank
    branch: Branch
    customer: Customer
    staff: Principal


def build_world(system: BankingSystem, code: str = "COOP") -> World:
    directory = system.directory
    bank = directory.create_bank(f"{code} Bank", code, ADMIN)
    branch = directory.create_branch(bank.id, "Main Street", ADMIN)
    customer = directory.create_customer(
        "Asha Rao", f"asha.{code.lower()}@example.com", bank.id, branch.id, ADMIN
    )
    customer = directory.activate_customer(customer.id, ADMIN)
    staff = Principal(user_id=f"staff-{code.lower()}", role=Role.BANK_EMPLOYEE,
                      bank_id=bank.id, branch_id=branch.id)
    return World(system=system, bank=bank, branch=branch, customer=customer, staff=staff)


def open_active(world: World, balance="0", minimum="0", overdraft="0",
                account_type="savings") -> Account:
    manager = world.system.account_manager
    account = manager.open_account(
        world.staff,
        customer_id=world.customer.id,
        account_type=account_type,
        branch_id=world.branch.id,
        bank_id=world.bank.id,
        initial_balance=balance,
        minimum_balance=minimum,
        overdraft_limit=overdraft,
    )
    return manager.activate(account.id, world.staff)


def mint_token(role: str, bank_id: str = None, sub: str = "user-1", branch_id: str = None,
               secret: str = SECRET, expires_in: int = 3600) -> str:
    claims = {
        "sub": sub,
        "role": role,
        "bank_id": bank_id,
        "branch_id": branch_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def system():
    system = make_system()
    yield system
    system.close()


@pytest.fixture
def world(system):
    return build_world(system)
