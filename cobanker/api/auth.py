"""
Authentication and authorization dependencies
"""

import logging
from typing import Callable, Iterable, Optional, TypeVar

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..access import Principal, Role
from ..accounts import AccountManager, AccountNumberGenerator
from ..audit import AuditTrail
from ..config import CobankerConfig, get_config
from ..directory import DirectoryManager
from ..errors import AccessDenied, StorageFailure
from ..logging_config import log_action
from ..retry import retry_storage_call
from ..storage import StorageInterface, create_storage
from ..transactions import LedgerWorkflow

T = TypeVar("T")

logger = logging.getLogger("cobanker.api")

security = HTTPBearer(auto_error=False)


class BankingSystem:
    """Ledger service with all components initialized"""

    def __init__(self, config: Optional[CobankerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url,
                                                 self.config.sqlite_timeout)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.directory = DirectoryManager(self.storage, self.audit_trail)
        self.account_manager = AccountManager(
            self.storage, self.directory, self.audit_trail,
            number_generator=AccountNumberGenerator(self.config.account_number_prefix),
            number_attempts=self.config.account_number_attempts,
            max_attempts=self.config.movement_max_attempts,
        )
        self.ledger = LedgerWorkflow(
            self.storage, self.account_manager, self.audit_trail,
            max_attempts=self.config.movement_max_attempts,
        )

    def retry(self, func: Callable[[], T], description: Optional[str] = None) -> T:
        """Run a repeatable call with the configured storage backoff"""
        return retry_storage_call(
            func,
            attempts=self.config.storage_retry_attempts,
            base_delay=self.config.storage_retry_base_delay,
            max_delay=self.config.storage_retry_max_delay,
            description=description,
        )

    def page_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_page_size
        return min(limit, self.config.max_page_size)

    def close(self) -> None:
        self.storage.close()


# Dependency to get banking system
def get_banking_system(request: Request) -> BankingSystem:
    system = getattr(request.app.state, "system", None)
    if system is None:
        raise StorageFailure("Ledger service is not initialized")
    return system


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: BankingSystem = Depends(get_banking_system)
) -> Principal:
    """Dependency that validates the bearer JWT and returns the caller"""
    if not credentials:
        raise _unauthorized("Not authenticated")

    config = system.config
    options = {"verify_aud": config.jwt_audience is not None}
    try:
        payload = jwt.decode(
            credentials.credentials,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm],
            audience=config.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")

    try:
        return Principal.from_claims(payload)
    except ValueError:
        raise _unauthorized("Invalid token")


def require_roles(roles: Iterable[Role]):
    """Dependency factory for role checking"""
    allowed = frozenset(roles)

    def check(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            log_action(logger, "warning", "Role not permitted for endpoint",
                       user_id=principal.user_id, action="authorize",
                       extra={"role": principal.role.value})
            raise AccessDenied("Insufficient permissions")
        return principal

    return check
