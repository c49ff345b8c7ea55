"""
Error Taxonomy Module

Every failure the ledger can report derives from CobankerError. Each class
carries the HTTP status and machine-readable code the API layer answers with.
"""

from typing import Optional


class CobankerError(Exception):
    """Base class for all domain errors"""

    http_status = 500
    error_code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.error_code


class ValidationError(CobankerError):
    """Malformed or out-of-range input"""

    http_status = 400
    error_code = "validation_error"


class NotFound(CobankerError):
    """Referenced entity does not exist"""

    http_status = 404
    error_code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity.capitalize()} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class AccessDenied(CobankerError):
    """Caller may not act on a row outside their bank"""

    http_status = 403
    error_code = "access_denied"


class InvalidState(CobankerError):
    """Operation is not legal for the entity's current lifecycle state"""

    http_status = 400
    error_code = "invalid_state"


class InsufficientFunds(CobankerError):
    """Debit would take the balance below the account's floor"""

    http_status = 400
    error_code = "insufficient_funds"


class Conflict(CobankerError):
    """Uniqueness violation or lost update"""

    http_status = 409
    error_code = "conflict"


class DuplicateRecordError(Conflict):
    """A unique field already holds the given value"""

    def __init__(self, table: str, field: Optional[str] = None, value: Optional[str] = None):
        if field:
            message = f"Duplicate {field} in {table}: {value}"
        else:
            message = f"Duplicate record in {table}"
        super().__init__(message)
        self.table = table
        self.field = field
        self.value = value


class StorageFailure(CobankerError):
    """Datastore unreachable or timed out; safe to retry with backoff"""

    http_status = 503
    error_code = "storage_failure"
