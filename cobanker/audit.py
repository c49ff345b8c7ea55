"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every lifecycle transition and ledger movement is logged here.

Events are ordered by a monotonically increasing sequence number rather than
by timestamp, so two events written in the same microsecond still chain in
a single well-defined order.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import DuplicateRecordError
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord, _to_storable

T = TypeVar("T")

logger = logging.getLogger("cobanker.audit")


def is_sequence_race(error: DuplicateRecordError) -> bool:
    """True when a unit lost the race for the next audit sequence number"""
    return error.field == "sequence"


class AuditEventType(Enum):
    """Types of audit events"""
    # Directory events
    BANK_CREATED = "bank_created"
    BRANCH_CREATED = "branch_created"
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_ACTIVATED = "customer_activated"

    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_ACTIVATED = "account_activated"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_CLOSED = "account_closed"

    # Ledger events
    TRANSACTION_POSTED = "transaction_posted"
    TRANSACTION_REVERSED = "transaction_reversed"
    ACCOUNT_RECONCILED = "account_reconciled"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    event_type: AuditEventType
    entity_type: str  # account, transaction, customer, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    An event is written in the same unit of work as the change it records,
    so a change commits together with its event or not at all. Two writers
    that pick the same sequence number collide on the unique index; the
    loser's unit rolls back with DuplicateRecordError(field="sequence")
    and is safe to run again.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True, max_attempts: int = 5):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self.max_attempts = max_attempts
        self.storage.ensure_unique_index(self.table_name, "sequence")

    def _events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _last(self) -> Optional[Dict[str, Any]]:
        last = None
        for data in self.storage.load_all(self.table_name):
            if last is None or data['sequence'] > last['sequence']:
                last = data
        return last

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain

        Returns:
            The created AuditEvent, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        # Joins the caller's unit when there is one
        with self.storage.atomic():
            last = self._last()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=(last['sequence'] + 1) if last else 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=last['current_hash'] if last else "",
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.insert(self.table_name, event.id, event.to_dict())
            return event

    def write_with_event(
        self,
        write: Callable[[], T],
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> T:
        """
        Run `write` and log its event in one unit of work.

        A lost sequence race rolls both back and runs the unit again, so
        `write` must be repeatable.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.storage.atomic():
                    result = write()
                    self.log_event(event_type, entity_type, entity_id,
                                   metadata=metadata, user_id=user_id)
                return result
            except DuplicateRecordError as e:
                if not is_sequence_race(e) or attempt == self.max_attempts:
                    raise
                log_action(logger, "warning", "Audit sequence taken, retrying unit",
                           action="audit_retry", resource=f"{entity_type}:{entity_id}",
                           extra={"attempt": attempt})

    def try_log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an event that records a read rather than a change.

        A failure is logged and reported as None; the read it describes has
        already succeeded and its result stands.
        """
        try:
            return self.log_event(event_type, entity_type, entity_id,
                                  metadata=metadata, user_id=user_id)
        except Exception:
            log_action(logger, "error", f"Could not record {event_type.value} event",
                       user_id=user_id, action="audit_failed",
                       resource=f"{entity_type}:{entity_id}", exc_info=True)
            return None

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events for one entity, oldest first"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {
                'entity_type': entity_type,
                'entity_id': entity_id
            })
        ]
        events.sort(key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self._events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
