"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every balance and principal mutation is logged here, as well as every
compensating rollback and every failed rollback that needs manual
reconciliation.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Account events
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_CREDITED = "account_credited"
    ACCOUNT_DEBITED = "account_debited"
    ACCOUNT_FEE_CHARGED = "account_fee_charged"
    ACCOUNT_OVERDRAWN = "account_overdrawn"
    ACCOUNT_CLOSED = "account_closed"

    # Loan events
    LOAN_ORIGINATED = "loan_originated"
    LOAN_PAYMENT_MADE = "loan_payment_made"
    LOAN_PAID_OFF = "loan_paid_off"
    LOAN_VOIDED = "loan_voided"
    LOAN_RESTORED = "loan_restored"

    # Coordinator events
    COMPENSATION_APPLIED = "compensation_applied"
    RECONCILIATION_REQUIRED = "reconciliation_required"


def _plain(value: Any) -> Any:
    # json.dumps fallback for the non-JSON values ledgers put in metadata
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Cannot store {type(value).__name__} in audit metadata")


@dataclass
class AuditEvent(StorageRecord):
    """
    One link of the audit chain

    current_hash covers everything but the storage id, which is only
    assigned after hashing; previous_hash fixes the position in the chain.
    """
    event_type: AuditEventType
    entity_type: str  # account, loan
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]

    def __post_init__(self):
        self.metadata = json.loads(json.dumps(self.metadata or {}, default=_plain))

    def calculate_hash(self) -> str:
        payload = json.dumps({
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Append-only audit log on top of a storage table

    One trail instance should own a given table; the chain head is read once
    at construction and then tracked in memory.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        events = storage.load_all(table_name)
        self._head = events[-1]['current_hash'] if events else ""

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: Any,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: Type of audit event
            entity_type: "account" or "loan"
            entity_id: Id of the entity; stored as a string
            metadata: Event details; Decimal, datetime, Enum and set values
                are converted to JSON types

        Returns:
            The stored AuditEvent with its id assigned
        """
        with self._lock:
            event = AuditEvent(
                id=None,
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
                previous_hash=self._head,
                current_hash="",
                metadata=metadata
            )
            event.current_hash = event.calculate_hash()

            data = event.to_dict()
            data.pop('id')
            event.id = self.storage.insert(self.table_name, data)
            # Only advance the head once the event is stored
            self._head = event.current_hash
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: Any) -> List[AuditEvent]:
        """Events for one account or loan, oldest first"""
        return self._find({'entity_type': entity_type, 'entity_id': str(entity_id)})

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return self._find({'event_type': event_type.value})

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain

        Returns:
            ``valid``, ``total_events``, ``hash_errors`` (events whose content
            no longer matches their hash) and ``chain_breaks`` (events whose
            previous_hash does not match the event before them)
        """
        hash_errors = []
        chain_breaks = []
        expected_previous = ""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]

        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({'event_id': event.id, 'position': position})
            if event.previous_hash != expected_previous:
                chain_breaks.append({'event_id': event.id, 'position': position})
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def _find(self, filters: Dict[str, Any]) -> List[AuditEvent]:
        return [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
