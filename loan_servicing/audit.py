"""
Audit Trail Module

Tamper-evident log of servicing actions. Each event carries the SHA-256
hash of its predecessor. Every loan and installment mutation is logged here
together with the operator who performed it.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


# Supplies the id of the operator performing the current request
ActorProvider = Callable[[], Optional[str]]

SYSTEM_ACTOR = "system"


def system_actor() -> str:
    return SYSTEM_ACTOR


class AuditEventType(Enum):
    """Servicing actions recorded in the audit log"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_UPDATED = "loan_updated"
    LOAN_SEIZED = "loan_seized"
    LOAN_UNSEIZED = "loan_unseized"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    CLIENT_RESPONSE_RECORDED = "client_response_recorded"

    # Schedule events
    SCHEDULE_GENERATED = "schedule_generated"
    SCHEDULE_REGENERATED = "schedule_regenerated"

    # Ledger events
    PAYMENT_APPLIED = "payment_applied"
    SURCHARGE_UPDATED = "surcharge_updated"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    One entry in the servicing audit log

    current_hash covers every other field plus previous_hash, so editing or
    removing an entry breaks the chain from that point on.
    """
    event_type: AuditEventType
    entity_type: str    # loan or installment
    entity_id: str
    sequence: int       # position in the chain
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Turn Decimal, date and enum values into JSON-safe strings"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, (datetime, date)):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, (list, tuple)):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """SHA-256 over the canonical JSON of every field but current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """True if current_hash matches the stored fields"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Append-only log of loan and installment mutations

    Events are numbered by sequence; each links to its predecessor through
    previous_hash.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Dict[str, Any]:
        events = self.storage.load_all(self.table_name)
        if not events:
            return {'sequence': 0, 'hash': ""}
        last = max(events, key=lambda x: x.get('sequence', 0))
        return {'sequence': last.get('sequence', 0), 'hash': last.get('current_hash', "")}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the end of the chain

        Args:
            event_type: Action performed
            entity_type: "loan" or "installment"
            entity_id: Id of the loan or installment
            metadata: Action details (amounts, changed fields, ...)
            user_id: Operator who performed the action

        Returns:
            The stored AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            head = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Return only the most recent N events
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data), key=lambda x: x.sequence)

        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        return sorted((AuditEvent.from_dict(data) for data in events_data), key=lambda x: x.sequence)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Re-hash every event and check each link to its predecessor

        Returns:
            valid flag, event count, and the hash errors and chain breaks found
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = sorted(
            (AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)),
            key=lambda x: x.sequence
        )
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
        """Number of events in the log"""
        return self.storage.count(self.table_name)
