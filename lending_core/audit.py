"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.

The engine treats the audit trail as an external sink: ``record()`` never
raises, so a broken audit store shows up as an error log line and never as a
failed or rolled-back payment.
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .events import DomainEvent, EventDispatcher, EventPayload


logger = logging.getLogger("lending.audit")


class AuditAction(Enum):
    """Auditable business actions"""
    CREATE_LOAN = "CREATE_LOAN"
    CANCEL_LOAN = "CANCEL_LOAN"
    MARK_LOAN_OVERDUE = "MARK_LOAN_OVERDUE"
    REGISTER_PAYMENT = "REGISTER_PAYMENT"
    REVERSE_PAYMENT = "REVERSE_PAYMENT"


# Domain events that produce an audit entry
EVENT_ACTIONS = {
    DomainEvent.LOAN_ORIGINATED: AuditAction.CREATE_LOAN,
    DomainEvent.LOAN_CANCELED: AuditAction.CANCEL_LOAN,
    DomainEvent.LOAN_OVERDUE: AuditAction.MARK_LOAN_OVERDUE,
    DomainEvent.PAYMENT_APPLIED: AuditAction.REGISTER_PAYMENT,
    DomainEvent.PAYMENT_REVERSED: AuditAction.REVERSE_PAYMENT,
}


def _json_safe(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    elif hasattr(value, 'isoformat'):
        return value.isoformat()
    return value


class AuditSink(ABC):
    """Destination for audit records. Implementations must never raise."""

    @abstractmethod
    def record(self, actor_id: Optional[str], action: AuditAction, entity_type: str,
               entity_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        pass

    def handle_event(self, event: EventPayload) -> None:
        """Dispatcher handler translating domain events into audit records"""
        action = EVENT_ACTIONS.get(event.event_type)
        if action is None:
            return
        self.record(event.actor_id, action, event.entity_type, event.entity_id, event.data)

    def attach(self, dispatcher: EventDispatcher) -> None:
        """Subscribe this sink to every audited domain event"""
        for event_type in EVENT_ACTIONS:
            dispatcher.subscribe(event_type, self.handle_event)


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    action: AuditAction
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    details: Dict[str, Any]
    actor_id: Optional[str] = None

    def __post_init__(self):
        self.details = _json_safe(self.details or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event.
        Covers every field except current_hash itself.
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor_id': self.actor_id,
            'details': self.details
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'sequence': self.sequence,
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'details': self.details,
            'actor_id': self.actor_id,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            **cls.parse_timestamps(data),
            sequence=data['sequence'],
            action=AuditAction(data['action']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            details=data.get('details') or {},
            actor_id=data.get('actor_id'),
        )


class AuditTrail(AuditSink):
    """
    Hash-chained audit trail stored through a StorageInterface
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _chain_head(self):
        events = self.storage.load_all(self.table_name)
        if not events:
            return 0, ""
        last = max(events, key=lambda e: e['sequence'])
        return last['sequence'], last['current_hash']

    def log_event(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain. Raises on storage failure; use
        ``record()`` where the caller must never see an exception.
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            last_sequence, last_hash = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=last_sequence + 1,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=last_hash,
                current_hash="",
                details=details or {},
                actor_id=actor_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def record(self, actor_id: Optional[str], action: AuditAction, entity_type: str,
               entity_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.log_event(action, entity_type, entity_id, details=details, actor_id=actor_id)
        except Exception:
            logger.exception(f"Audit record failed for {action.value} {entity_type}:{entity_id}")

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for an entity, oldest first"""
        return [
            e for e in self._load_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_events_by_action(self, action: AuditAction) -> List[AuditEvent]:
        return [e for e in self._load_events() if e.action == action]

    def get_all_events(self) -> List[AuditEvent]:
        return self._load_events()

    def get_event_by_id(self, event_id: str) -> Optional[AuditEvent]:
        data = self.storage.load(self.table_name, event_id)
        return AuditEvent.from_dict(data) if data else None

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with ``valid``, ``total_events``, ``hash_errors`` and
            ``chain_breaks``
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._load_events()
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
