"""
Audit Trail Module

Hash-chained immutable log of ledger activity with SHA-256 for tamper
detection. Every committed or aborted transaction is recorded here.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum


class AuditEventType(Enum):
    """Types of audit events"""
    TRANSACTION_COMMITTED = "transaction_committed"
    TRANSACTION_FAILED = "transaction_failed"
    PROGRAM_REGISTERED = "program_registered"


@dataclass
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_id: str       # Transaction id or program id
    previous_hash: str   # Hash of previous audit event for chaining
    current_hash: str    # SHA-256 hash of this event
    metadata: Dict[str, Any] = field(default_factory=dict)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def log_event(
        self,
        event_type: AuditEventType,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_id: Transaction or program the event concerns
            metadata: Additional event-specific data

        Returns:
            Created AuditEvent
        """
        with self._lock:
            previous_hash = self._events[-1].current_hash if self._events else ""
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",  # Will be calculated below
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()
            self._events.append(event)
            return event

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type in chain order"""
        with self._lock:
            return [e for e in self._events if e.event_type == event_type]

    def get_events_for_entity(self, entity_id: str) -> List[AuditEvent]:
        with self._lock:
            return [e for e in self._events if e.entity_id == entity_id]

    def get_all_events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def count_events(self) -> int:
        """Get total number of audit events"""
        with self._lock:
            return len(self._events)

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
            'chain_breaks': []
        }

        with self._lock:
            events = list(self._events)

        result['total_events'] = len(events)

        # Verify each event's hash
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })

        # Verify chain continuity
        previous_hash = ""
        for i, event in enumerate(events):
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
