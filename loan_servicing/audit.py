"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
The trail subscribes to the event dispatcher, so every committed servicing
event (and nothing that was rolled back) is appended to the chain.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Any, Tuple

from .events import EventDispatcher, EventPayload, ServicingEvent
from .storage import StorageInterface, StorageRecord, utc_now

CHAIN_HEAD_ID = "head"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    tenant_id: str
    event_type: ServicingEvent
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'tenant_id': self.tenant_id,
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['event_type'] = ServicingEvent(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self._lock = threading.Lock()

    def _sorted_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _read_head(self) -> Tuple[int, str]:
        """
        Sequence and hash of the most recent event, read from storage.

        Other processes may append to the same storage, so the head is never
        cached between appends.
        """
        head = self.storage.load(self.head_table, CHAIN_HEAD_ID)
        if head:
            return head["sequence"], head["current_hash"]
        events = self._sorted_events()
        if events:
            return events[-1].sequence, events[-1].current_hash
        return 0, ""

    def attach(self, dispatcher: EventDispatcher) -> None:
        """Record every event published on ``dispatcher``"""
        dispatcher.subscribe_all(self.record)

    def record(self, event: EventPayload) -> AuditEvent:
        return self.log_event(
            tenant_id=event.tenant_id,
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            metadata=event.data,
        )

    def log_event(
        self,
        tenant_id: str,
        event_type: ServicingEvent,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """
        Append an audit event to the chain

        Args:
            tenant_id: Tenant the event belongs to
            event_type: Type of servicing event
            entity_type: Type of entity being audited (loan, customer, ...)
            entity_id: ID of the entity
            metadata: Additional event-specific data (must be JSON-serializable)

        Returns:
            Created AuditEvent
        """
        # Head is read under the write transaction; other processes may share the database
        with self._lock, self.storage.atomic():
            sequence, last_hash = self._read_head()
            now = utc_now()
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=sequence + 1,
                tenant_id=tenant_id,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=last_hash,
                current_hash="",
                metadata=json.loads(json.dumps(metadata or {}, default=str)),
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, CHAIN_HEAD_ID, {
                "id": CHAIN_HEAD_ID,
                "sequence": event.sequence,
                "current_hash": event.current_hash,
                "event_id": event.id,
            })
            return event

    def get_entity_history(self, tenant_id: str, entity_id: str,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        """Events of one entity within one tenant, oldest first"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'tenant_id': tenant_id, 'entity_id': entity_id})
        ]
        events.sort(key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, tenant_id: str, event_type: ServicingEvent,
                           start_time: Optional[datetime] = None) -> List[AuditEvent]:
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'tenant_id': tenant_id, 'event_type': event_type.value})
        ]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        events.sort(key=lambda e: e.sequence)
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
        events = self._sorted_events()
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
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> str:
        return self._read_head()[1]
