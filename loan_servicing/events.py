"""
Event System Module

Publish/subscribe dispatcher for servicing domain events. Events are
published only after the transaction that produced them has committed, so
subscribers never observe rolled-back state. Subscribers are the extension
point for organisation-specific policies (late fees, penalties,
notifications).
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from threading import RLock

from .logging_config import get_logger


class ServicingEvent(Enum):
    """Domain events emitted by the servicing engine"""
    LOAN_REGISTERED = "loan.registered"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    CUSTOMER_UPDATED = "customer.updated"
    SCHEDULE_CREATED = "schedule.created"
    PAYMENT_APPLIED = "payment.applied"
    ENTRY_OVERDUE = "entry.overdue"
    LOAN_CLOSED = "loan.closed"
    LOAN_DEFAULTED = "loan.defaulted"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: ServicingEvent
    tenant_id: str
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'tenant_id': self.tenant_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


Handler = Callable[[EventPayload], None]


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[ServicingEvent, List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._lock = RLock()
        self.logger = get_logger("loan_servicing.events")

    def subscribe(self, event_type: ServicingEvent, handler: Handler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: ServicingEvent, handler: Handler) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # Committed state stays committed; a failing subscriber is only logged
                self.logger.exception(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}",
                    extra={"tenant_id": event.tenant_id}
                )

    def publish_all(self, events: List[EventPayload]) -> None:
        for event in events:
            self.publish(event)

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[ServicingEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(handlers) for handlers in self._handlers.values()) + len(self._global_handlers)
