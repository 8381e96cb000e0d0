"""
Tests for the domain event dispatcher
"""

from loan_servicing.events import EventDispatcher, EventPayload, ServicingEvent


def make_event(event_type=ServicingEvent.PAYMENT_APPLIED):
    return EventPayload(
        event_type=event_type,
        tenant_id="acme",
        entity_type="loan",
        entity_id="L1",
        data={"amount": "100.00"},
    )


class TestEventDispatcher:

    def setup_method(self):
        self.dispatcher = EventDispatcher()
        self.received = []

    def test_subscribe_and_publish(self):
        self.dispatcher.subscribe(ServicingEvent.PAYMENT_APPLIED, self.received.append)
        self.dispatcher.publish(make_event())
        self.dispatcher.publish(make_event(ServicingEvent.LOAN_CLOSED))
        assert [e.event_type for e in self.received] == [ServicingEvent.PAYMENT_APPLIED]

    def test_subscribe_all(self):
        self.dispatcher.subscribe_all(self.received.append)
        self.dispatcher.publish_all([make_event(), make_event(ServicingEvent.ENTRY_OVERDUE)])
        assert len(self.received) == 2

    def test_failing_handler_does_not_stop_others(self):
        def broken(event):
            raise RuntimeError("handler failure")

        self.dispatcher.subscribe(ServicingEvent.PAYMENT_APPLIED, broken)
        self.dispatcher.subscribe(ServicingEvent.PAYMENT_APPLIED, self.received.append)
        self.dispatcher.publish(make_event())
        assert len(self.received) == 1

    def test_unsubscribe(self):
        self.dispatcher.subscribe(ServicingEvent.PAYMENT_APPLIED, self.received.append)
        self.dispatcher.unsubscribe(ServicingEvent.PAYMENT_APPLIED, self.received.append)
        self.dispatcher.publish(make_event())
        assert self.received == []

    def test_handler_count_and_clear(self):
        self.dispatcher.subscribe(ServicingEvent.PAYMENT_APPLIED, self.received.append)
        self.dispatcher.subscribe_all(self.received.append)
        assert self.dispatcher.get_handler_count(ServicingEvent.PAYMENT_APPLIED) == 1
        assert self.dispatcher.get_handler_count() == 2
        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0

    def test_payload_to_dict(self):
        data = make_event().to_dict()
        assert data["event_type"] == "payment.applied"
        assert data["tenant_id"] == "acme"
        assert data["entity_id"] == "L1"
        assert "timestamp" in data and "event_id" in data
