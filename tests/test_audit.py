"""
Tests for the hash-chained audit trail
"""

from datetime import date

from loan_servicing.audit import AuditTrail
from loan_servicing.config import ServicingConfig
from loan_servicing.engine import LoanServicingEngine
from loan_servicing.events import ServicingEvent
from loan_servicing.exceptions import OperationCancelled
from loan_servicing.locks import CancellationToken
from loan_servicing.storage import InMemoryStorage, SQLiteStorage

import pytest


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_chain_links_events(self):
        first = self.audit.log_event("acme", ServicingEvent.LOAN_REGISTERED, "loan", "L1", {"principal": "100.00"})
        second = self.audit.log_event("acme", ServicingEvent.LOAN_APPROVED, "loan", "L1")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert (first.sequence, second.sequence) == (1, 2)
        assert self.audit.get_latest_hash() == second.current_hash
        assert self.audit.verify_integrity()["valid"] is True

    def test_tampering_detected(self):
        event = self.audit.log_event("acme", ServicingEvent.PAYMENT_APPLIED, "loan", "L1", {"amount": "100.00"})
        self.audit.log_event("acme", ServicingEvent.LOAN_CLOSED, "loan", "L1")

        record = self.storage.load("audit_events", event.id)
        record["metadata"]["amount"] = "1.00"
        self.storage.save("audit_events", event.id, record)

        result = self.audit.verify_integrity()
        assert result["valid"] is False
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self):
        self.audit.log_event("acme", ServicingEvent.LOAN_REGISTERED, "loan", "L1")
        middle = self.audit.log_event("acme", ServicingEvent.LOAN_APPROVED, "loan", "L1")
        self.audit.log_event("acme", ServicingEvent.LOAN_REJECTED, "loan", "L1")

        self.storage.delete("audit_events", middle.id)
        result = self.audit.verify_integrity()
        assert result["valid"] is False
        assert len(result["chain_breaks"]) == 1

    def test_history_is_tenant_filtered(self):
        self.audit.log_event("acme", ServicingEvent.LOAN_REGISTERED, "loan", "L1")
        self.audit.log_event("globex", ServicingEvent.LOAN_REGISTERED, "loan", "L1")
        self.audit.log_event("acme", ServicingEvent.LOAN_APPROVED, "loan", "L1")

        history = self.audit.get_entity_history("acme", "L1")
        assert [e.event_type for e in history] == [ServicingEvent.LOAN_REGISTERED, ServicingEvent.LOAN_APPROVED]
        assert len(self.audit.get_entity_history("acme", "L1", limit=1)) == 1
        assert len(self.audit.get_events_by_type("globex", ServicingEvent.LOAN_REGISTERED)) == 1

    def test_chain_continues_after_reload(self):
        last = self.audit.log_event("acme", ServicingEvent.LOAN_REGISTERED, "loan", "L1")
        reopened = AuditTrail(self.storage)
        event = reopened.log_event("acme", ServicingEvent.LOAN_APPROVED, "loan", "L1")

        assert event.sequence == 2
        assert event.previous_hash == last.current_hash
        assert reopened.verify_integrity()["valid"] is True
        assert reopened.count_events() == 2


class TestSharedDatabaseAudit:
    """Several processes appending to one SQLite file keep a single chain"""

    def test_writers_on_one_file_extend_one_chain(self, tmp_path):
        db_path = tmp_path / "audit.db"
        first_storage, second_storage = SQLiteStorage(db_path), SQLiteStorage(db_path)
        first, second = AuditTrail(first_storage), AuditTrail(second_storage)
        try:
            a = first.log_event("acme", ServicingEvent.LOAN_REGISTERED, "loan", "L1")
            b = second.log_event("acme", ServicingEvent.LOAN_APPROVED, "loan", "L1")
            c = first.log_event("acme", ServicingEvent.LOAN_REJECTED, "loan", "L1")

            assert [a.sequence, b.sequence, c.sequence] == [1, 2, 3]
            assert b.previous_hash == a.current_hash
            assert c.previous_hash == b.current_hash
            assert first.get_latest_hash() == second.get_latest_hash() == c.current_hash

            result = second.verify_integrity()
            assert result["valid"] is True
            assert result["chain_breaks"] == []
            assert result["total_events"] == 3
        finally:
            first_storage.close()
            second_storage.close()


class TestEngineAudit:
    """The engine records committed events only"""

    def setup_method(self):
        self.engine = LoanServicingEngine(
            storage=InMemoryStorage(), config=ServicingConfig(database_url="memory://")
        )
        self.engine.register_loan("acme", "CUST-1", "600", "0", 2, date(2024, 1, 1), loan_id="L1")
        self.engine.disburse_loan("acme", "L1")

    def test_lifecycle_is_audited(self):
        self.engine.apply_payment("acme", "L1", "600", "pay-1")
        history = self.engine.audit_trail.get_entity_history("acme", "L1")
        assert [e.event_type for e in history] == [
            ServicingEvent.LOAN_REGISTERED,
            ServicingEvent.SCHEDULE_CREATED,
            ServicingEvent.PAYMENT_APPLIED,
            ServicingEvent.LOAN_CLOSED,
        ]
        assert self.engine.audit_trail.verify_integrity()["valid"] is True

    def test_rolled_back_payment_not_audited(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            self.engine.apply_payment("acme", "L1", "100", "pay-1", cancel_token=token)
        assert self.engine.audit_trail.get_events_by_type("acme", ServicingEvent.PAYMENT_APPLIED) == []

    def test_audit_can_be_disabled(self):
        engine = LoanServicingEngine(
            storage=InMemoryStorage(),
            config=ServicingConfig(database_url="memory://", enable_audit_logging=False)
        )
        engine.register_loan("acme", "CUST-1", "600", "0", 2, date(2024, 1, 1), loan_id="L1")
        assert engine.audit_trail.count_events() == 0
