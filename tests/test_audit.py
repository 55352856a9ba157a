"""
Test suite for audit trail module

Hash chaining, tamper detection and lookups.
"""

import threading
from decimal import Decimal

import pytest

from bank_ledger.storage import InMemoryStorage
from bank_ledger.audit import AuditTrail, AuditEventType, AuditEvent


class TestAuditTrail:
    """Test audit trail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_first_event_has_empty_previous_hash(self):
        event = self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=1,
            metadata={"owner_ids": [1, 2]}
        )

        assert event.id is not None
        assert event.previous_hash == ""
        assert event.verify_hash()

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", 1)
        second = self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", 1)

        assert second.previous_hash == first.current_hash
        assert self.audit_trail.verify_integrity()["valid"]

    def test_tampering_is_detected(self):
        event = self.audit_trail.log_event(
            AuditEventType.ACCOUNT_CREDITED, "account", 3, {"amount": "USD 10.00"}
        )
        self.audit_trail.log_event(AuditEventType.ACCOUNT_DEBITED, "account", 3)

        record = self.storage.load("audit_events", event.id)
        record["metadata"]["amount"] = "USD 10000.00"
        self.storage.save("audit_events", event.id, record)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_chain_resumes_from_existing_events(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", 1)

        reopened = AuditTrail(self.storage)
        second = reopened.log_event(AuditEventType.LOAN_PAID_OFF, "loan", 1)

        assert second.previous_hash == first.current_hash
        assert reopened.verify_integrity()["valid"]

    def test_lookups(self):
        self.audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", 1)
        self.audit_trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", 2)
        self.audit_trail.log_event(AuditEventType.LOAN_PAID_OFF, "loan", 1)

        for_loan = self.audit_trail.get_events_for_entity("loan", 1)
        assert [e.event_type for e in for_loan] == [
            AuditEventType.LOAN_ORIGINATED, AuditEventType.LOAN_PAID_OFF
        ]
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_ORIGINATED)) == 2
        assert self.audit_trail.count_events() == 3

    def test_round_trip_through_storage(self):
        event = self.audit_trail.log_event(
            AuditEventType.RECONCILIATION_REQUIRED, "loan", 4, {"state": "diverged"}
        )
        loaded = AuditEvent.from_dict(self.storage.load("audit_events", event.id))

        assert loaded.event_type == AuditEventType.RECONCILIATION_REQUIRED
        assert loaded.metadata == {"state": "diverged"}
        assert loaded.verify_hash()

    def test_concurrent_event_logging(self):
        """Concurrent logging keeps the chain intact"""
        errors = []

        def create_events(thread_id: int):
            try:
                for i in range(5):
                    self.audit_trail.log_event(
                        AuditEventType.ACCOUNT_CREDITED, "account", thread_id,
                        {"sequence": i}
                    )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=create_events, args=(i,)) for i in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert self.audit_trail.count_events() == 15
        assert self.audit_trail.verify_integrity()["valid"]

    def test_metadata_is_converted_to_json_types(self):
        event = self.audit_trail.log_event(
            AuditEventType.ACCOUNT_FEE_CHARGED, "account", 2,
            {"fee_rate": Decimal('0.005'), "owner_ids": {3, 1}, "type": AuditEventType.ACCOUNT_DEBITED}
        )

        assert event.metadata == {"fee_rate": "0.005", "owner_ids": [1, 3], "type": "account_debited"}
        assert event.verify_hash()

    def test_unstorable_metadata_rejected(self):
        with pytest.raises(TypeError):
            self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", 1, {"x": object()})
        assert self.audit_trail.count_events() == 0

    def test_failed_insert_does_not_break_chain(self):
        class FailingOnce(InMemoryStorage):
            failures = 1

            def insert(self, table, data):
                if self.failures:
                    self.failures -= 1
                    raise OSError("disk full")
                return super().insert(table, data)

        trail = AuditTrail(FailingOnce())
        with pytest.raises(OSError):
            trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", 1)
        trail.log_event(AuditEventType.LOAN_ORIGINATED, "loan", 1)

        assert trail.verify_integrity()["valid"]
