"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and audit event logging for ledger activity.
"""

import pytest
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal

from bank_ledger.storage import InMemoryStorage, SQLiteStorage
from bank_ledger.audit import (
    AuditTrail, AuditEvent, AuditEventType
)
from bank_ledger.journal import MovementKind


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        fields = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.MOVEMENT_RECORDED,
            entity_type="movement",
            entity_id="MOV001",
            sequence=1,
            previous_hash="prev_hash",
            current_hash="",
            user_id="U1",
            metadata={"amount": "100.00", "kind": "TRANSFER"}
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialization(self):
        """Test that metadata is properly serialized"""
        event = self.make_event(metadata={
            "amount": Decimal('1234.56'),
            "at": datetime(2024, 3, 1, tzinfo=timezone.utc),
            "kind": MovementKind.DEPOSIT,
            "nested": {"fee": Decimal('0.50'), "history": [Decimal('1.1'), Decimal('2.2')]}
        })

        assert event.metadata["amount"] == "1234.56"
        assert event.metadata["at"] == "2024-03-01T00:00:00+00:00"
        assert event.metadata["kind"] == "DEPOSIT"
        assert event.metadata["nested"]["fee"] == "0.50"
        assert event.metadata["nested"]["history"] == ["1.1", "2.2"]

    def test_hash_calculation(self):
        """Test hash calculation is SHA-256 and deterministic"""
        event = self.make_event()

        expected_hash = event.calculate_hash()
        assert len(expected_hash) == 64
        assert expected_hash == event.calculate_hash()

    def test_hash_verification(self):
        """Test hash verification functionality"""
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.current_hash = "tampered_hash"
        assert not event.verify_hash()

    def test_hash_covers_fields(self):
        """Test that changing any audited field changes the hash"""
        event1 = self.make_event()
        event2 = self.make_event()
        assert event1.calculate_hash() == event2.calculate_hash()

        event2.entity_id = "MOV002"
        assert event1.calculate_hash() != event2.calculate_hash()

        event3 = self.make_event(sequence=2)
        assert event1.calculate_hash() != event3.calculate_hash()

    def test_round_trip_through_dict(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())

        assert restored.event_type == AuditEventType.MOVEMENT_RECORDED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_first_event(self):
        """Test logging the first audit event"""
        event = self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CREATED,
            entity_type="account",
            entity_id="ACC001",
            metadata={"account_number": "1234567890"},
            user_id="U1"
        )

        assert event.previous_hash == ""  # First event has no previous hash
        assert event.sequence == 1
        assert len(event.current_hash) == 64
        assert event.user_id == "U1"
        assert self.storage.load(self.audit_trail.table_name, event.id) is not None

    def test_log_multiple_events_chain(self):
        """Test logging multiple events creates proper hash chain"""
        event1 = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")
        event2 = self.audit_trail.log_event(AuditEventType.MOVEMENT_RECORDED, "movement", "MOV001")
        event3 = self.audit_trail.log_event(AuditEventType.DEPOSIT_REVERSED, "movement", "MOV001")

        assert event2.previous_hash == event1.current_hash
        assert event3.previous_hash == event2.current_hash
        assert [e.sequence for e in (event1, event2, event3)] == [1, 2, 3]

    def test_get_events_for_entity(self):
        """Test retrieving events for specific entity"""
        self.audit_trail.log_event(AuditEventType.MOVEMENT_RECORDED, "movement", "MOV001")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")
        self.audit_trail.log_event(AuditEventType.DEPOSIT_REVERSED, "movement", "MOV001")

        events = self.audit_trail.get_events_for_entity("movement", "MOV001")

        assert [e.event_type for e in events] == [
            AuditEventType.MOVEMENT_RECORDED, AuditEventType.DEPOSIT_REVERSED
        ]

    def test_get_all_events_in_chain_order(self):
        for i in range(5):
            self.audit_trail.log_event(AuditEventType.MOVEMENT_RECORDED, "movement", f"MOV00{i}")

        events = self.audit_trail.get_all_events()
        assert [e.entity_id for e in events] == [f"MOV00{i}" for i in range(5)]

    def test_verify_integrity_valid_chain(self):
        for i in range(5):
            self.audit_trail.log_event(AuditEventType.MOVEMENT_RECORDED, "movement", f"MOV00{i}")

        result = self.audit_trail.verify_integrity()

        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_verify_integrity_detects_hash_tampering(self):
        """Test integrity verification detects a rewritten event"""
        event1 = self.audit_trail.log_event(
            AuditEventType.MOVEMENT_RECORDED, "movement", "MOV001", metadata={"amount": "10.00"}
        )
        self.audit_trail.log_event(AuditEventType.MOVEMENT_RECORDED, "movement", "MOV002")

        tampered = self.storage.load(self.audit_trail.table_name, event1.id)
        tampered["metadata"] = {"amount": "10000.00"}
        self.storage.save(self.audit_trail.table_name, event1.id, tampered)

        result = self.audit_trail.verify_integrity()

        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [event1.id]

    def test_verify_integrity_detects_chain_break(self):
        """Test integrity verification detects chain breaks"""
        event1 = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")
        event2 = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC002")

        tampered = self.storage.load(self.audit_trail.table_name, event2.id)
        tampered["previous_hash"] = "broken_chain_hash"
        self.storage.save(self.audit_trail.table_name, event2.id, tampered)

        result = self.audit_trail.verify_integrity()

        assert not result["valid"]
        chain_break = result["chain_breaks"][0]
        assert chain_break["event_id"] == event2.id
        assert chain_break["expected_previous_hash"] == event1.current_hash
        assert chain_break["actual_previous_hash"] == "broken_chain_hash"

    def test_verify_integrity_detects_deleted_event(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")
        event2 = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC002")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC003")

        self.storage.delete(self.audit_trail.table_name, event2.id)

        assert not self.audit_trail.verify_integrity()["valid"]

    def test_verify_integrity_empty_trail(self):
        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 0

    def test_get_latest_hash(self):
        assert self.audit_trail.get_latest_hash() == ""

        event = self.audit_trail.log_event(AuditEventType.RATES_REFRESHED, "currency", "*")
        assert self.audit_trail.get_latest_hash() == event.current_hash

    def test_chain_resumes_after_restart(self):
        """Test a new trail on the same storage continues the existing chain"""
        event1 = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")

        reopened = AuditTrail(self.storage)
        event2 = reopened.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC002")

        assert event2.sequence == 2
        assert event2.previous_hash == event1.current_hash
        assert reopened.verify_integrity()["valid"]

    def test_concurrent_event_logging(self):
        """Test that concurrent event logging maintains chain integrity"""
        errors = []

        def create_events(start_id: int):
            try:
                for i in range(5):
                    self.audit_trail.log_event(
                        AuditEventType.MOVEMENT_RECORDED, "movement", f"MOV_{start_id}_{i}",
                        metadata={"thread_id": start_id, "sequence": i}
                    )
                    time.sleep(0.001)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=create_events, args=(i,)) for i in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 15

    def test_sqlite_backed_trail(self):
        storage = SQLiteStorage(":memory:")
        trail = AuditTrail(storage)
        trail.log_event(AuditEventType.FAVORITE_ADDED, "favorite", "FAV001", metadata={"alias": "Rent"})
        trail.log_event(AuditEventType.FAVORITE_REMOVED, "favorite", "FAV001")

        assert trail.verify_integrity()["valid"]
        assert len(trail.get_events_for_entity("favorite", "FAV001")) == 2
        storage.close()
