"""
Tests for audit system.

Verifies audit event recording and querying.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fleet_remediate.audit import (
    SYSTEM_ACTOR,
    AuditEvent,
    AuditTrail,
    EventType,
    FileAuditBackend,
    MemoryAuditBackend,
)


def create_test_event(event_type: EventType = EventType.RUN_ENQUEUED,
                      run_id: str = "run-1", timestamp: str = None) -> AuditEvent:
    """Create a test audit event."""
    return AuditEvent(
        id=str(uuid.uuid4()),
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
        event_type=event_type,
        actor_id="test-user",
        run_id=run_id,
        host_id="web-01",
        action_id="restart-sshd",
        result="success",
        details={"key": "value"},
    )


def test_audit_event_to_dict():
    """Test audit event to dictionary conversion."""
    event = create_test_event()
    event_dict = event.to_dict()

    assert event_dict["id"] == event.id
    assert event_dict["event_type"] == "run_enqueued"
    assert event_dict["actor_id"] == "test-user"


def test_audit_event_to_json():
    """Test audit event to JSON conversion."""
    event = create_test_event()
    data = json.loads(event.to_json())
    assert data["id"] == event.id
    assert data["details"] == {"key": "value"}


def test_trail_defaults_to_memory_backend():
    """Test that the trail records into memory when no backend is given."""
    trail = AuditTrail()
    event = trail.record(EventType.RUN_CLAIMED, run_id="run-1")
    assert isinstance(trail.backend, MemoryAuditBackend)
    assert event.actor_id == SYSTEM_ACTOR
    assert trail.query_events() == [event]


def test_trail_timestamp_is_utc():
    """Test that naive timestamps are recorded as UTC."""
    trail = AuditTrail()
    event = trail.record(EventType.RUN_CLAIMED, timestamp=datetime(2026, 3, 1, 12, 0))
    assert event.timestamp == "2026-03-01T12:00:00+00:00"


def test_memory_backend_filters():
    """Test querying by type, run and time window."""
    backend = MemoryAuditBackend()
    base = datetime(2026, 3, 1, tzinfo=timezone.utc)
    backend.write_event(create_test_event(EventType.RUN_ENQUEUED, "run-1", base.isoformat()))
    backend.write_event(create_test_event(EventType.RUN_SUCCEEDED, "run-1",
                                          (base + timedelta(minutes=5)).isoformat()))
    backend.write_event(create_test_event(EventType.RUN_ENQUEUED, "run-2",
                                          (base + timedelta(minutes=10)).isoformat()))

    assert len(backend.query_events(event_type=EventType.RUN_ENQUEUED)) == 2
    assert len(backend.query_events(run_id="run-1")) == 2
    window = backend.query_events(start_time=base + timedelta(minutes=1),
                                  end_time=base + timedelta(minutes=6))
    assert [e.event_type for e in window] == [EventType.RUN_SUCCEEDED]
    assert len(backend.query_events(limit=1)) == 1


def test_file_backend_initialize(tmp_path: Path):
    """Test file backend initialization."""
    file_path = tmp_path / "audit" / "audit.jsonl"
    FileAuditBackend(file_path)
    assert file_path.exists()


def test_file_backend_write_and_query(tmp_path: Path):
    """Test writing events to the JSONL file and reading them back."""
    backend = FileAuditBackend(tmp_path / "audit.jsonl")
    trail = AuditTrail(backend)
    trail.record(EventType.RUN_ENQUEUED, actor_id="ops", run_id="run-1")
    trail.record(EventType.RUN_DEAD_LETTERED, run_id="run-1", result="dead_lettered")

    lines = (tmp_path / "audit.jsonl").read_text().strip().splitlines()
    assert len(lines) == 2

    events = backend.query_events(event_type=EventType.RUN_DEAD_LETTERED)
    assert len(events) == 1
    assert events[0].result == "dead_lettered"
    assert events[0].event_type == EventType.RUN_DEAD_LETTERED


def test_file_backend_skips_corrupt_lines(tmp_path: Path):
    """Test that corrupt lines are skipped on query."""
    file_path = tmp_path / "audit.jsonl"
    backend = FileAuditBackend(file_path)
    backend.write_event(create_test_event())
    with file_path.open("a") as f:
        f.write("not json\n")
        f.write(json.dumps({"event_type": "bogus"}) + "\n")
    assert len(backend.query_events()) == 1


def test_file_backend_write_failure_propagates(tmp_path: Path):
    """Test that a failed write raises instead of being dropped."""
    backend = FileAuditBackend(tmp_path / "audit.jsonl")
    backend.file_path = tmp_path / "missing-dir" / "audit.jsonl"
    with pytest.raises(OSError):
        backend.write_event(create_test_event())
