"""
Tests for the SQLite run store.
"""
import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from fleet_remediate.exceptions import ConflictError, PersistenceError
from fleet_remediate.models import ApprovalMeta, QueueMeta, RunRecord, RunState
from fleet_remediate.storage.run_store import RunStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(run_id: str, **overrides) -> RunRecord:
    data = {
        "run_id": run_id,
        "host_id": "web-01",
        "action_id": "restart-sshd",
        "commands": ["systemctl restart sshd"],
        "requested_at": NOW,
    }
    data.update(overrides)
    return RunRecord(**data)


def test_creates_schema(tmp_path):
    """The database file and table are created on init."""
    db_path = tmp_path / "nested" / "runs.db"
    RunStore(db_path)
    assert db_path.exists()
    with sqlite3.connect(db_path) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert "remediation_runs" in tables


def test_insert_and_get(store):
    """Inserted runs come back parsed."""
    store.insert_run(_record("r1"), now=NOW)
    stored = store.get_run("r1")
    assert stored.state == "queued"
    assert stored.record.run_id == "r1"
    assert stored.record.requested_at == NOW
    assert store.get_run("missing") is None


def test_insert_duplicate_id_conflicts(store):
    """Run ids are unique."""
    store.insert_run(_record("r1"), now=NOW)
    with pytest.raises(ConflictError):
        store.insert_run(_record("r1"), now=NOW)


def test_replay_of_is_unique(store):
    """A source run can have at most one replay."""
    store.insert_run(_record("src", state=RunState.DLQ), now=NOW)
    store.insert_run(_record("rep1", queue=QueueMeta(replay_of_run_id="src")), now=NOW)
    with pytest.raises(ConflictError):
        store.insert_run(_record("rep2", queue=QueueMeta(replay_of_run_id="src")), now=NOW)
    assert store.find_replay_of("src").run_id == "rep1"
    assert store.find_replay_of("rep1") is None


def test_claim_is_compare_and_swap(store):
    """Only one claim with the same expected payload succeeds."""
    store.insert_run(_record("r1"), now=NOW)
    stored = store.get_run("r1")
    running = stored.record.model_copy(update={"state": RunState.RUNNING, "started_at": NOW})
    assert store.claim_run(running, stored.payload, now=NOW) is True
    assert store.claim_run(running, stored.payload, now=NOW) is False
    assert store.get_run("r1").state == "running"


def test_claim_fails_when_payload_changed(store):
    """A claim based on a stale read does not apply."""
    store.insert_run(_record("r1"), now=NOW)
    stale = store.get_run("r1")
    changed = stale.record.model_copy(update={"reason": "edited"})
    assert store.update_run(changed, RunState.QUEUED, expected_payload=stale.payload, now=NOW)
    running = stale.record.model_copy(update={"state": RunState.RUNNING})
    assert store.claim_run(running, stale.payload, now=NOW) is False


def test_claim_requires_running_record(store):
    """claim_run rejects records not already marked running."""
    store.insert_run(_record("r1"), now=NOW)
    stored = store.get_run("r1")
    with pytest.raises(ValueError):
        store.claim_run(stored.record, stored.payload)


def test_update_run_checks_state(store):
    """Updates only apply from the expected state."""
    store.insert_run(_record("r1"), now=NOW)
    done = _record("r1", state=RunState.SUCCEEDED)
    assert store.update_run(done, RunState.RUNNING, now=NOW) is False
    assert store.update_run(done, RunState.QUEUED, now=NOW) is True
    assert store.get_run("r1").state == "succeeded"


def test_set_state(store):
    """set_state changes only the state column, conditionally."""
    store.insert_run(_record("r1"), now=NOW)
    assert store.set_state("r1", "running", RunState.FAILED) is False
    assert store.set_state("r1", "queued", RunState.FAILED) is True
    stored = store.get_run("r1")
    assert stored.state == "failed"
    assert stored.record.state == RunState.QUEUED


def test_next_ready_run_order_and_gating(store):
    """Oldest due run first; future retries and pending approvals are skipped."""
    store.insert_run(_record("late", requested_at=NOW - timedelta(minutes=1),
                             queue=QueueMeta(next_attempt_at=NOW + timedelta(minutes=5))), now=NOW)
    store.insert_run(_record("gated", requested_at=NOW - timedelta(minutes=2),
                             queue=QueueMeta(approval=ApprovalMeta())), now=NOW)
    store.insert_run(_record("b", requested_at=NOW), now=NOW)
    store.insert_run(_record("a", requested_at=NOW), now=NOW)

    assert store.next_ready_run(NOW).run_id == "a"
    assert store.next_ready_run(NOW, skip_run_ids=["a"]).run_id == "b"
    assert store.next_ready_run(NOW, skip_run_ids=["a", "b"]) is None
    assert store.next_ready_run(NOW + timedelta(minutes=5), skip_run_ids=["a", "b"]).run_id == "late"


def test_list_runs_newest_first(store):
    """Snapshots list the newest runs first and can filter the DLQ."""
    store.insert_run(_record("old", requested_at=NOW - timedelta(hours=1)), now=NOW)
    store.insert_run(_record("new", requested_at=NOW), now=NOW)
    store.insert_run(_record("dead", requested_at=NOW - timedelta(hours=2), state=RunState.DLQ), now=NOW)
    assert [s.run_id for s in store.list_runs(10)] == ["new", "old", "dead"]
    assert [s.run_id for s in store.list_runs(1)] == ["new"]
    assert [s.run_id for s in store.list_runs(10, dlq_only=True)] == ["dead"]


def test_list_stale_running(store):
    """Running rows started before the cutoff are stale."""
    store.insert_run(_record("stale", state=RunState.RUNNING, started_at=NOW - timedelta(hours=1)), now=NOW)
    store.insert_run(_record("fresh", state=RunState.RUNNING, started_at=NOW), now=NOW)
    stale = store.list_stale_running(NOW - timedelta(minutes=15))
    assert [s.run_id for s in stale] == ["stale"]


def test_list_unreplayed_dead_letters(store):
    """Dead letters that already have a replay are excluded."""
    store.insert_run(_record("d1", state=RunState.DLQ), now=NOW)
    store.insert_run(_record("d2", state=RunState.DLQ), now=NOW + timedelta(seconds=1))
    store.insert_run(_record("r1", queue=QueueMeta(replay_of_run_id="d1")), now=NOW)
    assert [s.run_id for s in store.list_unreplayed_dead_letters(10)] == ["d2"]


def test_has_active_run(store):
    """Queued and running runs are active; terminal ones are not."""
    store.insert_run(_record("r1", state=RunState.SUCCEEDED), now=NOW)
    assert not store.has_active_run("web-01", "restart-sshd")
    store.insert_run(_record("r2", state=RunState.RUNNING), now=NOW)
    assert store.has_active_run("web-01", "restart-sshd")
    assert not store.has_active_run("web-02", "restart-sshd")


def test_count_active(store):
    """Only queued and running runs count, per host or across the store."""
    store.insert_run(_record("q1"), now=NOW)
    store.insert_run(_record("r1", state=RunState.RUNNING), now=NOW)
    store.insert_run(_record("q2", host_id="web-02"), now=NOW)
    store.insert_run(_record("s1", state=RunState.SUCCEEDED), now=NOW)
    store.insert_run(_record("d1", state=RunState.DLQ), now=NOW)
    assert store.count_active("web-01") == 2
    assert store.count_active("web-02") == 1
    assert store.count_active("db-01") == 0
    assert store.count_active() == 3


def test_counts(store):
    """Counts cover every state plus the done alias and pending approvals."""
    store.insert_run(_record("q1"), now=NOW)
    store.insert_run(_record("q2", queue=QueueMeta(approval=ApprovalMeta())), now=NOW)
    store.insert_run(_record("s1", state=RunState.SUCCEEDED), now=NOW)
    store.insert_run(_record("d1", state=RunState.DLQ), now=NOW)
    counts = store.counts()
    assert counts["queued"] == 2
    assert counts["succeeded"] == 1
    assert counts["done"] == 1
    assert counts["dlq"] == 1
    assert counts["running"] == 0
    assert counts["approvalPending"] == 1


def test_insert_raw_legacy_payload(store):
    """Legacy flat payloads are stored verbatim and upgraded on read."""
    payload = json.dumps({
        "runId": "old-1",
        "hostId": "web-01",
        "actionId": "restart-sshd",
        "commands": ["systemctl restart sshd"],
    })
    store.insert_raw("old-1", "web-01", "restart-sshd", payload, state="processing", requested_at=NOW)
    stored = store.get_run("old-1")
    assert stored.state == "running"
    assert stored.payload == payload
    assert stored.record.schema_version == 2
    assert stored.record.queue.max_attempts == 3


def test_insert_raw_invalid_payload_has_no_record(store):
    """Unparseable payloads are kept but have no record."""
    store.insert_raw("bad", "web-01", "restart-sshd", "{broken", requested_at=NOW)
    stored = store.get_run("bad")
    assert stored.record is None
    assert stored.payload == "{broken"


def test_query_errors_become_persistence_errors(store, tmp_path):
    """SQLite failures surface as PersistenceError."""
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("DROP TABLE remediation_runs")
    with pytest.raises(PersistenceError):
        store.get_run("r1")
