"""
SQLite-based run storage for fleet-remediate.

Each run is one row in ``remediation_runs``. The full record lives in the
``payload`` column (written by the payload codec); the other columns are
denormalized copies used for indexed selection and aggregate counts.

State transitions are conditional updates (``WHERE state = ?``) so that two
workers sharing the database never both move the same run out of a state.
"""
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from .. import codec
from ..constants import DEFAULT_DB_BUSY_TIMEOUT_SECONDS, DEFAULT_DB_PATH, DEFAULT_MAX_RETRY_ATTEMPTS
from ..exceptions import ConflictError, PersistenceError
from ..models import LEGACY_STATE_ALIASES, ApprovalStatus, RunRecord, RunState
from ..retry import format_timestamp, retry_sync, utc_now

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS remediation_runs (
        run_id TEXT PRIMARY KEY,
        host_id TEXT NOT NULL,
        action_id TEXT NOT NULL,
        state TEXT NOT NULL,
        approval_status TEXT,
        next_attempt_at TEXT,
        requested_at TEXT NOT NULL,
        started_at TEXT,
        updated_at TEXT NOT NULL,
        replay_of_run_id TEXT,
        payload TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_runs_state_next_attempt
    ON remediation_runs(state, next_attempt_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_runs_host
    ON remediation_runs(host_id, action_id, state)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_runs_requested
    ON remediation_runs(requested_at)
    """,
    # At most one replay per source run
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_replay_of
    ON remediation_runs(replay_of_run_id)
    WHERE replay_of_run_id IS NOT NULL
    """,
)

_COLUMNS = (
    "run_id, host_id, action_id, state, approval_status, next_attempt_at, "
    "requested_at, started_at, updated_at, replay_of_run_id, payload"
)

_BLOCKING_APPROVAL = (ApprovalStatus.PENDING.value, ApprovalStatus.REJECTED.value)

_write_retry = retry_sync(
    max_attempts=3,
    min_wait=0.05,
    max_wait=0.5,
    retryable_exceptions=(sqlite3.OperationalError,),
)


@dataclass
class StoredRun:
    """
    A row from ``remediation_runs``.

    ``record`` is None when the stored payload could not be parsed; the raw
    text is kept so the caller can report it.
    """
    run_id: str
    host_id: str
    action_id: str
    state: str
    approval_status: Optional[str]
    requested_at: str
    started_at: Optional[str]
    updated_at: str
    replay_of_run_id: Optional[str]
    payload: str
    record: Optional[RunRecord] = None


def _row_values(record: RunRecord, payload: str, updated_at: str) -> Dict[str, Optional[str]]:
    approval = record.queue.approval
    return {
        "run_id": record.run_id,
        "host_id": record.host_id,
        "action_id": record.action_id,
        "state": record.state.value,
        "approval_status": approval.status.value if approval and approval.required else None,
        "next_attempt_at": format_timestamp(record.queue.next_attempt_at),
        "requested_at": format_timestamp(record.requested_at) or updated_at,
        "started_at": format_timestamp(record.started_at),
        "updated_at": updated_at,
        "replay_of_run_id": record.queue.replay_of_run_id,
        "payload": payload,
    }


class RunStore:
    """
    SQLite-backed storage for remediation runs.

    A connection is opened per operation with a busy timeout, so one store
    (or several processes pointing at the same file) can be used from
    concurrent drain workers. Every ``sqlite3.Error`` is re-raised as
    :class:`PersistenceError`.

    Example:
        >>> store = RunStore("fleet_remediate.db")
        >>> store.insert_run(record)
        >>> store.counts()
        {'queued': 1, ...}
    """

    def __init__(
        self,
        db_path: Union[str, Path] = DEFAULT_DB_PATH,
        default_max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        busy_timeout: float = DEFAULT_DB_BUSY_TIMEOUT_SECONDS,
    ):
        """
        Initialize run store.

        Args:
            db_path: Path to SQLite database file
            default_max_attempts: Retry budget applied to legacy payloads
            busy_timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path)
        self.default_max_attempts = default_max_attempts
        self.busy_timeout = busy_timeout
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                for statement in _SCHEMA:
                    conn.execute(statement)
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot initialize run store {self.db_path}: {e}") from e
        logger.info(f"Run store initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @_write_retry
    def _execute_write(self, sql: str, params) -> int:
        with self._get_connection() as conn:
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            return cursor.rowcount

    def _write(self, sql: str, params) -> int:
        # Lock contention (OperationalError) is retried by _execute_write
        try:
            return self._execute_write(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Run store write failed: {e}") from e

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        try:
            with self._get_connection() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Run store query failed: {e}") from e

    def _to_stored(self, row: sqlite3.Row) -> StoredRun:
        return StoredRun(
            run_id=row["run_id"],
            host_id=row["host_id"],
            action_id=row["action_id"],
            state=row["state"],
            approval_status=row["approval_status"],
            requested_at=row["requested_at"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            replay_of_run_id=row["replay_of_run_id"],
            payload=row["payload"],
            record=codec.parse(row["payload"], self.default_max_attempts),
        )

    # -- inserts -------------------------------------------------------------

    def insert_run(self, record: RunRecord, now: Optional[datetime] = None) -> str:
        """
        Insert a new run.

        Raises:
            ConflictError: A run with the same id exists, or the record is a
                replay of a source run that already has one
        """
        payload = codec.serialize(record)
        values = _row_values(record, payload, format_timestamp(now or utc_now()))
        placeholders = ", ".join(f":{name}" for name in values)
        try:
            self._write(
                f"INSERT INTO remediation_runs ({_COLUMNS}) VALUES ({placeholders})",
                values,
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Run {record.run_id} conflicts with an existing run: {e}") from e
        return payload

    def insert_raw(
        self,
        run_id: str,
        host_id: str,
        action_id: str,
        payload: str,
        state: str = RunState.QUEUED.value,
        requested_at: Optional[datetime] = None,
    ) -> None:
        """
        Store a payload verbatim.

        Used to import records written by older releases (flat schema-1
        payloads); they are upgraded by the codec when read.
        """
        stamp = format_timestamp(requested_at or utc_now())
        state = LEGACY_STATE_ALIASES.get(state.strip().lower(), None) or RunState(state)
        try:
            self._write(
                f"INSERT INTO remediation_runs ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, NULL, NULL, ?, NULL, ?, NULL, ?)",
                (run_id, host_id, action_id, state.value, stamp, stamp, payload),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Run {run_id} already exists") from e

    # -- conditional updates -------------------------------------------------

    def update_run(
        self,
        record: RunRecord,
        expected_state: RunState,
        expected_payload: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Replace a run's record if it is still in ``expected_state``.

        When ``expected_payload`` is given the stored payload must also be
        unchanged, which turns the update into a compare-and-swap.

        Returns:
            True if the row was updated
        """
        payload = codec.serialize(record)
        values = _row_values(record, payload, format_timestamp(now or utc_now()))
        sql = (
            "UPDATE remediation_runs SET state = :state, approval_status = :approval_status, "
            "next_attempt_at = :next_attempt_at, started_at = :started_at, "
            "updated_at = :updated_at, payload = :payload "
            "WHERE run_id = :run_id AND state = :expected_state"
        )
        values["expected_state"] = expected_state.value
        if expected_payload is not None:
            sql += " AND payload = :expected_payload"
            values["expected_payload"] = expected_payload
        return self._write(sql, values) == 1

    def claim_run(self, record: RunRecord, expected_payload: str, now: Optional[datetime] = None) -> bool:
        """
        Atomically move a run from ``queued`` to ``running``.

        ``record`` must already carry ``state=running``. The claim fails if
        another worker claimed, cancelled or otherwise changed the run since
        ``expected_payload`` was read.
        """
        if record.state != RunState.RUNNING:
            raise ValueError("claim_run expects a record in the running state")
        return self.update_run(record, RunState.QUEUED, expected_payload=expected_payload, now=now)

    def set_state(self, run_id: str, expected_state: str, new_state: RunState,
                  now: Optional[datetime] = None) -> bool:
        """Change only the state column; used for rows whose payload is unusable."""
        return self._write(
            "UPDATE remediation_runs SET state = ?, updated_at = ? "
            "WHERE run_id = ? AND state = ?",
            (new_state.value, format_timestamp(now or utc_now()), run_id, expected_state),
        ) == 1

    # -- reads ---------------------------------------------------------------

    def get_run(self, run_id: str) -> Optional[StoredRun]:
        rows = self._query(f"SELECT {_COLUMNS} FROM remediation_runs WHERE run_id = ?", (run_id,))
        return self._to_stored(rows[0]) if rows else None

    def find_replay_of(self, source_run_id: str) -> Optional[StoredRun]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM remediation_runs WHERE replay_of_run_id = ?",
            (source_run_id,),
        )
        return self._to_stored(rows[0]) if rows else None

    def next_ready_run(self, now: datetime, skip_run_ids=()) -> Optional[StoredRun]:
        """
        Oldest queued run that is due and not behind an approval gate.

        Args:
            now: Reference time for ``next_attempt_at``
            skip_run_ids: Runs this caller already gave up on in this pass
        """
        skip = list(skip_run_ids)
        sql = (
            f"SELECT {_COLUMNS} FROM remediation_runs "
            "WHERE state = ? "
            "AND (approval_status IS NULL OR approval_status NOT IN (?, ?)) "
            "AND (next_attempt_at IS NULL OR next_attempt_at <= ?)"
        )
        params: list = [RunState.QUEUED.value, *_BLOCKING_APPROVAL, format_timestamp(now)]
        if skip:
            sql += f" AND run_id NOT IN ({', '.join('?' for _ in skip)})"
            params.extend(skip)
        sql += " ORDER BY requested_at ASC, run_id ASC LIMIT 1"
        rows = self._query(sql, params)
        return self._to_stored(rows[0]) if rows else None

    def list_runs(self, limit: int, dlq_only: bool = False) -> List[StoredRun]:
        """Most recently requested runs first."""
        if dlq_only:
            rows = self._query(
                f"SELECT {_COLUMNS} FROM remediation_runs WHERE state = ? "
                "ORDER BY requested_at DESC, run_id DESC LIMIT ?",
                (RunState.DLQ.value, limit),
            )
        else:
            rows = self._query(
                f"SELECT {_COLUMNS} FROM remediation_runs "
                "ORDER BY requested_at DESC, run_id DESC LIMIT ?",
                (limit,),
            )
        return [self._to_stored(row) for row in rows]

    def list_stale_running(self, started_before: datetime, limit: int = 100) -> List[StoredRun]:
        """Runs stuck in ``running`` since before ``started_before``."""
        rows = self._query(
            f"SELECT {_COLUMNS} FROM remediation_runs "
            "WHERE state = ? AND (started_at IS NULL OR started_at <= ?) "
            "ORDER BY started_at ASC LIMIT ?",
            (RunState.RUNNING.value, format_timestamp(started_before), limit),
        )
        return [self._to_stored(row) for row in rows]

    def list_unreplayed_dead_letters(self, limit: int) -> List[StoredRun]:
        """Oldest dead-lettered runs that have no replay yet."""
        rows = self._query(
            f"SELECT {_COLUMNS} FROM remediation_runs AS r "
            "WHERE r.state = ? AND NOT EXISTS ("
            "  SELECT 1 FROM remediation_runs AS x WHERE x.replay_of_run_id = r.run_id"
            ") ORDER BY r.updated_at ASC, r.run_id ASC LIMIT ?",
            (RunState.DLQ.value, limit),
        )
        return [self._to_stored(row) for row in rows]

    def has_active_run(self, host_id: str, action_id: str) -> bool:
        """True if the host has a queued or running run of ``action_id``."""
        rows = self._query(
            "SELECT 1 FROM remediation_runs "
            "WHERE host_id = ? AND action_id = ? AND state IN (?, ?) LIMIT 1",
            (host_id, action_id, RunState.QUEUED.value, RunState.RUNNING.value),
        )
        return bool(rows)

    def count_active(self, host_id: Optional[str] = None) -> int:
        """Number of queued or running runs, for one host or the whole store."""
        sql = "SELECT COUNT(*) AS n FROM remediation_runs WHERE state IN (?, ?)"
        params: List[str] = [RunState.QUEUED.value, RunState.RUNNING.value]
        if host_id is not None:
            sql += " AND host_id = ?"
            params.append(host_id)
        return self._query(sql, tuple(params))[0]["n"]

    def counts(self) -> Dict[str, int]:
        """
        Run counts by state plus the number of queued runs awaiting approval.

        Two aggregate queries regardless of table size.
        """
        counts = {state.value: 0 for state in RunState}
        for row in self._query("SELECT state, COUNT(*) AS n FROM remediation_runs GROUP BY state"):
            counts[row["state"]] = counts.get(row["state"], 0) + row["n"]
        counts["done"] = counts[RunState.SUCCEEDED.value]
        pending = self._query(
            "SELECT COUNT(*) AS n FROM remediation_runs WHERE state = ? AND approval_status = ?",
            (RunState.QUEUED.value, ApprovalStatus.PENDING.value),
        )
        counts["approvalPending"] = pending[0]["n"] if pending else 0
        return counts
