"""
Audit trail for fleet-remediate.

Every queue mutation (enqueue, claim outcome, retry, dead-letter, replay,
approval decision, recovery) and every fleet preview or stage execution is
recorded as an :class:`AuditEvent` through a pluggable backend.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .retry import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class EventType(Enum):
    """Types of audit events."""
    RUN_ENQUEUED = "run_enqueued"
    RUN_CLAIMED = "run_claimed"
    RUN_SUCCEEDED = "run_succeeded"
    RUN_RETRY_SCHEDULED = "run_retry_scheduled"
    RUN_DEAD_LETTERED = "run_dead_lettered"
    RUN_FAILED = "run_failed"
    RUN_CANCELED = "run_canceled"
    RUN_REPLAYED = "run_replayed"
    RUN_RECOVERED = "run_recovered"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    FLEET_PREVIEWED = "fleet_previewed"
    FLEET_STAGE_EXECUTED = "fleet_stage_executed"


@dataclass
class AuditEvent:
    """
    Audit event data class.

    Attributes:
        id: Unique event identifier
        timestamp: Event timestamp (ISO 8601, UTC)
        event_type: Type of event
        actor_id: User or component that triggered the event
        run_id: Run affected (optional)
        host_id: Host affected (optional)
        action_id: Remediation action involved (optional)
        result: Result of the operation
        details: Additional event details
    """
    id: str
    timestamp: str
    event_type: EventType
    actor_id: str
    run_id: Optional[str] = None
    host_id: Optional[str] = None
    action_id: Optional[str] = None
    result: str = "success"
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return data

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class AuditBackend(ABC):
    """Abstract base class for audit backends."""

    @abstractmethod
    def write_event(self, event: AuditEvent) -> None:
        """Write an audit event."""
        pass

    @abstractmethod
    def query_events(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        event_type: Optional[EventType] = None,
        run_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Query audit events."""
        pass


def _matches(
    event: AuditEvent,
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    event_type: Optional[EventType],
    run_id: Optional[str],
) -> bool:
    if event_type and event.event_type != event_type:
        return False
    if run_id and event.run_id != run_id:
        return False
    if start_time or end_time:
        event_time = datetime.fromisoformat(event.timestamp)
        if start_time and event_time < ensure_utc(start_time):
            return False
        if end_time and event_time > ensure_utc(end_time):
            return False
    return True


class MemoryAuditBackend(AuditBackend):
    """In-process audit backend, mainly for tests and dry runs."""

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def write_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    def query_events(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        event_type: Optional[EventType] = None,
        run_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEvent]:
        matched = [
            event for event in self.events
            if _matches(event, start_time, end_time, event_type, run_id)
        ]
        return matched[:limit]


class FileAuditBackend(AuditBackend):
    """
    File-based audit backend.

    Stores audit events in JSONL format, one event per line.
    """

    def __init__(self, file_path: Union[str, Path] = "fleet-remediate-audit.jsonl"):
        """
        Initialize file backend.

        Args:
            file_path: Path to audit log file
        """
        self.file_path = Path(file_path)
        self._lock = threading.Lock()
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists():
            self.file_path.touch()
        logger.info(f"File audit backend initialized: {self.file_path}")

    def write_event(self, event: AuditEvent) -> None:
        """
        Write an audit event to file.

        Args:
            event: Audit event to write
        """
        try:
            with self._lock, self.file_path.open("a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit event: {e}")
            raise

    def query_events(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        event_type: Optional[EventType] = None,
        run_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEvent]:
        """
        Query audit events from file.

        Args:
            start_time: Filter events after this time
            end_time: Filter events before this time
            event_type: Filter by event type
            run_id: Filter by run ID
            limit: Maximum number of events to return

        Returns:
            List of matching audit events
        """
        events = []

        with self.file_path.open("r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue

                try:
                    event_data = json.loads(line)
                    event_data["event_type"] = EventType(event_data["event_type"])
                    event = AuditEvent(**event_data)
                except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping invalid audit event: {e}")
                    continue

                if not _matches(event, start_time, end_time, event_type, run_id):
                    continue
                events.append(event)
                if len(events) >= limit:
                    break

        return events


class AuditTrail:
    """
    Facade used by the queue and the planner to record events.

    Example:
        >>> trail = AuditTrail(MemoryAuditBackend())
        >>> trail.record(EventType.RUN_ENQUEUED, actor_id="ops-1", run_id="r-1")
    """

    def __init__(self, backend: Optional[AuditBackend] = None):
        """
        Initialize audit trail.

        Args:
            backend: Audit backend to use (in-memory when omitted)
        """
        self.backend = backend or MemoryAuditBackend()

    def record(
        self,
        event_type: EventType,
        actor_id: Optional[str] = None,
        run_id: Optional[str] = None,
        host_id: Optional[str] = None,
        action_id: Optional[str] = None,
        result: str = "success",
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEvent:
        """Build and write an audit event."""
        event = AuditEvent(
            id=uuid.uuid4().hex,
            timestamp=ensure_utc(timestamp or utc_now()).isoformat(),
            event_type=event_type,
            actor_id=actor_id or SYSTEM_ACTOR,
            run_id=run_id,
            host_id=host_id,
            action_id=action_id,
            result=result,
            details=details,
        )
        self.backend.write_event(event)
        return event

    def query_events(self, **kwargs) -> List[AuditEvent]:
        """
        Query audit events.

        Args:
            **kwargs: Query parameters (start_time, end_time, event_type, run_id, limit)
        """
        return self.backend.query_events(**kwargs)
