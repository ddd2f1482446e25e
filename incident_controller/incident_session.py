"""
Incident Session - Timeline-Backed State Machine

One IncidentSession tracks one incident: its severity, its timeline,
the runbooks executed against it and its status.

States:
    OPEN -> MITIGATED -> RESOLVED
    MITIGATED -> OPEN (reopen)
    RESOLVED is terminal; closed incidents are never resurrected.

CRITICAL CONSTRAINTS:
- EVERY ACTION IS RECORDED: Each successful operation appends to the timeline
- NO PARTIAL MUTATION: A failed operation leaves status and timeline unchanged
- SINGLE WRITER: Mutations are serialized by a per-session lock
- SEVERITY HISTORY: Rebuildable from severity_changed events alone
- NO I/O: Collaborators are told about changes through a listener callback,
  never awaited and never allowed to fail a transition
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .errors import InvalidTransitionError
from .runbook_registry import Runbook, RunbookRegistry
from .severity import SeverityCatalog, SeverityInput, SeverityLevel, SeverityPolicy, parse_severity
from .timeline import TimelineEvent, TimelineEventType, TimelineLog, TimelineView

logger = logging.getLogger("incident_session")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class IncidentStatus(str, Enum):
    """Incident lifecycle status."""
    OPEN = "open"
    MITIGATED = "mitigated"
    RESOLVED = "resolved"

    @classmethod
    def active_statuses(cls) -> Set["IncidentStatus"]:
        """Statuses in which the incident is still being worked."""
        return {cls.OPEN, cls.MITIGATED}


class SlaStatus(str, Enum):
    """Result of an SLA check."""
    WITHIN_SLA = "within_sla"
    RESPONSE_BREACHED = "response_breached"
    ESCALATION_BREACHED = "escalation_breached"


# -----------------------------------------------------------------------------
# Valid Transitions
# -----------------------------------------------------------------------------
VALID_TRANSITIONS: Dict[IncidentStatus, Set[IncidentStatus]] = {
    IncidentStatus.OPEN: {IncidentStatus.MITIGATED},
    IncidentStatus.MITIGATED: {IncidentStatus.RESOLVED, IncidentStatus.OPEN},
    IncidentStatus.RESOLVED: set(),  # Terminal
}

STAKEHOLDER_UPDATE_TAG = "stakeholder_update"

# Listener signature: (session, action, events appended by the action)
SessionListener = Callable[["IncidentSession", str, Tuple[TimelineEvent, ...]], None]


# -----------------------------------------------------------------------------
# Runbook Execution
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RunbookExecution:
    """
    Record of one runbook walked against an incident.

    completed_steps holds one marker per runbook step, in step order.
    """
    runbook: Runbook
    started_at: datetime
    started_by: str
    completed_steps: Tuple[bool, ...]

    @property
    def category(self) -> str:
        return self.runbook.category

    @property
    def is_complete(self) -> bool:
        return len(self.completed_steps) == len(self.runbook.steps) and all(self.completed_steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runbook": self.runbook.to_dict(),
            "started_at": self.started_at.isoformat(),
            "started_by": self.started_by,
            "completed_steps": list(self.completed_steps),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunbookExecution":
        return cls(
            runbook=Runbook.from_dict(data["runbook"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            started_by=data.get("started_by", "system"),
            completed_steps=tuple(data.get("completed_steps", [])),
        )


# -----------------------------------------------------------------------------
# Incident Session
# -----------------------------------------------------------------------------
class IncidentSession:
    """
    Mutable aggregate for a single incident.

    The session exclusively owns its timeline and runbook executions.
    Use IncidentSession.open() (or IncidentManager.create()) to start a new
    incident; the constructor alone does not record detection.
    """

    def __init__(
        self,
        incident_id: str,
        severity: SeverityInput,
        catalog: SeverityCatalog,
        registry: RunbookRegistry,
        created_at: Optional[datetime] = None,
        title: str = "",
        clock: Callable[[], datetime] = utcnow,
        timeline: Optional[TimelineLog] = None,
        listener: Optional[SessionListener] = None,
    ):
        if not isinstance(incident_id, str) or not incident_id.strip():
            raise ValueError("incident_id must be a non-empty string")

        self._catalog = catalog
        self._registry = registry
        self._clock = clock
        self._listener = listener
        self._lock = threading.RLock()

        self.incident_id = incident_id
        self.title = title
        self._severity = catalog.get(severity).level
        self.created_at = created_at or clock()
        self._status = IncidentStatus.OPEN
        self._timeline = timeline if timeline is not None else TimelineLog()
        self._timeline_view = TimelineView(self._timeline)
        self._executions: List[RunbookExecution] = []
        self.acknowledged_at: Optional[datetime] = None
        self.mitigated_at: Optional[datetime] = None
        self.resolved_at: Optional[datetime] = None

    @classmethod
    def open(
        cls,
        incident_id: str,
        severity: SeverityInput,
        catalog: SeverityCatalog,
        registry: RunbookRegistry,
        actor: str = "system",
        title: str = "",
        clock: Callable[[], datetime] = utcnow,
        listener: Optional[SessionListener] = None,
    ) -> "IncidentSession":
        """
        Start a new incident in OPEN status and record its detection.
        """
        session = cls(
            incident_id=incident_id,
            severity=severity,
            catalog=catalog,
            registry=registry,
            title=title,
            clock=clock,
            listener=listener,
        )
        event = session._timeline.record(
            description=f"Incident detected at {session.severity.value}" + (f": {title}" if title else ""),
            timestamp=session.created_at,
            actor=actor,
            event_type=TimelineEventType.DETECTED,
            tags=(f"incident:{incident_id}",),
            metadata={"severity": session.severity.value},
        )
        logger.info(f"Incident {incident_id} opened at {session.severity.value}")
        session._emit("detected", (event,))
        return session

    # -------------------------------------------------------------------------
    # Read-only Properties
    # -------------------------------------------------------------------------

    @property
    def severity(self) -> SeverityLevel:
        return self._severity

    @property
    def policy(self) -> SeverityPolicy:
        return self._catalog.get(self._severity)

    @property
    def status(self) -> IncidentStatus:
        return self._status

    @property
    def timeline(self) -> TimelineView:
        """Read-only view; events are only appended through session operations."""
        return self._timeline_view

    @property
    def executions(self) -> Tuple[RunbookExecution, ...]:
        with self._lock:
            return tuple(self._executions)

    @property
    def executed_runbook(self) -> Optional[RunbookExecution]:
        """The most recently executed runbook, if any."""
        with self._lock:
            return self._executions[-1] if self._executions else None

    @property
    def is_active(self) -> bool:
        return self._status in IncidentStatus.active_statuses()

    def set_listener(self, listener: Optional[SessionListener]) -> None:
        self._listener = listener

    # -------------------------------------------------------------------------
    # Transition Validation
    # -------------------------------------------------------------------------

    def can_transition(self, target: IncidentStatus) -> bool:
        return target in VALID_TRANSITIONS.get(self._status, set())

    def _require_status(self, action: str, allowed: Sequence[IncidentStatus]) -> None:
        if self._status not in allowed:
            raise InvalidTransitionError(
                self.incident_id,
                action,
                self._status.value,
                [s.value for s in allowed],
            )

    def _require_transition(self, action: str, target: IncidentStatus) -> None:
        if not self.can_transition(target):
            allowed = [s.value for s, targets in VALID_TRANSITIONS.items() if target in targets]
            raise InvalidTransitionError(self.incident_id, action, self._status.value, allowed)

    def _event(
        self,
        description: str,
        actor: str,
        event_type: TimelineEventType,
        timestamp: datetime,
        tags: Sequence[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimelineEvent:
        return TimelineEvent(
            timestamp=timestamp,
            description=description,
            actor=actor,
            tags=(f"incident:{self.incident_id}",) + tuple(tags),
            event_type=event_type,
            metadata=metadata or {},
        )

    def _emit(self, action: str, events: Tuple[TimelineEvent, ...]) -> None:
        """Tell the listener about a committed change. Listener errors are logged only."""
        if self._listener is None:
            return
        try:
            self._listener(self, action, events)
        except Exception as e:
            logger.error(f"Session listener failed for {self.incident_id}/{action}: {e}")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def acknowledge(self, actor: str = "system") -> TimelineEvent:
        """
        Record that a responder has picked up the incident.

        Satisfies the response SLA if done before the response deadline.
        """
        with self._lock:
            self._require_status("acknowledge", [IncidentStatus.OPEN])
            if self.acknowledged_at is not None:
                raise InvalidTransitionError(
                    self.incident_id, "acknowledge (already acknowledged)", self._status.value, []
                )
            now = self._clock()
            event = self._event(
                f"Incident acknowledged by {actor}", actor, TimelineEventType.ACKNOWLEDGED, now,
            )
            self._timeline.append(event)
            self.acknowledged_at = now

        logger.info(f"Incident {self.incident_id} acknowledged by {actor}")
        self._emit("acknowledged", (event,))
        return event

    def escalate(self, new_severity: SeverityInput, actor: str = "system", reason: str = "") -> TimelineEvent:
        """
        Change severity (escalation or de-escalation).

        Allowed while OPEN or MITIGATED. Raises InvalidTransitionError once
        RESOLVED, UnknownSeverityError for levels outside the catalog.
        """
        with self._lock:
            self._require_status("escalate", [IncidentStatus.OPEN, IncidentStatus.MITIGATED])
            target = self._catalog.get(new_severity).level
            previous = self._severity
            if target == previous:
                raise InvalidTransitionError(
                    self.incident_id, f"escalate to unchanged severity {target.value}", self._status.value, []
                )

            direction = "escalated" if target.is_more_severe_than(previous) else "de-escalated"
            description = f"Severity {direction} from {previous.value} to {target.value}"
            if reason:
                description += f": {reason}"
            event = self._event(
                description,
                actor,
                TimelineEventType.SEVERITY_CHANGED,
                self._clock(),
                tags=(f"severity:{target.value}",),
                metadata={"from": previous.value, "to": target.value, "reason": reason},
            )
            self._timeline.append(event)
            self._severity = target

        logger.info(f"Incident {self.incident_id} {direction}: {previous.value} -> {target.value}")
        self._emit("severity_changed", (event,))
        return event

    def execute_runbook(self, category: str, actor: str = "system") -> RunbookExecution:
        """
        Walk a registered runbook, recording each step in declared order.

        Raises UnknownRunbookError (session unchanged) if the category is not
        registered. Earlier executions are kept; a new category adds a new
        execution record and a new event series.
        """
        with self._lock:
            self._require_status("execute runbook on", [IncidentStatus.OPEN, IncidentStatus.MITIGATED])
            runbook = self._registry.lookup(category)

            started_at = self._clock()
            run_tag = f"runbook:{runbook.category}"
            run_number = sum(1 for ex in self._executions if ex.category == runbook.category) + 1
            total = len(runbook.steps)

            # One event per step; run details are carried on each step
            events = [
                self._event(
                    step,
                    actor,
                    TimelineEventType.RUNBOOK_STEP,
                    started_at,
                    tags=(run_tag, f"step:{index}"),
                    metadata={"category": runbook.category, "run": run_number, "step": index, "total_steps": total},
                )
                for index, step in enumerate(runbook.steps, start=1)
            ]

            self._timeline.extend(events)
            execution = RunbookExecution(
                runbook=runbook,
                started_at=started_at,
                started_by=actor,
                completed_steps=tuple(True for _ in runbook.steps),
            )
            self._executions.append(execution)

        logger.info(f"Incident {self.incident_id}: executed runbook '{runbook.category}' ({total} steps)")
        self._emit("runbook_executed", tuple(events))
        return execution

    def mitigate(self, actor: str = "system", summary: str = "") -> TimelineEvent:
        """OPEN -> MITIGATED."""
        with self._lock:
            self._require_transition("mitigate", IncidentStatus.MITIGATED)
            now = self._clock()
            event = self._event(
                "Incident mitigated" + (f": {summary}" if summary else ""),
                actor, TimelineEventType.MITIGATED, now,
                metadata={"from_status": self._status.value},
            )
            self._timeline.append(event)
            self._status = IncidentStatus.MITIGATED
            self.mitigated_at = now

        logger.info(f"Incident {self.incident_id} mitigated by {actor}")
        self._emit("mitigated", (event,))
        return event

    def resolve(self, actor: str = "system", summary: str = "") -> TimelineEvent:
        """MITIGATED -> RESOLVED. There is no direct OPEN -> RESOLVED path."""
        with self._lock:
            self._require_transition("resolve", IncidentStatus.RESOLVED)
            now = self._clock()
            event = self._event(
                "Incident resolved" + (f": {summary}" if summary else ""),
                actor, TimelineEventType.RESOLVED, now,
                metadata={"from_status": self._status.value},
            )
            self._timeline.append(event)
            self._status = IncidentStatus.RESOLVED
            self.resolved_at = now

        logger.info(f"Incident {self.incident_id} resolved by {actor}")
        self._emit("resolved", (event,))
        return event

    def reopen(self, actor: str = "system", reason: str = "") -> TimelineEvent:
        """MITIGATED -> OPEN. A RESOLVED incident cannot be reopened."""
        with self._lock:
            self._require_transition("reopen", IncidentStatus.OPEN)
            event = self._event(
                "Incident reopened" + (f": {reason}" if reason else ""),
                actor, TimelineEventType.REOPENED, self._clock(),
                metadata={"from_status": self._status.value, "reason": reason},
            )
            self._timeline.append(event)
            self._status = IncidentStatus.OPEN
            self.mitigated_at = None

        logger.info(f"Incident {self.incident_id} reopened by {actor}")
        self._emit("reopened", (event,))
        return event

    def add_note(self, description: str, actor: str = "system", tags: Sequence[str] = ()) -> TimelineEvent:
        """Append a free-form note. Allowed in any status."""
        with self._lock:
            event = self._event(description, actor, TimelineEventType.NOTE, self._clock(), tags=tags)
            self._timeline.append(event)

        self._emit("note", (event,))
        return event

    def post_update(self, message: str, actor: str = "system") -> TimelineEvent:
        """
        Record a stakeholder status update and reset the update cadence.
        """
        with self._lock:
            self._require_status("post update on", [IncidentStatus.OPEN, IncidentStatus.MITIGATED])
            event = self._event(
                message, actor, TimelineEventType.NOTE, self._clock(), tags=(STAKEHOLDER_UPDATE_TAG,),
            )
            self._timeline.append(event)

        self._emit("stakeholder_update", (event,))
        return event

    # -------------------------------------------------------------------------
    # Pure Computations
    # -------------------------------------------------------------------------

    def sla_status(self, now: datetime) -> SlaStatus:
        """
        Compare the SLA clock against the current severity's deadlines.

        - RESOLVED incidents never report a breach.
        - While OPEN the clock reads `now`; while MITIGATED it stops at the
          mitigation time.
        - Past the escalation deadline -> ESCALATION_BREACHED.
        - Past the response deadline without a timely acknowledgement
          -> RESPONSE_BREACHED.
        """
        with self._lock:
            status = self._status
            policy = self._catalog.get(self._severity)
            acknowledged_at = self.acknowledged_at
            mitigated_at = self.mitigated_at

        if status == IncidentStatus.RESOLVED:
            return SlaStatus.WITHIN_SLA

        clock = now
        if status == IncidentStatus.MITIGATED and mitigated_at is not None:
            clock = min(now, mitigated_at)

        response_deadline = policy.response_deadline(self.created_at)
        escalation_deadline = policy.escalation_deadline(self.created_at)

        if clock > escalation_deadline:
            return SlaStatus.ESCALATION_BREACHED

        if clock > response_deadline:
            if acknowledged_at is None or acknowledged_at > response_deadline:
                return SlaStatus.RESPONSE_BREACHED

        return SlaStatus.WITHIN_SLA

    def severity_history(self) -> List[Tuple[datetime, SeverityLevel]]:
        """
        Rebuild the severity history from the timeline alone.

        Returns (timestamp, severity) pairs starting at detection.
        """
        history: List[Tuple[datetime, SeverityLevel]] = []
        for event in self._timeline.snapshot():
            if event.event_type == TimelineEventType.DETECTED:
                history.append((event.timestamp, parse_severity(event.metadata["severity"])))
            elif event.event_type == TimelineEventType.SEVERITY_CHANGED:
                history.append((event.timestamp, parse_severity(event.metadata["to"])))
        return history

    def last_update_at(self) -> datetime:
        updates = self._timeline.filter(lambda e: e.has_tag(STAKEHOLDER_UPDATE_TAG)).to_tuple()
        return updates[-1].timestamp if updates else self.created_at

    def next_update_due(self) -> Optional[datetime]:
        """When the next stakeholder update is due; None once resolved."""
        if self._status == IncidentStatus.RESOLVED:
            return None
        return self.last_update_at() + self.policy.update_interval

    def update_overdue(self, now: datetime) -> bool:
        due = self.next_update_due()
        return due is not None and now > due

    def elapsed(self, now: datetime) -> timedelta:
        return now - self.created_at

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def to_snapshot(self) -> Dict[str, Any]:
        """Point-in-time, JSON-serializable copy of the session."""
        with self._lock:
            return {
                "incident_id": self.incident_id,
                "title": self.title,
                "severity": self._severity.value,
                "status": self._status.value,
                "created_at": self.created_at.isoformat(),
                "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
                "mitigated_at": self.mitigated_at.isoformat() if self.mitigated_at else None,
                "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
                "timeline": self._timeline.to_list(),
                "executions": [ex.to_dict() for ex in self._executions],
            }

    @classmethod
    def from_snapshot(
        cls,
        data: Dict[str, Any],
        catalog: SeverityCatalog,
        registry: RunbookRegistry,
        clock: Callable[[], datetime] = utcnow,
        listener: Optional[SessionListener] = None,
    ) -> "IncidentSession":
        """
        Rebuild a session from to_snapshot() output.

        Executions keep the runbook steps they ran with, even if the registry
        has since changed.
        """
        session = cls(
            incident_id=data["incident_id"],
            severity=data["severity"],
            catalog=catalog,
            registry=registry,
            created_at=datetime.fromisoformat(data["created_at"]),
            title=data.get("title", ""),
            clock=clock,
            timeline=TimelineLog.from_list(data.get("timeline", [])),
            listener=listener,
        )
        session._status = IncidentStatus(data.get("status", IncidentStatus.OPEN.value))
        for name in ("acknowledged_at", "mitigated_at", "resolved_at"):
            if data.get(name):
                setattr(session, name, datetime.fromisoformat(data[name]))
        session._executions = [RunbookExecution.from_dict(ex) for ex in data.get("executions", [])]
        return session

    def __repr__(self) -> str:
        return (
            f"IncidentSession(incident_id={self.incident_id!r}, severity={self._severity.value}, "
            f"status={self._status.value}, events={len(self._timeline)})"
        )
