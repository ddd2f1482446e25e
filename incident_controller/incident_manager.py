"""
Incident Manager

Creates incident sessions and connects them to the outside world.

Responsibilities:
- Enforce unique ids among active incidents
- Hand every session the same catalog and registry (no global state)
- After each successful change: notify stakeholders, update the status
  page and persist a snapshot, all fire-and-forget
- Restore sessions from persisted snapshots
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .collaborators import CollaboratorDispatcher
from .errors import DuplicateIncidentError, IncidentNotFoundError
from .incident_session import IncidentSession, IncidentStatus, SlaStatus, utcnow
from .notifications import IncidentMessages, status_phase_for
from .runbook_registry import RunbookRegistry
from .severity import SeverityCatalog, SeverityInput
from .timeline import TimelineEvent

logger = logging.getLogger("incident_manager")

# Actions that change what the public status page should show
STATUS_PAGE_ACTIONS = frozenset({"detected", "runbook_executed", "mitigated", "resolved", "reopened"})


class IncidentManager:
    """
    Registry of live incident sessions.

    Sessions stay in the manager after resolution for reporting; a resolved
    incident's id may be reused for a new incident.
    """

    def __init__(
        self,
        catalog: SeverityCatalog,
        registry: RunbookRegistry,
        dispatcher: Optional[CollaboratorDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.registry = registry
        self.dispatcher = dispatcher
        self._clock = clock
        self._sessions: Dict[str, IncidentSession] = {}
        self._closed: List[IncidentSession] = []
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Session Lifecycle
    # -------------------------------------------------------------------------

    def create(
        self,
        incident_id: str,
        severity: SeverityInput,
        actor: str = "system",
        title: str = "",
    ) -> IncidentSession:
        """
        Open a new incident.

        Raises DuplicateIncidentError if the id belongs to an active incident,
        UnknownSeverityError for an unknown level.
        """
        self.catalog.get(severity)

        with self._lock:
            existing = self._sessions.get(incident_id)
            if existing is not None and existing.is_active:
                raise DuplicateIncidentError(incident_id)

            session = IncidentSession.open(
                incident_id=incident_id,
                severity=severity,
                catalog=self.catalog,
                registry=self.registry,
                actor=actor,
                title=title,
                clock=self._clock,
                listener=self._on_session_change,
            )
            if existing is not None:
                self._closed.append(existing)
            self._sessions[incident_id] = session

        return session

    def get(self, incident_id: str) -> IncidentSession:
        """Current session for an id. Raises IncidentNotFoundError."""
        with self._lock:
            session = self._sessions.get(incident_id)
        if session is None:
            raise IncidentNotFoundError(incident_id)
        return session

    def restore(self, incident_id: str) -> IncidentSession:
        """
        Rebuild a session from the store's latest snapshot.

        Raises IncidentNotFoundError if no store is configured or nothing
        was persisted for the id, DuplicateIncidentError if a live session
        with that id is already active.
        """
        store = self.dispatcher.store if self.dispatcher else None
        snapshot = store.load(incident_id) if store is not None else None
        if snapshot is None:
            raise IncidentNotFoundError(incident_id)

        session = IncidentSession.from_snapshot(
            snapshot,
            catalog=self.catalog,
            registry=self.registry,
            clock=self._clock,
            listener=self._on_session_change,
        )
        with self._lock:
            existing = self._sessions.get(incident_id)
            if existing is not None and existing.is_active:
                raise DuplicateIncidentError(incident_id)
            if existing is not None:
                self._closed.append(existing)
            self._sessions[incident_id] = session

        logger.info(f"Restored incident {incident_id} ({session.status.value}, {len(session.timeline)} events)")
        return session

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def active(self) -> List[IncidentSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if s.is_active]

    def sessions(self, status: Optional[IncidentStatus] = None) -> List[IncidentSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        return sessions

    def closed_history(self) -> List[IncidentSession]:
        """Resolved sessions whose id has since been reused."""
        with self._lock:
            return list(self._closed)

    def sla_report(self, now: Optional[datetime] = None) -> Dict[str, SlaStatus]:
        now = now or self._clock()
        return {s.incident_id: s.sla_status(now) for s in self.active()}

    def breached(self, now: Optional[datetime] = None) -> List[Tuple[str, SlaStatus]]:
        return [
            (incident_id, status)
            for incident_id, status in self.sla_report(now).items()
            if status != SlaStatus.WITHIN_SLA
        ]

    def overdue_updates(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self._clock()
        return [s.incident_id for s in self.active() if s.update_overdue(now)]

    def __contains__(self, incident_id: object) -> bool:
        with self._lock:
            return incident_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # -------------------------------------------------------------------------
    # Collaborator Wiring
    # -------------------------------------------------------------------------

    def _on_session_change(
        self,
        session: IncidentSession,
        action: str,
        events: Tuple[TimelineEvent, ...],
    ) -> None:
        """Fan a committed change out to collaborators without waiting."""
        if self.dispatcher is None:
            return

        message = IncidentMessages.for_action(session, action, events)
        if message:
            self.dispatcher.notify(session.incident_id, session.severity, message)

        if action in STATUS_PAGE_ACTIONS:
            self.dispatcher.publish_status(session.incident_id, status_phase_for(session, action))

        self.dispatcher.persist(session.to_snapshot())

    def shutdown(self, wait: bool = True) -> None:
        if self.dispatcher is not None:
            if wait:
                self.dispatcher.drain()
            self.dispatcher.shutdown(wait_for_pending=wait)
