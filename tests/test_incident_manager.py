"""
Incident Manager Tests

Tests proving:
1. UNIQUE IDS: two active incidents can never share an id
2. ID REUSE: a resolved incident's id may be used again
3. FIRE-AND-FORGET: collaborators are called after each change and their
   failures never affect the session
4. RESTORE: sessions rebuild from the store's latest snapshot
"""

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from incident_controller.collaborators import CollaboratorDispatcher, StatusPhase
from incident_controller.errors import (
    DuplicateIncidentError,
    IncidentNotFoundError,
    InvalidTransitionError,
    UnknownSeverityError,
)
from incident_controller.incident_manager import IncidentManager
from incident_controller.incident_session import IncidentStatus, SlaStatus
from incident_controller.session_store import JsonlSessionStore
from incident_controller.severity import SeverityLevel
from tests.conftest import T0


# =============================================================================
# Section 1: Session Registry
# =============================================================================

class TestSessionRegistry:
    """Creating and looking up sessions."""

    def test_create_and_get(self, manager):
        session = manager.create("INC-1", "SEV2", actor="pagerbot", title="API latency")
        assert manager.get("INC-1") is session
        assert "INC-1" in manager
        assert len(manager) == 1
        assert session.status == IncidentStatus.OPEN

    def test_duplicate_active_id_rejected(self, manager):
        manager.create("INC-1", "SEV2")
        with pytest.raises(DuplicateIncidentError):
            manager.create("INC-1", "SEV1")
        assert manager.get("INC-1").severity == SeverityLevel.SEV2

    def test_duplicate_rejected_while_mitigated(self, manager):
        manager.create("INC-1", "SEV2").mitigate()
        with pytest.raises(DuplicateIncidentError):
            manager.create("INC-1", "SEV2")

    def test_resolved_id_can_be_reused(self, manager):
        first = manager.create("INC-1", "SEV2")
        first.mitigate()
        first.resolve()

        second = manager.create("INC-1", "SEV4")
        assert second is not first
        assert manager.get("INC-1") is second
        assert manager.closed_history() == [first]
        assert first.status == IncidentStatus.RESOLVED

    def test_unknown_severity_rejected_before_registration(self, manager):
        with pytest.raises(UnknownSeverityError):
            manager.create("INC-1", "P1")
        assert "INC-1" not in manager

    def test_get_unknown_id(self, manager):
        with pytest.raises(IncidentNotFoundError) as exc:
            manager.get("INC-404")
        assert exc.value.details["incident_id"] == "INC-404"

    def test_active_and_status_filters(self, manager):
        manager.create("INC-1", "SEV1")
        manager.create("INC-2", "SEV2").mitigate()
        done = manager.create("INC-3", "SEV3")
        done.mitigate()
        done.resolve()

        assert {s.incident_id for s in manager.active()} == {"INC-1", "INC-2"}
        assert [s.incident_id for s in manager.sessions(IncidentStatus.RESOLVED)] == ["INC-3"]
        assert len(manager.sessions()) == 3

    def test_manager_without_dispatcher(self, catalog, registry, clock):
        manager = IncidentManager(catalog, registry, clock=clock)
        session = manager.create("INC-1", "SEV3")
        session.execute_runbook("database_outage")
        session.mitigate()
        assert session.status == IncidentStatus.MITIGATED


# =============================================================================
# Section 2: Reporting
# =============================================================================

class TestReporting:
    """SLA and update-cadence reports across sessions."""

    def test_sla_report(self, manager, clock):
        manager.create("INC-1", "SEV1")
        manager.create("INC-2", "SEV3")
        acked = manager.create("INC-3", "SEV1")
        acked.acknowledge()

        now = T0 + timedelta(minutes=6)
        assert manager.sla_report(now) == {
            "INC-1": SlaStatus.RESPONSE_BREACHED,
            "INC-2": SlaStatus.WITHIN_SLA,
            "INC-3": SlaStatus.WITHIN_SLA,
        }
        assert manager.breached(now) == [("INC-1", SlaStatus.RESPONSE_BREACHED)]

    def test_resolved_sessions_not_reported(self, manager):
        session = manager.create("INC-1", "SEV1")
        session.mitigate()
        session.resolve()
        assert manager.sla_report(T0 + timedelta(hours=3)) == {}

    def test_overdue_updates(self, manager, clock):
        manager.create("INC-1", "SEV1")
        quiet = manager.create("INC-2", "SEV4")
        clock.advance(minutes=10)
        manager.get("INC-1").post_update("Still investigating")
        assert manager.overdue_updates(T0 + timedelta(minutes=20)) == []
        assert manager.overdue_updates(T0 + timedelta(minutes=30)) == ["INC-1"]
        assert quiet.incident_id not in manager.overdue_updates(T0 + timedelta(hours=2))


# =============================================================================
# Section 3: Collaborators
# =============================================================================

class TestCollaborators:
    """Notifier, status page and store calls."""

    def test_create_notifies_publishes_and_persists(
        self, manager, dispatcher, mock_notifier, mock_status_publisher, mock_store
    ):
        manager.create("INC-1", "SEV1", title="Checkout down")
        assert dispatcher.drain(timeout=5) == 0

        mock_notifier.notify.assert_called_once()
        incident_id, severity, message = mock_notifier.notify.call_args.args
        assert incident_id == "INC-1"
        assert severity == SeverityLevel.SEV1
        assert "Incident Declared" in message
        assert "Checkout down" in message

        mock_status_publisher.publish_status.assert_called_once_with("INC-1", StatusPhase.INVESTIGATING)
        snapshot = mock_store.persist.call_args.args[0]
        assert snapshot["incident_id"] == "INC-1"
        assert snapshot["status"] == "open"

    def test_status_page_follows_lifecycle(self, manager, dispatcher, mock_status_publisher):
        session = manager.create("INC-1", "SEV2")
        session.execute_runbook("database_outage")
        session.mitigate()
        session.resolve()
        dispatcher.drain(timeout=5)

        phases = [c.args[1] for c in mock_status_publisher.publish_status.call_args_list]
        assert phases == [
            StatusPhase.INVESTIGATING,
            StatusPhase.IDENTIFIED,
            StatusPhase.MONITORING,
            StatusPhase.RESOLVED,
        ]

    def test_notes_are_persisted_but_not_announced(self, manager, dispatcher, mock_notifier, mock_store):
        session = manager.create("INC-1", "SEV3")
        dispatcher.drain(timeout=5)
        mock_notifier.reset_mock()
        mock_store.reset_mock()

        session.add_note("Looking at dashboards")
        dispatcher.drain(timeout=5)

        mock_notifier.notify.assert_not_called()
        mock_store.persist.assert_called_once()

    def test_failing_notifier_does_not_fail_transitions(self, manager, dispatcher, mock_notifier):
        mock_notifier.notify.side_effect = RuntimeError("webhook unreachable")

        session = manager.create("INC-1", "SEV2")
        session.mitigate()
        dispatcher.drain(timeout=5)

        assert session.status == IncidentStatus.MITIGATED
        stats = dispatcher.get_stats()
        assert stats["failed"] == 2
        assert stats["pending"] == 0
        assert stats["submitted"] == stats["delivered"] + stats["failed"]

    def test_failed_operation_sends_nothing(self, manager, dispatcher, mock_notifier, mock_store):
        session = manager.create("INC-1", "SEV2")
        dispatcher.drain(timeout=5)
        mock_notifier.reset_mock()
        mock_store.reset_mock()

        with pytest.raises(InvalidTransitionError):
            session.resolve()
        dispatcher.drain(timeout=5)

        mock_notifier.notify.assert_not_called()
        mock_store.persist.assert_not_called()

    def test_dispatcher_after_shutdown_counts_failure(self, mock_notifier):
        dispatcher = CollaboratorDispatcher(notifier=mock_notifier, max_workers=1)
        dispatcher.shutdown()
        assert dispatcher.notify("INC-1", SeverityLevel.SEV1, "hello") is None
        assert dispatcher.get_stats()["failed"] == 1

    def test_missing_collaborators_are_skipped(self):
        dispatcher = CollaboratorDispatcher(max_workers=1)
        try:
            assert dispatcher.notify("INC-1", SeverityLevel.SEV1, "hello") is None
            assert dispatcher.publish_status("INC-1", StatusPhase.RESOLVED) is None
            assert dispatcher.persist({"incident_id": "INC-1"}) is None
        finally:
            dispatcher.shutdown()


# =============================================================================
# Section 4: Restore
# =============================================================================

class TestRestore:
    """Rebuilding sessions from persisted snapshots."""

    def test_restore_from_store(self, catalog, registry, clock, make_session, manager, mock_store):
        original = make_session("INC-5", "SEV1")
        original.execute_runbook("network_partition")
        original.mitigate()
        mock_store.load.return_value = original.to_snapshot()

        restored = manager.restore("INC-5")
        mock_store.load.assert_called_once_with("INC-5")
        assert manager.get("INC-5") is restored
        assert restored.status == IncidentStatus.MITIGATED
        assert len(restored.timeline) == len(original.timeline)

        restored.resolve()
        assert restored.status == IncidentStatus.RESOLVED

    def test_restore_missing_snapshot(self, manager):
        with pytest.raises(IncidentNotFoundError):
            manager.restore("INC-404")

    def test_restore_without_store(self, catalog, registry, clock):
        manager = IncidentManager(catalog, registry, clock=clock)
        with pytest.raises(IncidentNotFoundError):
            manager.restore("INC-1")

    def test_restore_over_active_session_rejected(self, manager, mock_store):
        session = manager.create("INC-1", "SEV2")
        mock_store.load.return_value = session.to_snapshot()
        with pytest.raises(DuplicateIncidentError):
            manager.restore("INC-1")
        assert manager.get("INC-1") is session

    def test_shutdown_drains(self, catalog, registry, clock):
        store = MagicMock()
        dispatcher = CollaboratorDispatcher(store=store, max_workers=1)
        manager = IncidentManager(catalog, registry, dispatcher=dispatcher, clock=clock)
        manager.create("INC-1", "SEV2")
        manager.shutdown()
        store.persist.assert_called_once()

    def test_closed_incident_restores_as_resolved(self, catalog, registry, clock, tmp_path):
        store = SlowSecondWriteStore(tmp_path)
        dispatcher = CollaboratorDispatcher(store=store, max_workers=2)
        manager = IncidentManager(catalog, registry, dispatcher=dispatcher, clock=clock)

        session = manager.create("INC-2", "SEV2")
        session.mitigate()
        session.resolve()
        dispatcher.drain(timeout=5)

        assert [s["status"] for s in store.history("INC-2")] == ["open", "mitigated", "resolved"]
        assert store.load("INC-2")["status"] == "resolved"

        fresh = IncidentManager(catalog, registry, dispatcher=dispatcher, clock=clock)
        assert fresh.restore("INC-2").status == IncidentStatus.RESOLVED
        manager.shutdown()


class SlowSecondWriteStore(JsonlSessionStore):
    """Store whose second write is slow, to expose reordered persists."""

    def __init__(self, sessions_dir):
        super().__init__(sessions_dir)
        self._calls = 0
        self._calls_lock = threading.Lock()

    def persist(self, snapshot):
        with self._calls_lock:
            self._calls += 1
            call = self._calls
        if call == 2:
            time.sleep(0.3)
        super().persist(snapshot)
