"""
Pytest configuration for Incident Controller tests.

This module provides:
1. A controllable clock for deterministic timestamps
2. Common fixtures for catalogs, registries, sessions and managers
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from incident_controller.collaborators import CollaboratorDispatcher
from incident_controller.incident_manager import IncidentManager
from incident_controller.incident_session import IncidentSession
from incident_controller.runbook_registry import RunbookRegistry
from incident_controller.severity import SeverityCatalog, SeverityLevel


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

DATABASE_OUTAGE_STEPS = [
    "Confirm database health checks are failing",
    "Check replication lag",
    "Enable maintenance mode",
    "Promote replica",
    "Update connection strings",
    "Disable maintenance mode",
    "Monitor for 15 minutes",
]


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------
class FixedClock:
    """
    Clock that only moves when told to.

    Usage:
        clock = FixedClock(T0)
        clock.advance(minutes=5)
    """

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def catalog():
    return SeverityCatalog()


@pytest.fixture
def registry():
    """Registry with a 7-step database_outage runbook and a short network one."""
    reg = RunbookRegistry()
    reg.register("database_outage", DATABASE_OUTAGE_STEPS, title="Database outage")
    reg.register("network_partition", ["Identify partitioned zone", "Drain traffic from zone"])
    return reg


@pytest.fixture
def make_session(catalog, registry, clock):
    """Factory for sessions opened at T0."""
    def _make(incident_id: str = "INC-1", severity=SeverityLevel.SEV2, **kwargs) -> IncidentSession:
        return IncidentSession.open(
            incident_id=incident_id,
            severity=severity,
            catalog=catalog,
            registry=registry,
            clock=clock,
            **kwargs,
        )
    return _make


@pytest.fixture
def mock_notifier():
    return MagicMock()


@pytest.fixture
def mock_status_publisher():
    return MagicMock()


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.load = MagicMock(return_value=None)
    return store


@pytest.fixture
def dispatcher(mock_notifier, mock_status_publisher, mock_store):
    d = CollaboratorDispatcher(
        notifier=mock_notifier,
        status_publisher=mock_status_publisher,
        store=mock_store,
        max_workers=1,
    )
    yield d
    d.shutdown()


@pytest.fixture
def manager(catalog, registry, dispatcher, clock):
    return IncidentManager(catalog, registry, dispatcher=dispatcher, clock=clock)
