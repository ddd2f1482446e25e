"""
Runbook Registry

Named, ordered remediation procedures selected by incident category.

Selection is EXPLICIT: the caller supplies the category key. The registry
never guesses a runbook from free text. An unknown key raises
UnknownRunbookError instead of silently doing nothing.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import UnknownRunbookError

logger = logging.getLogger("runbook_registry")


# -----------------------------------------------------------------------------
# Runbook (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Runbook:
    """
    Immutable catalog entry: an ordered list of remediation steps.

    Steps are plain strings and are executed in declared order.
    """
    category: str
    steps: Tuple[str, ...]
    title: str = ""

    def __post_init__(self):
        """Validate runbook on creation."""
        if not isinstance(self.category, str) or not self.category.strip():
            raise ValueError("Runbook category must be a non-empty string")
        if not isinstance(self.steps, tuple):
            raise ValueError("steps must be a tuple for immutability")
        if not self.steps:
            raise ValueError(f"Runbook '{self.category}' has no steps")
        for idx, step in enumerate(self.steps):
            if not isinstance(step, str) or not step.strip():
                raise ValueError(f"Runbook '{self.category}' step {idx + 1} is empty")

    def __len__(self) -> int:
        return len(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "title": self.title,
            "steps": list(self.steps),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Runbook":
        return cls(
            category=data["category"],
            steps=tuple(data["steps"]),
            title=data.get("title", ""),
        )


# -----------------------------------------------------------------------------
# Built-in Runbooks
# -----------------------------------------------------------------------------
DEFAULT_RUNBOOKS: Tuple[Runbook, ...] = (
    Runbook(
        category="database_outage",
        title="Primary database unavailable",
        steps=(
            "Confirm database health checks are failing from multiple hosts",
            "Check replication status and replica lag",
            "Stop write traffic by enabling maintenance mode",
            "Promote the healthiest replica to primary",
            "Repoint application connection strings to the new primary",
            "Disable maintenance mode and verify write traffic",
            "Monitor error rates and query latency for 15 minutes",
        ),
    ),
    Runbook(
        category="high_error_rate",
        title="Elevated 5xx error rate",
        steps=(
            "Identify the failing endpoints from error dashboards",
            "Check recent deployments and feature flag changes",
            "Roll back the most recent deployment if correlated",
            "Verify error rate returns to baseline",
        ),
    ),
    Runbook(
        category="service_unavailable",
        title="Service not responding",
        steps=(
            "Check load balancer target health",
            "Inspect recent pod restarts and crash loops",
            "Restart unhealthy instances",
            "Scale out if capacity is exhausted",
            "Confirm health endpoint returns 200",
        ),
    ),
    Runbook(
        category="security_incident",
        title="Suspected security breach",
        steps=(
            "Preserve logs and evidence before making changes",
            "Revoke compromised credentials and sessions",
            "Isolate affected hosts from the network",
            "Notify the security and legal stakeholders",
            "Assess data exposure scope",
        ),
    ),
)


# -----------------------------------------------------------------------------
# Runbook Registry
# -----------------------------------------------------------------------------
class RunbookRegistry:
    """
    Registry of runbooks keyed by incident category.

    register() inserts or replaces; replacing logs a warning.
    lookup() raises UnknownRunbookError for unknown categories.
    """

    def __init__(self, runbooks: Optional[Iterable[Runbook]] = None):
        self._runbooks: Dict[str, Runbook] = {}
        self._lock = threading.Lock()
        for runbook in runbooks or ():
            self.add(runbook)

    @classmethod
    def with_default_runbooks(cls) -> "RunbookRegistry":
        """Registry seeded with the built-in runbooks."""
        return cls(DEFAULT_RUNBOOKS)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, category: str, steps: Sequence[str], title: Optional[str] = None) -> Runbook:
        """
        Register the runbook for a category, replacing any existing one.

        Raises ValueError if the category or steps are empty.
        """
        runbook = Runbook(category=category, steps=tuple(steps), title=title or "")
        return self.add(runbook)

    def add(self, runbook: Runbook) -> Runbook:
        """Register an already-built runbook."""
        with self._lock:
            previous = self._runbooks.get(runbook.category)
            self._runbooks[runbook.category] = runbook

        if previous is not None:
            logger.warning(
                f"Runbook '{runbook.category}' replaced "
                f"({len(previous.steps)} steps -> {len(runbook.steps)} steps)"
            )
        else:
            logger.debug(f"Registered runbook '{runbook.category}' ({len(runbook.steps)} steps)")
        return runbook

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def lookup(self, category: str) -> Runbook:
        """Get the runbook for a category. Raises UnknownRunbookError."""
        with self._lock:
            runbook = self._runbooks.get(category)
            if runbook is None:
                raise UnknownRunbookError(category, list(self._runbooks))
            return runbook

    def categories(self) -> List[str]:
        with self._lock:
            return sorted(self._runbooks)

    def __contains__(self, category: object) -> bool:
        with self._lock:
            return category in self._runbooks

    def __len__(self) -> int:
        with self._lock:
            return len(self._runbooks)
