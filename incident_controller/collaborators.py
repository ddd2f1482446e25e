"""
External Collaborators - Fire-and-Forget Dispatch

The incident core talks to the outside world through three narrow
interfaces:

- Notifier.notify(incident_id, severity, message)
- StatusPublisher.publish_status(incident_id, phase)
- SessionStore.persist(snapshot) / SessionStore.load(incident_id)

Calls are submitted to a thread pool and never awaited by a transition.
A failing collaborator is logged, counted and otherwise ignored: it can
never block or fail a state change.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Set

from .severity import SeverityLevel

logger = logging.getLogger("collaborators")


# -----------------------------------------------------------------------------
# Status Page Phases
# -----------------------------------------------------------------------------
class StatusPhase(str, Enum):
    """Public status page phases."""
    INVESTIGATING = "investigating"
    IDENTIFIED = "identified"
    MONITORING = "monitoring"
    RESOLVED = "resolved"


# -----------------------------------------------------------------------------
# Collaborator Interfaces
# -----------------------------------------------------------------------------
class Notifier(Protocol):
    def notify(self, incident_id: str, severity: SeverityLevel, message: str) -> None:
        ...


class StatusPublisher(Protocol):
    def publish_status(self, incident_id: str, phase: StatusPhase) -> None:
        ...


class SessionStore(Protocol):
    def persist(self, snapshot: Dict[str, Any]) -> None:
        ...

    def load(self, incident_id: str) -> Optional[Dict[str, Any]]:
        ...


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------
class CollaboratorDispatcher:
    """
    Runs collaborator calls on a thread pool.

    Features:
    - Fire-and-forget submission (callers never wait)
    - Failures logged and counted, never raised
    - Store calls run on their own single worker, so snapshots are
      persisted in the order they were taken
    - drain() for shutdown and tests
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        status_publisher: Optional[StatusPublisher] = None,
        store: Optional[SessionStore] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        max_workers: int = 2,
    ):
        self.notifier = notifier
        self.status_publisher = status_publisher
        self.store = store
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="incident-collab",
        )
        self._store_executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="incident-store",
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Condition()
        self._stats = {"submitted": 0, "delivered": 0, "failed": 0}

    # -------------------------------------------------------------------------
    # Boundary Calls
    # -------------------------------------------------------------------------

    def notify(self, incident_id: str, severity: SeverityLevel, message: str) -> Optional[Future]:
        if self.notifier is None:
            return None
        return self._submit("notify", incident_id, self.notifier.notify, incident_id, severity, message)

    def publish_status(self, incident_id: str, phase: StatusPhase) -> Optional[Future]:
        if self.status_publisher is None:
            return None
        return self._submit("publish_status", incident_id, self.status_publisher.publish_status, incident_id, phase)

    def persist(self, snapshot: Dict[str, Any]) -> Optional[Future]:
        if self.store is None:
            return None
        return self._submit(
            "persist", snapshot.get("incident_id", "?"), self.store.persist, snapshot,
            executor=self._store_executor,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _submit(
        self,
        name: str,
        incident_id: str,
        fn: Callable[..., Any],
        *args: Any,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> Optional[Future]:
        try:
            future = (executor or self._executor).submit(fn, *args)
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Collaborator {name} for {incident_id} not submitted: {e}")
            with self._lock:
                self._stats["failed"] += 1
            return None

        with self._lock:
            self._stats["submitted"] += 1
            self._pending.add(future)

        def _done(f: Future) -> None:
            error = f.exception()
            if error is not None:
                logger.error(f"Collaborator {name} failed for {incident_id}: {error}")
            with self._lock:
                self._pending.discard(f)
                self._stats["failed" if error is not None else "delivered"] += 1
                self._lock.notify_all()

        future.add_done_callback(_done)
        return future

    def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for in-flight calls (and their bookkeeping) to finish.

        Returns the number of calls still pending after the timeout.
        """
        with self._lock:
            self._lock.wait_for(lambda: not self._pending, timeout=timeout)
            return len(self._pending)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats, pending=len(self._pending))

    def shutdown(self, wait_for_pending: bool = True) -> None:
        """Stop the workers, then close collaborators that hold resources."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait_for_pending)
        self._store_executor.shutdown(wait=wait_for_pending)

        for collaborator in (self.notifier, self.status_publisher, self.store):
            close = getattr(collaborator, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.warning(f"Closing {type(collaborator).__name__} failed: {e}")
