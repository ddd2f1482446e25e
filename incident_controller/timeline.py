"""
Timeline Log - Append-Only Incident Record

This module provides the ordered, append-only record of everything that
happened during an incident.

CRITICAL CONSTRAINTS:
- APPEND-ONLY: Events are never edited, removed or reordered
- IMMUTABLE: TimelineEvent is frozen once created
- ATOMIC: An event is either fully visible in a snapshot or not at all
- SNAPSHOTS ARE COPIES: Later appends never change a returned snapshot

The log keeps events in the order they were appended. If a caller appends
an event whose timestamp is earlier than the last one, the log keeps it
where it was appended; resolving clock skew is the caller's job.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .errors import InvalidEventError

logger = logging.getLogger("timeline")


# -----------------------------------------------------------------------------
# Timeline Event Type Enum
# -----------------------------------------------------------------------------
class TimelineEventType(str, Enum):
    """Kinds of events recorded on an incident timeline."""
    DETECTED = "detected"
    ACKNOWLEDGED = "acknowledged"
    SEVERITY_CHANGED = "severity_changed"
    RUNBOOK_STEP = "runbook_step"
    MITIGATED = "mitigated"
    RESOLVED = "resolved"
    REOPENED = "reopened"
    NOTE = "note"


# -----------------------------------------------------------------------------
# Timeline Event (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TimelineEvent:
    """
    Immutable timeline entry.

    tags are free-form correlation tags ("runbook:database_outage").
    metadata holds structured details, e.g. from/to on severity changes.
    """
    timestamp: datetime
    description: str
    actor: str = "system"
    tags: Tuple[str, ...] = ()
    event_type: TimelineEventType = TimelineEventType.NOTE
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Freeze tags and metadata so the event cannot change after creation."""
        if not isinstance(self.tags, tuple):
            object.__setattr__(self, "tags", tuple(self.tags))
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))
        if not isinstance(self.event_type, TimelineEventType):
            object.__setattr__(self, "event_type", TimelineEventType(self.event_type))

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "description": self.description,
            "actor": self.actor,
            "tags": list(self.tags),
            "event_type": self.event_type.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimelineEvent":
        """Create event from dictionary."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            description=data["description"],
            actor=data.get("actor", "system"),
            tags=tuple(data.get("tags", [])),
            event_type=TimelineEventType(data.get("event_type", TimelineEventType.NOTE.value)),
            metadata=data.get("metadata", {}),
        )


def validate_event(event: Any) -> None:
    """Raise InvalidEventError if the event is malformed."""
    if not isinstance(event, TimelineEvent):
        raise InvalidEventError("expected a TimelineEvent", event)
    if not isinstance(event.timestamp, datetime):
        raise InvalidEventError("missing timestamp", event)
    if event.timestamp.utcoffset() is None:
        raise InvalidEventError("timestamp must be timezone-aware", event)
    if not isinstance(event.description, str) or not event.description.strip():
        raise InvalidEventError("missing description", event)
    if not isinstance(event.actor, str) or not event.actor.strip():
        raise InvalidEventError("missing actor", event)


# -----------------------------------------------------------------------------
# Filtered View (Lazy, Restartable)
# -----------------------------------------------------------------------------
class FilteredTimeline:
    """
    Lazy view of the events matching a predicate.

    The view is bound to the snapshot taken when filter() was called.
    Each iteration re-scans that snapshot, so the view can be iterated
    any number of times and always yields the same events.
    """

    def __init__(self, events: Tuple[TimelineEvent, ...], predicate: Callable[[TimelineEvent], bool]):
        self._events = events
        self._predicate = predicate

    def __iter__(self) -> Iterator[TimelineEvent]:
        return (event for event in self._events if self._predicate(event))

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __bool__(self) -> bool:
        return any(True for _ in self)

    def first(self) -> Optional[TimelineEvent]:
        return next(iter(self), None)

    def to_tuple(self) -> Tuple[TimelineEvent, ...]:
        return tuple(self)


# -----------------------------------------------------------------------------
# Timeline Log (Append-Only)
# -----------------------------------------------------------------------------
class TimelineLog:
    """
    Append-only ordered record of incident events.

    CRITICAL: This log has NO methods for editing or removing events.
    """

    def __init__(self, events: Optional[Sequence[TimelineEvent]] = None):
        self._events: List[TimelineEvent] = []
        self._lock = threading.Lock()
        for event in events or ():
            self.append(event)

    # -------------------------------------------------------------------------
    # WRITE Operations (Append-Only)
    # -------------------------------------------------------------------------

    def append(self, event: TimelineEvent) -> TimelineEvent:
        """
        Append an event at the end of the log.

        Raises InvalidEventError on malformed input; the log is unchanged.
        """
        validate_event(event)
        with self._lock:
            if self._events and event.timestamp < self._events[-1].timestamp:
                logger.debug(
                    f"Out-of-order event appended: {event.timestamp.isoformat()} "
                    f"< {self._events[-1].timestamp.isoformat()}"
                )
            self._events.append(event)
        return event

    def extend(self, events: Sequence[TimelineEvent]) -> None:
        """
        Append several events as one unit.

        All events are validated first, so either every event is appended
        or none is.
        """
        for event in events:
            validate_event(event)
        with self._lock:
            self._events.extend(events)

    def record(
        self,
        description: str,
        timestamp: datetime,
        actor: str = "system",
        event_type: TimelineEventType = TimelineEventType.NOTE,
        tags: Sequence[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimelineEvent:
        """Build and append an event in one call."""
        return self.append(TimelineEvent(
            timestamp=timestamp,
            description=description,
            actor=actor,
            tags=tuple(tags),
            event_type=event_type,
            metadata=metadata or {},
        ))

    # -------------------------------------------------------------------------
    # READ Operations
    # -------------------------------------------------------------------------

    def snapshot(self) -> Tuple[TimelineEvent, ...]:
        """Ordered copy of all events appended so far."""
        with self._lock:
            return tuple(self._events)

    def filter(self, predicate: Callable[[TimelineEvent], bool]) -> FilteredTimeline:
        """Lazy, restartable view of events matching predicate."""
        return FilteredTimeline(self.snapshot(), predicate)

    def by_type(self, event_type: TimelineEventType) -> FilteredTimeline:
        return self.filter(lambda e: e.event_type == event_type)

    def last(self) -> Optional[TimelineEvent]:
        with self._lock:
            return self._events[-1] if self._events else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __iter__(self) -> Iterator[TimelineEvent]:
        return iter(self.snapshot())

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_list(self) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self.snapshot()]

    @classmethod
    def from_list(cls, data: Sequence[Dict[str, Any]]) -> "TimelineLog":
        return cls([TimelineEvent.from_dict(item) for item in data])


# -----------------------------------------------------------------------------
# Read-Only View
# -----------------------------------------------------------------------------
class TimelineView:
    """
    Read-only window onto a TimelineLog owned by someone else.

    Exposes the read operations only; the owner keeps the log itself.
    """

    __slots__ = ("_log",)

    def __init__(self, log: TimelineLog):
        self._log = log

    def snapshot(self) -> Tuple[TimelineEvent, ...]:
        return self._log.snapshot()

    def filter(self, predicate: Callable[[TimelineEvent], bool]) -> FilteredTimeline:
        return self._log.filter(predicate)

    def by_type(self, event_type: TimelineEventType) -> FilteredTimeline:
        return self._log.by_type(event_type)

    def last(self) -> Optional[TimelineEvent]:
        return self._log.last()

    def to_list(self) -> List[Dict[str, Any]]:
        return self._log.to_list()

    def __len__(self) -> int:
        return len(self._log)

    def __iter__(self) -> Iterator[TimelineEvent]:
        return iter(self._log)
