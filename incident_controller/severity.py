"""
Severity Catalog

Static table mapping severity levels to response/escalation SLAs,
stakeholders and status update cadence.

CRITICAL CONSTRAINTS:
- LOCKED: Exactly four levels, SEV1 (worst) to SEV4
- IMMUTABLE: Policies are frozen and defined once at startup
- READ-ONLY: Lookups have no side effects
- EXPLICIT FAILURE: Unknown levels raise UnknownSeverityError, never default
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Tuple, Union

from .errors import UnknownSeverityError

logger = logging.getLogger("severity_catalog")


# -----------------------------------------------------------------------------
# Severity Level Enum (LOCKED)
# -----------------------------------------------------------------------------
class SeverityLevel(str, Enum):
    """
    Incident severity levels.

    This enum is LOCKED - do not add levels without explicit approval.
    """
    SEV1 = "SEV1"  # Complete outage or data loss, all hands
    SEV2 = "SEV2"  # Major feature degraded for many users
    SEV3 = "SEV3"  # Partial degradation, workaround exists
    SEV4 = "SEV4"  # Minor issue, no customer impact

    @property
    def rank(self) -> int:
        """Lower rank is more severe."""
        return int(self.value[3:])

    def is_more_severe_than(self, other: "SeverityLevel") -> bool:
        return self.rank < other.rank


SeverityInput = Union[SeverityLevel, str]


# -----------------------------------------------------------------------------
# Severity Policy (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SeverityPolicy:
    """
    SLA policy for a single severity level.

    response_time: time allowed before someone must acknowledge
    escalation_time: time allowed before mitigation, after which it escalates
    update_interval: cadence for stakeholder status updates
    """
    level: SeverityLevel
    response_time: timedelta
    escalation_time: timedelta
    update_interval: timedelta
    stakeholders: FrozenSet[str]
    description: str = ""

    def __post_init__(self):
        """Validate policy on creation."""
        if not isinstance(self.stakeholders, frozenset):
            raise ValueError("stakeholders must be a frozenset for immutability")
        for name in ("response_time", "escalation_time", "update_interval"):
            value = getattr(self, name)
            if not isinstance(value, timedelta) or value <= timedelta(0):
                raise ValueError(f"{name} must be a positive timedelta, got {value!r}")
        if self.escalation_time < self.response_time:
            raise ValueError(
                f"escalation_time ({self.escalation_time}) must not be shorter "
                f"than response_time ({self.response_time})"
            )

    def response_deadline(self, created_at: datetime) -> datetime:
        return created_at + self.response_time

    def escalation_deadline(self, created_at: datetime) -> datetime:
        return created_at + self.escalation_time

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level.value,
            "response_minutes": self.response_time.total_seconds() / 60,
            "escalation_minutes": self.escalation_time.total_seconds() / 60,
            "update_interval_minutes": self.update_interval.total_seconds() / 60,
            "stakeholders": sorted(self.stakeholders),
            "description": self.description,
        }


# -----------------------------------------------------------------------------
# Default Policies
# -----------------------------------------------------------------------------
DEFAULT_SEVERITY_POLICIES: Tuple[SeverityPolicy, ...] = (
    SeverityPolicy(
        level=SeverityLevel.SEV1,
        response_time=timedelta(minutes=5),
        escalation_time=timedelta(minutes=15),
        update_interval=timedelta(minutes=15),
        stakeholders=frozenset({
            "incident_commander",
            "engineering_lead",
            "executive_sponsor",
            "communications_lead",
            "support_lead",
        }),
        description="Critical: complete outage, data loss or security breach",
    ),
    SeverityPolicy(
        level=SeverityLevel.SEV2,
        response_time=timedelta(minutes=15),
        escalation_time=timedelta(minutes=30),
        update_interval=timedelta(minutes=30),
        stakeholders=frozenset({
            "incident_commander",
            "engineering_lead",
            "support_lead",
        }),
        description="High: major functionality degraded for many users",
    ),
    SeverityPolicy(
        level=SeverityLevel.SEV3,
        response_time=timedelta(hours=1),
        escalation_time=timedelta(hours=4),
        update_interval=timedelta(hours=2),
        stakeholders=frozenset({"on_call_engineer", "team_lead"}),
        description="Medium: partial degradation with a workaround",
    ),
    SeverityPolicy(
        level=SeverityLevel.SEV4,
        response_time=timedelta(hours=24),
        escalation_time=timedelta(hours=72),
        update_interval=timedelta(hours=24),
        stakeholders=frozenset({"on_call_engineer"}),
        description="Low: minor issue, no customer impact",
    ),
)


def parse_severity(level: SeverityInput) -> SeverityLevel:
    """
    Normalize a severity given as enum or string ("SEV1", "sev1").

    Raises UnknownSeverityError for anything outside the fixed set.
    """
    if isinstance(level, SeverityLevel):
        return level
    if isinstance(level, str):
        try:
            return SeverityLevel(level.strip().upper())
        except ValueError:
            pass
    raise UnknownSeverityError(level)


# -----------------------------------------------------------------------------
# Severity Catalog (Read-Only)
# -----------------------------------------------------------------------------
class SeverityCatalog:
    """
    Read-only lookup of severity policies.

    The catalog must define a policy for every SeverityLevel.
    """

    def __init__(self, policies: Iterable[SeverityPolicy] = DEFAULT_SEVERITY_POLICIES):
        table: Dict[SeverityLevel, SeverityPolicy] = {}
        for policy in policies:
            if policy.level in table:
                raise ValueError(f"Duplicate policy for {policy.level.value}")
            table[policy.level] = policy

        missing = [lvl.value for lvl in SeverityLevel if lvl not in table]
        if missing:
            raise ValueError(f"Severity catalog missing levels: {missing}")

        self._policies: Mapping[SeverityLevel, SeverityPolicy] = MappingProxyType(table)

    @classmethod
    def from_mapping(cls, overrides: Mapping[SeverityLevel, SeverityPolicy]) -> "SeverityCatalog":
        """
        Build a catalog from defaults with some levels replaced.
        """
        merged = {p.level: p for p in DEFAULT_SEVERITY_POLICIES}
        merged.update(overrides)
        return cls(merged.values())

    def get(self, level: SeverityInput) -> SeverityPolicy:
        """Get the policy for a level. Raises UnknownSeverityError."""
        return self._policies[parse_severity(level)]

    def levels(self) -> Tuple[SeverityLevel, ...]:
        """All levels, most severe first."""
        return tuple(sorted(self._policies, key=lambda lvl: lvl.rank))

    def response_deadline(self, level: SeverityInput, created_at: datetime) -> datetime:
        return self.get(level).response_deadline(created_at)

    def escalation_deadline(self, level: SeverityInput, created_at: datetime) -> datetime:
        return self.get(level).escalation_deadline(created_at)

    def __contains__(self, level: object) -> bool:
        try:
            parse_severity(level)  # type: ignore[arg-type]
        except UnknownSeverityError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._policies)
