"""
Incident Errors

Every failure in the incident core is a local validation failure.
Errors are raised synchronously to the caller, never retried and never
swallowed. A failed operation leaves the session exactly as it was.

Each error carries a stable code and exit code so that a surrounding
CLI or service can map it to a distinct message.
"""

from typing import Any, Dict, List, Optional


class IncidentError(Exception):
    """Base incident error with structured details."""
    exit_code = 1

    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class UnknownSeverityError(IncidentError):
    exit_code = 10

    def __init__(self, level: Any):
        super().__init__(
            code="UNKNOWN_SEVERITY",
            message=f"Unknown severity level '{level}'",
            details={"level": str(level)}
        )


class InvalidEventError(IncidentError):
    exit_code = 11

    def __init__(self, reason: str, event: Optional[Any] = None):
        super().__init__(
            code="INVALID_EVENT",
            message=f"Invalid timeline event: {reason}",
            details={"reason": reason, "event": repr(event) if event is not None else None}
        )


class DuplicateIncidentError(IncidentError):
    exit_code = 12

    def __init__(self, incident_id: str):
        super().__init__(
            code="DUPLICATE_INCIDENT",
            message=f"Incident '{incident_id}' is already active",
            details={"incident_id": incident_id}
        )


class InvalidTransitionError(IncidentError):
    exit_code = 13

    def __init__(self, incident_id: str, action: str, status: str, allowed: List[str] = None):
        allowed = allowed or []
        super().__init__(
            code="INVALID_TRANSITION",
            message=(
                f"Cannot {action} incident '{incident_id}' in status '{status}'. "
                f"Allowed from: {allowed}"
            ),
            details={
                "incident_id": incident_id,
                "action": action,
                "status": status,
                "allowed_from": allowed,
            }
        )


class UnknownRunbookError(IncidentError):
    exit_code = 14

    def __init__(self, category: str, known: List[str] = None):
        super().__init__(
            code="UNKNOWN_RUNBOOK",
            message=f"No runbook registered for category '{category}'",
            details={"category": category, "known_categories": sorted(known or [])}
        )


class IncidentNotFoundError(IncidentError):
    exit_code = 15

    def __init__(self, incident_id: str):
        super().__init__(
            code="INCIDENT_NOT_FOUND",
            message=f"Incident '{incident_id}' not found",
            details={"incident_id": incident_id}
        )


class ConfigurationError(IncidentError):
    exit_code = 16

    def __init__(self, source: str, errors: List[str]):
        super().__init__(
            code="CONFIG_INVALID",
            message=f"Invalid incident configuration in {source}",
            details={"source": source, "errors": errors}
        )
