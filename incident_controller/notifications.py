"""
Incident Notifications - Message Templates & Delivery Channels

This module provides:
1. Message templates for each incident action
2. Webhook notifier (chat/paging integrations) over httpx
3. Status page client over httpx
4. Logging notifier for local development

IMPORTANT:
- Channels raise on delivery failure; the dispatcher logs and counts it
- No timeline data beyond the triggering event is sent
"""

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from .collaborators import StatusPhase
from .incident_session import IncidentSession, IncidentStatus
from .severity import SeverityLevel
from .timeline import TimelineEvent

logger = logging.getLogger("incident_notifications")

DEFAULT_HTTP_TIMEOUT = 10.0

SEVERITY_ICONS = {
    SeverityLevel.SEV1: "🔴",
    SeverityLevel.SEV2: "🟠",
    SeverityLevel.SEV3: "🟡",
    SeverityLevel.SEV4: "🔵",
}

STATUS_TO_PHASE = {
    IncidentStatus.OPEN: StatusPhase.INVESTIGATING,
    IncidentStatus.MITIGATED: StatusPhase.MONITORING,
    IncidentStatus.RESOLVED: StatusPhase.RESOLVED,
}


def status_phase_for(session: IncidentSession, action: str) -> StatusPhase:
    """Status page phase to publish after an action."""
    if action == "runbook_executed" and session.status == IncidentStatus.OPEN:
        return StatusPhase.IDENTIFIED
    return STATUS_TO_PHASE[session.status]


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------
class IncidentMessages:
    """Pre-defined incident notification messages."""

    @staticmethod
    def detected(session: IncidentSession) -> str:
        policy = session.policy
        title = f"\n*Title:* {session.title}" if session.title else ""
        return (
            f"{SEVERITY_ICONS[session.severity]} *Incident Declared*\n\n"
            f"*Incident:* {session.incident_id}\n"
            f"*Severity:* {session.severity.value}"
            f"{title}\n"
            f"*Respond within:* {int(policy.response_time.total_seconds() // 60)}m\n"
            f"*Stakeholders:* {', '.join(sorted(policy.stakeholders))}"
        )

    @staticmethod
    def severity_changed(session: IncidentSession, event: TimelineEvent) -> str:
        return (
            f"{SEVERITY_ICONS[session.severity]} *Severity Changed*\n\n"
            f"*Incident:* {session.incident_id}\n"
            f"*From:* {event.metadata.get('from')} → *To:* {event.metadata.get('to')}\n"
            f"*By:* {event.actor}"
        )

    @staticmethod
    def runbook_executed(session: IncidentSession, events: Tuple[TimelineEvent, ...]) -> str:
        steps = "\n".join(f"{e.metadata.get('step')}. {e.description}" for e in events)
        return (
            f"📋 *Runbook Executed*\n\n"
            f"*Incident:* {session.incident_id}\n"
            f"*Runbook:* {events[0].metadata.get('category')}\n\n"
            f"{steps}"
        )

    @staticmethod
    def status_changed(session: IncidentSession, event: TimelineEvent) -> str:
        icons = {
            IncidentStatus.OPEN: "🔁",
            IncidentStatus.MITIGATED: "🛡️",
            IncidentStatus.RESOLVED: "✅",
        }
        return (
            f"{icons[session.status]} *Incident {session.status.value.title()}*\n\n"
            f"*Incident:* {session.incident_id}\n"
            f"*Severity:* {session.severity.value}\n"
            f"*By:* {event.actor}\n\n"
            f"{event.description}"
        )

    @staticmethod
    def stakeholder_update(session: IncidentSession, event: TimelineEvent) -> str:
        return (
            f"📣 *Status Update*\n\n"
            f"*Incident:* {session.incident_id} ({session.severity.value}, {session.status.value})\n\n"
            f"{event.description}"
        )

    @classmethod
    def for_action(
        cls,
        session: IncidentSession,
        action: str,
        events: Tuple[TimelineEvent, ...],
    ) -> Optional[str]:
        """Message for an action, or None if the action is not announced."""
        if not events:
            return None
        if action == "detected":
            return cls.detected(session)
        if action == "severity_changed":
            return cls.severity_changed(session, events[0])
        if action == "runbook_executed":
            return cls.runbook_executed(session, events)
        if action in ("mitigated", "resolved", "reopened"):
            return cls.status_changed(session, events[0])
        if action == "stakeholder_update":
            return cls.stakeholder_update(session, events[0])
        return None


# -----------------------------------------------------------------------------
# Channels
# -----------------------------------------------------------------------------
class LoggingNotifier:
    """Writes notifications to the log. Useful when no webhook is configured."""

    def notify(self, incident_id: str, severity: SeverityLevel, message: str) -> None:
        logger.info(f"[{severity.value}] {incident_id}: {message}")


class WebhookNotifier:
    """
    Posts notifications as JSON to a webhook URL.

    Works with chat integrations that accept {"text": ...} payloads.
    """

    def __init__(
        self,
        webhook_url: str,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.webhook_url = webhook_url
        self._client = client or httpx.Client(timeout=timeout)

    def build_payload(self, incident_id: str, severity: SeverityLevel, message: str) -> Dict[str, Any]:
        return {
            "text": message,
            "incident_id": incident_id,
            "severity": severity.value,
        }

    def notify(self, incident_id: str, severity: SeverityLevel, message: str) -> None:
        response = self._client.post(
            self.webhook_url,
            json=self.build_payload(incident_id, severity, message),
        )
        response.raise_for_status()
        logger.debug(f"Webhook notification delivered for {incident_id}")

    def close(self) -> None:
        self._client.close()


class StatusPageClient:
    """
    Publishes incident phases to a status page API.

    PUT {base_url}/incidents/{incident_id} with {"status": phase}.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(timeout=timeout)

    def publish_status(self, incident_id: str, phase: StatusPhase) -> None:
        response = self._client.put(
            f"{self.base_url}/incidents/{incident_id}",
            headers=self._headers,
            json={"status": StatusPhase(phase).value},
        )
        response.raise_for_status()
        logger.debug(f"Status page updated for {incident_id}: {phase}")

    def close(self) -> None:
        self._client.close()
