"""
Incident Controller Module

Timeline and runbook tracking for incident response.
Records what happened during an incident, walks remediation runbooks,
and tells the incident commander when an SLA has been breached.

Components (leaves first):
- Severity Catalog: SEV1..SEV4 policies with response/escalation SLAs
  * LOCKED enum SeverityLevel (EXACTLY 4 values)
  * Frozen SeverityPolicy records, defined once at startup
- Timeline Log: Append-only ordered record of incident events
  * Frozen TimelineEvent (immutable after append)
  * Snapshots are copies, filters are restartable
- Runbook Registry: Named, ordered remediation procedures
  * Explicit category key lookup, typed failure on miss
  * Overwrites are allowed but logged
- Incident Session: OPEN -> MITIGATED -> RESOLVED state machine
  * Every transition recorded on the timeline
  * Severity history reconstructable from the timeline alone
  * Failed transitions leave status and timeline untouched
- Incident Manager: Session creation, unique active ids, collaborator wiring
  * Notifications, status page updates and persistence are fire-and-forget
"""

__version__ = "0.4.0"
