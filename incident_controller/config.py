"""
Incident Controller Configuration

Settings come from environment variables. Severity policies and runbooks
can be overridden from YAML files; both files are validated before any
object is built, so a bad file fails at startup with ConfigurationError.

Environment variables:
- INCIDENT_SEVERITY_FILE: YAML severity overrides (optional)
- INCIDENT_RUNBOOK_FILE: YAML runbooks (optional)
- INCIDENT_SESSIONS_DIR: Directory for session snapshots (optional)
- INCIDENT_NOTIFY_WEBHOOK_URL: Webhook for notifications (optional)
- INCIDENT_STATUS_PAGE_URL / INCIDENT_STATUS_PAGE_TOKEN: Status page API (optional)
- INCIDENT_HTTP_TIMEOUT: Seconds, default 10
- INCIDENT_DISPATCH_WORKERS: Collaborator thread pool size, default 2
- INCIDENT_LOG_LEVEL: Default INFO
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from .collaborators import CollaboratorDispatcher
from .config_schema import RunbookFileModel, SeverityFileModel
from .errors import ConfigurationError, UnknownSeverityError
from .incident_manager import IncidentManager
from .notifications import LoggingNotifier, StatusPageClient, WebhookNotifier
from .runbook_registry import DEFAULT_RUNBOOKS, Runbook, RunbookRegistry
from .session_store import JsonlSessionStore
from .severity import SeverityCatalog, SeverityLevel, SeverityPolicy, parse_severity

logger = logging.getLogger("incident_config")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class IncidentSettings:
    """Runtime settings, normally read from the environment."""
    severity_file: Optional[Path] = None
    runbook_file: Optional[Path] = None
    sessions_dir: Optional[Path] = None
    notify_webhook_url: Optional[str] = None
    status_page_url: Optional[str] = None
    status_page_token: Optional[str] = None
    http_timeout: float = 10.0
    dispatch_workers: int = 2
    log_level: str = "INFO"


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> IncidentSettings:
    """Read settings from the environment (or a given mapping)."""
    env = os.environ if environ is None else environ
    errors = []

    try:
        http_timeout = float(env.get("INCIDENT_HTTP_TIMEOUT", "10"))
    except ValueError:
        errors.append(f"INCIDENT_HTTP_TIMEOUT is not a number: {env.get('INCIDENT_HTTP_TIMEOUT')}")
        http_timeout = 10.0

    try:
        dispatch_workers = int(env.get("INCIDENT_DISPATCH_WORKERS", "2"))
        if dispatch_workers < 1:
            raise ValueError
    except ValueError:
        errors.append(f"INCIDENT_DISPATCH_WORKERS must be a positive integer: {env.get('INCIDENT_DISPATCH_WORKERS')}")
        dispatch_workers = 2

    if errors:
        raise ConfigurationError("environment", errors)

    return IncidentSettings(
        severity_file=_optional_path(env.get("INCIDENT_SEVERITY_FILE")),
        runbook_file=_optional_path(env.get("INCIDENT_RUNBOOK_FILE")),
        sessions_dir=_optional_path(env.get("INCIDENT_SESSIONS_DIR")),
        notify_webhook_url=env.get("INCIDENT_NOTIFY_WEBHOOK_URL") or None,
        status_page_url=env.get("INCIDENT_STATUS_PAGE_URL") or None,
        status_page_token=env.get("INCIDENT_STATUS_PAGE_TOKEN") or None,
        http_timeout=http_timeout,
        dispatch_workers=dispatch_workers,
        log_level=env.get("INCIDENT_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    """Apply the standard log format at the given level."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


# -----------------------------------------------------------------------------
# YAML Loading
# -----------------------------------------------------------------------------
def read_yaml_file(file_path: Path) -> Dict[str, Any]:
    """Read a YAML mapping. Raises ConfigurationError on unreadable input."""
    try:
        with open(file_path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(str(file_path), [f"cannot read file: {e}"])
    except yaml.YAMLError as e:
        raise ConfigurationError(str(file_path), [f"invalid YAML: {e}"])

    if not isinstance(data, dict):
        raise ConfigurationError(str(file_path), ["top-level document must be a mapping"])
    return data


def _validation_messages(error: ValidationError) -> list:
    return [
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}"
        for item in error.errors()
    ]


def load_severity_catalog(file_path: Optional[Path] = None) -> SeverityCatalog:
    """
    Build the severity catalog.

    Levels not mentioned in the file keep their default policy.
    """
    if file_path is None:
        return SeverityCatalog()

    data = read_yaml_file(file_path)
    try:
        document = SeverityFileModel.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(file_path), _validation_messages(e))

    overrides: Dict[SeverityLevel, SeverityPolicy] = {}
    for name, model in document.severities.items():
        try:
            level = parse_severity(name)
        except UnknownSeverityError as e:
            raise ConfigurationError(str(file_path), [e.message])
        overrides[level] = SeverityPolicy(
            level=level,
            response_time=timedelta(minutes=model.response_minutes),
            escalation_time=timedelta(minutes=model.escalation_minutes),
            update_interval=timedelta(minutes=model.update_interval_minutes),
            stakeholders=frozenset(model.stakeholders),
            description=model.description,
        )

    logger.info(f"Loaded {len(overrides)} severity overrides from {file_path}")
    return SeverityCatalog.from_mapping(overrides)


def load_runbook_registry(file_path: Optional[Path] = None) -> RunbookRegistry:
    """
    Build the runbook registry.

    File runbooks are registered after the built-in ones (unless
    include_defaults is false), so a file entry replaces a built-in
    runbook with the same category.
    """
    if file_path is None:
        return RunbookRegistry.with_default_runbooks()

    data = read_yaml_file(file_path)
    try:
        document = RunbookFileModel.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(file_path), _validation_messages(e))

    registry = RunbookRegistry(DEFAULT_RUNBOOKS if document.include_defaults else ())
    for category, model in document.runbooks.items():
        try:
            registry.add(Runbook(category=category.strip(), steps=tuple(model.steps), title=model.title))
        except ValueError as e:
            raise ConfigurationError(str(file_path), [f"{category}: {e}"])

    logger.info(f"Loaded {len(document.runbooks)} runbooks from {file_path}")
    return registry


# -----------------------------------------------------------------------------
# Assembly
# -----------------------------------------------------------------------------
def build_dispatcher(settings: IncidentSettings) -> CollaboratorDispatcher:
    """Collaborators for the configured integrations."""
    if settings.notify_webhook_url:
        notifier = WebhookNotifier(settings.notify_webhook_url, timeout=settings.http_timeout)
    else:
        notifier = LoggingNotifier()

    status_publisher = None
    if settings.status_page_url:
        status_publisher = StatusPageClient(
            settings.status_page_url,
            api_key=settings.status_page_token,
            timeout=settings.http_timeout,
        )

    store = JsonlSessionStore(settings.sessions_dir) if settings.sessions_dir else None

    return CollaboratorDispatcher(
        notifier=notifier,
        status_publisher=status_publisher,
        store=store,
        max_workers=settings.dispatch_workers,
    )


def build_manager(settings: Optional[IncidentSettings] = None) -> IncidentManager:
    """Assemble a ready-to-use IncidentManager from settings."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    return IncidentManager(
        catalog=load_severity_catalog(settings.severity_file),
        registry=load_runbook_registry(settings.runbook_file),
        dispatcher=build_dispatcher(settings),
    )
