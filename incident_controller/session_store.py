"""
Session Store - Append-Only Snapshot Persistence

Stores incident session snapshots as JSON lines. Every persist appends a
new line; nothing is ever rewritten or deleted. load() returns the most
recent snapshot for an incident.

CRITICAL CONSTRAINTS:
- APPEND-ONLY: Snapshots are never edited or deleted
- FSYNC: Every write is flushed to disk before returning
- READ-ONLY QUERIES: load/history are pure reads
- MALFORMED LINES: Skipped with a warning, never fatal for reads
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("session_store")

SESSIONS_FILENAME = "incident_sessions.jsonl"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _recency_key(snapshot: Dict[str, Any]) -> Tuple[datetime, int]:
    created_at = snapshot.get("created_at")
    try:
        created = datetime.fromisoformat(created_at) if created_at else _EPOCH
    except (TypeError, ValueError):
        created = _EPOCH
    if created.utcoffset() is None:
        created = created.replace(tzinfo=timezone.utc)
    return created, len(snapshot.get("timeline") or [])


class JsonlSessionStore:
    """
    Append-only storage for session snapshots.

    CRITICAL: This store has NO methods for editing or deleting snapshots.
    """

    def __init__(self, sessions_dir: Path):
        self._sessions_file = Path(sessions_dir) / SESSIONS_FILENAME
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._sessions_file

    # -------------------------------------------------------------------------
    # WRITE Operations (Append-Only)
    # -------------------------------------------------------------------------

    def persist(self, snapshot: Dict[str, Any]) -> None:
        """
        Append a snapshot.

        Raises on I/O failure; the collaborator dispatcher logs it.
        """
        if not snapshot.get("incident_id"):
            raise ValueError("Snapshot has no incident_id")

        record = {
            "persisted_at": datetime.now(timezone.utc).isoformat(),
            "snapshot": snapshot,
        }
        line = json.dumps(record) + "\n"

        with self._lock:
            self._sessions_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._sessions_file, "a") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

        logger.debug(f"Persisted snapshot for {snapshot['incident_id']}")

    # -------------------------------------------------------------------------
    # READ Operations
    # -------------------------------------------------------------------------

    def _read_records(self) -> List[Dict[str, Any]]:
        records = []
        if not self._sessions_file.exists():
            return records

        with self._lock:
            with open(self._sessions_file) as f:
                lines = f.readlines()

        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
                if "snapshot" not in record:
                    raise KeyError("snapshot")
                records.append(record)
            except (json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Skipping malformed session record: {e}")
        return records

    def load(self, incident_id: str) -> Optional[Dict[str, Any]]:
        """
        Most recent snapshot for an incident, or None.

        Ordered by incident creation time (an id can be reused once its
        incident is resolved), then by timeline length, since a timeline
        only grows. Ties go to the later line.
        """
        latest = None
        latest_key = None
        for record in self._read_records():
            snapshot = record["snapshot"]
            if snapshot.get("incident_id") != incident_id:
                continue
            key = _recency_key(snapshot)
            if latest_key is None or key >= latest_key:
                latest, latest_key = snapshot, key
        return latest

    def history(self, incident_id: str) -> List[Dict[str, Any]]:
        """Every snapshot persisted for an incident, oldest first."""
        return [
            record["snapshot"]
            for record in self._read_records()
            if record["snapshot"].get("incident_id") == incident_id
        ]

    def incident_ids(self) -> List[str]:
        """Ids with at least one snapshot, in first-seen order."""
        seen: Dict[str, None] = {}
        for record in self._read_records():
            incident_id = record["snapshot"].get("incident_id")
            if incident_id:
                seen.setdefault(incident_id, None)
        return list(seen)

    def get_storage_stats(self) -> Dict[str, Any]:
        stats = {
            "file_path": str(self._sessions_file),
            "file_exists": self._sessions_file.exists(),
            "file_size_bytes": 0,
            "total_snapshots": 0,
        }
        if self._sessions_file.exists():
            stats["file_size_bytes"] = self._sessions_file.stat().st_size
            stats["total_snapshots"] = len(self._read_records())
        return stats
