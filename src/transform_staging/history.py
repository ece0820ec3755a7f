"""Append-only transformation history (.speck/transformation-history.json).

One entry per transformation attempt, keyed by the staging session id.
Entries are opened as `in-progress` when a session starts and finalized
exactly once; they are never removed and outlive the staging directory.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from transform_staging.constants import HISTORY_SCHEMA_VERSION
from transform_staging.errors import CorruptMetadataError
from transform_staging.metadata_store import (
    atomic_write_json,
    validate_against_schema,
    validate_timestamp,
)
from transform_staging.staging_types import utc_now_iso


IN_PROGRESS = "in-progress"
TRANSFORMED = "transformed"
FAILED = "failed"
PARTIAL = "partial"
ROLLED_BACK = "rolled-back"

TERMINAL_HISTORY_STATUSES = {TRANSFORMED, FAILED, PARTIAL, ROLLED_BACK}


@dataclass
class TransformationHistoryEntry:
    version: str
    status: str
    timestamp: str
    error: Optional[str] = None
    session_id: Optional[str] = None
    committed_files: Optional[List[str]] = None
    rollback_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HISTORY_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "status": self.status,
            "timestamp": self.timestamp,
            "error": self.error,
            "sessionId": self.session_id,
            "committedFiles": self.committed_files,
            "rollbackReason": self.rollback_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformationHistoryEntry":
        return cls(
            version=data["version"],
            status=data["status"],
            timestamp=data["timestamp"],
            error=data.get("error"),
            session_id=data.get("sessionId"),
            committed_files=data.get("committedFiles"),
            rollback_reason=data.get("rollbackReason"),
        )


@dataclass
class TransformationHistory:
    schema_version: str = HISTORY_SCHEMA_VERSION
    latest_version: str = ""
    entries: List[TransformationHistoryEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "latestVersion": self.latest_version,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def find(self, session_id: str) -> Optional[TransformationHistoryEntry]:
        for entry in self.entries:
            if entry.session_id == session_id:
                return entry
        return None


def read_history(history_path: Path) -> TransformationHistory:
    """
    Load the history log. A missing file is an empty history.

    Raises:
        CorruptMetadataError: If the file exists but is not valid history JSON.
    """
    if not history_path.exists():
        return TransformationHistory()

    try:
        data = json.loads(history_path.read_text())
    except json.JSONDecodeError as e:
        raise CorruptMetadataError(str(history_path), f"JSON parse error: {str(e)[:100]}")

    validate_against_schema(data, "transformation_history.schema.json", history_path)
    for index, entry in enumerate(data["entries"]):
        validate_timestamp(entry["timestamp"], f"entries[{index}].timestamp", history_path)
    return TransformationHistory(
        schema_version=data["schemaVersion"],
        latest_version=data["latestVersion"],
        entries=[TransformationHistoryEntry.from_dict(e) for e in data["entries"]],
    )


def write_history(history_path: Path, history: TransformationHistory) -> None:
    atomic_write_json(history_path, history.to_dict())


def get_entry(history_path: Path, session_id: str) -> Optional[TransformationHistoryEntry]:
    return read_history(history_path).find(session_id)


def open_entry(history_path: Path, version: str, session_id: str) -> TransformationHistoryEntry:
    """Append an in-progress entry for a new session (no-op if one exists)."""
    history = read_history(history_path)
    existing = history.find(session_id)
    if existing is not None:
        return existing

    entry = TransformationHistoryEntry(
        version=version,
        status=IN_PROGRESS,
        timestamp=utc_now_iso(),
        session_id=session_id,
    )
    history.entries.append(entry)
    write_history(history_path, history)
    return entry


def finalize_entry(
    history_path: Path,
    session_id: str,
    version: str,
    status: str,
    error: Optional[str] = None,
    committed_files: Optional[List[str]] = None,
    rollback_reason: Optional[str] = None,
) -> TransformationHistoryEntry:
    """
    Give a session its terminal history entry.

    Idempotent: an entry that is already terminal is returned unchanged, and
    a missing entry (e.g. a session created without one) is appended.
    """
    if status not in TERMINAL_HISTORY_STATUSES:
        raise ValueError(f"Not a terminal history status: {status}")

    history = read_history(history_path)
    entry = history.find(session_id)

    if entry is not None and entry.is_terminal:
        return entry

    if entry is None:
        entry = TransformationHistoryEntry(
            version=version,
            status=status,
            timestamp=utc_now_iso(),
            session_id=session_id,
        )
        history.entries.append(entry)

    entry.status = status
    entry.timestamp = utc_now_iso()
    entry.error = error
    entry.committed_files = list(committed_files) if committed_files is not None else None
    entry.rollback_reason = rollback_reason

    if status == TRANSFORMED:
        history.latest_version = version

    write_history(history_path, history)
    print(f"[history] {version}: {status}")
    return entry


def latest_transformed_version(history_path: Path) -> Optional[str]:
    """Most recent successfully transformed version, or None."""
    history = read_history(history_path)
    return history.latest_version or None
