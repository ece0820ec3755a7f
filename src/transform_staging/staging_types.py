"""Staging data model and the status state machine."""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from transform_staging.config import Config
from transform_staging.constants import CATEGORIES, METADATA_FILENAME, PHASE1, PHASE2


class StagingStatus(str, Enum):
    STAGING = "staging"
    PHASE1_COMPLETE = "phase1-complete"
    PHASE2_COMPLETE = "phase2-complete"
    READY = "ready"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


# Single authoritative transition table. Every status mutation goes through
# metadata_store.advance_status, which consults this and nothing else.
ALLOWED_TRANSITIONS: Dict[StagingStatus, frozenset] = {
    StagingStatus.STAGING: frozenset({StagingStatus.PHASE1_COMPLETE, StagingStatus.FAILED}),
    StagingStatus.PHASE1_COMPLETE: frozenset({StagingStatus.PHASE2_COMPLETE, StagingStatus.FAILED}),
    StagingStatus.PHASE2_COMPLETE: frozenset({StagingStatus.READY, StagingStatus.FAILED}),
    StagingStatus.READY: frozenset({StagingStatus.COMMITTING, StagingStatus.ROLLED_BACK}),
    StagingStatus.COMMITTING: frozenset({StagingStatus.COMMITTED, StagingStatus.FAILED}),
    StagingStatus.COMMITTED: frozenset(),
    StagingStatus.FAILED: frozenset(),
    StagingStatus.ROLLED_BACK: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    StagingStatus.COMMITTED,
    StagingStatus.FAILED,
    StagingStatus.ROLLED_BACK,
})

# Entering these statuses requires the named phase to have succeeded
REQUIRED_PHASE_RESULT = {
    StagingStatus.PHASE1_COMPLETE: PHASE1,
    StagingStatus.PHASE2_COMPLETE: PHASE2,
}


def can_transition(current: StagingStatus, new: StagingStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_ISO_TIMESTAMP = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$"
)


def parse_iso_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware datetime (UTC if no offset).

    Accepts any number of fractional digits and a trailing 'Z'.

    Raises:
        ValueError: If the text is not a timestamp or names an impossible
            date or time (e.g. month 13).
    """
    match = _ISO_TIMESTAMP.match(value)
    if not match:
        raise ValueError(f"Not an ISO timestamp: {value!r}")

    base, fraction, zone = match.groups()
    text = base
    if fraction:
        # fromisoformat before 3.11 only takes 3 or 6 digits
        text += "." + fraction[:6].ljust(6, "0")
    if zone:
        text += "+00:00" if zone == "Z" else zone

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class AgentResult:
    """Outcome of one external transformation phase."""
    success: bool
    files_written: List[str] = field(default_factory=list)
    error: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "filesWritten": list(self.files_written),
            "error": self.error,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentResult":
        return cls(
            success=data["success"],
            files_written=list(data["filesWritten"]),
            error=data.get("error"),
            duration=data["duration"],
        )


@dataclass(frozen=True)
class FileBaseline:
    """Recorded state of one production path. mtime is in nanoseconds."""
    exists: bool
    mtime: Optional[int] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"exists": self.exists, "mtime": self.mtime, "size": self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileBaseline":
        return cls(exists=data["exists"], mtime=data["mtime"], size=data["size"])


ABSENT = FileBaseline(exists=False)


@dataclass(frozen=True)
class ProductionBaseline:
    files: Dict[str, FileBaseline]
    captured_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": {path: entry.to_dict() for path, entry in sorted(self.files.items())},
            "capturedAt": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductionBaseline":
        return cls(
            files={path: FileBaseline.from_dict(entry) for path, entry in data["files"].items()},
            captured_at=data["capturedAt"],
        )


@dataclass(frozen=True)
class StagingMetadata:
    """Durable staging descriptor, persisted as staging.json in the staging root."""
    status: StagingStatus
    start_time: str
    target_version: str
    session_id: str
    previous_version: Optional[str] = None
    agent_results: Dict[str, Optional[AgentResult]] = field(
        default_factory=lambda: {PHASE1: None, PHASE2: None}
    )
    production_baseline: Optional[ProductionBaseline] = None
    # "category/relative" paths, persisted just before the first production rename
    commit_plan: Optional[List[str]] = None

    def with_status(self, status: StagingStatus) -> "StagingMetadata":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "startTime": self.start_time,
            "targetVersion": self.target_version,
            "sessionId": self.session_id,
            "previousVersion": self.previous_version,
            "agentResults": {
                phase: (result.to_dict() if result is not None else None)
                for phase, result in self.agent_results.items()
            },
            "productionBaseline": (
                self.production_baseline.to_dict() if self.production_baseline else None
            ),
            "commitPlan": list(self.commit_plan) if self.commit_plan is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StagingMetadata":
        """Build from an already schema-validated dict."""
        results = data["agentResults"]
        baseline = data["productionBaseline"]
        return cls(
            status=StagingStatus(data["status"]),
            start_time=data["startTime"],
            target_version=data["targetVersion"],
            session_id=data["sessionId"],
            previous_version=data["previousVersion"],
            agent_results={
                PHASE1: AgentResult.from_dict(results[PHASE1]) if results[PHASE1] else None,
                PHASE2: AgentResult.from_dict(results[PHASE2]) if results[PHASE2] else None,
            },
            production_baseline=ProductionBaseline.from_dict(baseline) if baseline else None,
            commit_plan=data.get("commitPlan"),
        )


@dataclass
class StagingContext:
    """Runtime handle for one staging session.

    Passed explicitly to every operation; never cached at module level.
    `metadata` mirrors the persisted descriptor and is replaced (not mutated)
    on every successful write.
    """
    config: Config
    root_dir: Path
    target_version: str
    metadata: StagingMetadata

    @property
    def metadata_path(self) -> Path:
        return self.root_dir / METADATA_FILENAME

    @property
    def category_dirs(self) -> Dict[str, Path]:
        return {category: self.root_dir / category for category in CATEGORIES}

    def category_dir(self, category: str) -> Path:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown file category: {category}")
        return self.root_dir / category

    def production_dir(self, category: str) -> Path:
        return self.config.production_dir(category)

    @property
    def status(self) -> StagingStatus:
        return self.metadata.status

    @property
    def session_id(self) -> str:
        return self.metadata.session_id


@dataclass(frozen=True)
class StagedFile:
    """A file under a staging category joined to its production destination."""
    category: str
    relative_path: str
    staging_path: Path
    production_path: Path

    def production_relative(self, project_root: Path) -> str:
        return self.production_path.relative_to(project_root).as_posix()
