"""Orphan recovery for staging roots left behind by interrupted runs.

The service only classifies and reports; it never picks an action on its
own. The caller chooses commit, rollback or inspect explicitly.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from transform_staging import history
from transform_staging.commit import commit_plan_progress
from transform_staging.config import Config
from transform_staging.constants import CATEGORIES
from transform_staging.errors import CorruptMetadataError, StagingError
from transform_staging.metadata_store import advance_status
from transform_staging.rollback import RollbackResult, remove_staging_tree, rollback_staging
from transform_staging.staging_dir import (
    generate_file_manifest,
    list_staged_files,
    list_staging_roots,
    load_staging_context,
)
from transform_staging.staging_types import StagingContext, StagingStatus, parse_iso_timestamp


class OrphanClassification(str, Enum):
    COMMIT_ELIGIBLE = "commit-eligible"
    ROLLBACK_ONLY = "rollback-only"
    INSPECT_ONLY = "inspect-only"


RECOVERY_ACTIONS = ("commit", "rollback", "inspect")

COMMIT_ELIGIBLE_STATUSES = {StagingStatus.READY, StagingStatus.PHASE2_COMPLETE}


@dataclass
class OrphanedSession:
    root_dir: Path
    classification: OrphanClassification
    context: Optional[StagingContext] = None
    error: Optional[str] = None

    @property
    def version(self) -> str:
        return self.root_dir.name

    @property
    def status(self) -> Optional[str]:
        return self.context.metadata.status.value if self.context else None


def classify(status: StagingStatus) -> OrphanClassification:
    if status in COMMIT_ELIGIBLE_STATUSES:
        return OrphanClassification.COMMIT_ELIGIBLE
    return OrphanClassification.ROLLBACK_ONLY


def detect_orphans(config: Config) -> List[OrphanedSession]:
    """Classify every staging root present under the staging namespace."""
    orphans: List[OrphanedSession] = []
    for root_dir in list_staging_roots(config):
        try:
            context = load_staging_context(config, root_dir)
        except (FileNotFoundError, CorruptMetadataError) as e:
            orphans.append(OrphanedSession(
                root_dir=root_dir,
                classification=OrphanClassification.INSPECT_ONLY,
                error=str(e),
            ))
            continue
        orphans.append(OrphanedSession(
            root_dir=root_dir,
            classification=classify(context.metadata.status),
            context=context,
        ))
    return orphans


def find_orphan(config: Config, version: str) -> Optional[OrphanedSession]:
    for orphan in detect_orphans(config):
        if orphan.version == version:
            return orphan
    return None


def _age_seconds(start_time: str) -> float:
    started = parse_iso_timestamp(start_time)
    return (datetime.now(timezone.utc) - started).total_seconds()


def _commit_progress(context: StagingContext) -> Optional[Dict[str, List[str]]]:
    if context.metadata.commit_plan is None:
        return None
    committed, remaining = commit_plan_progress(context)
    return {"committed": committed, "remaining": remaining}


def inspect_staging(context: StagingContext) -> Dict[str, Any]:
    """Read-only summary of a staging session."""
    staged = list_staged_files(context)
    counts = {category: 0 for category in CATEGORIES}
    for f in staged:
        counts[f.category] += 1
    counts["total"] = len(staged)

    metadata = context.metadata
    return {
        "rootDir": str(context.root_dir),
        "sessionId": metadata.session_id,
        "status": metadata.status.value,
        "classification": classify(metadata.status).value,
        "targetVersion": metadata.target_version,
        "previousVersion": metadata.previous_version,
        "startTime": metadata.start_time,
        "ageSeconds": _age_seconds(metadata.start_time),
        "files": counts,
        "manifest": generate_file_manifest(context),
        "agentResults": {
            phase: (result.to_dict() if result else None)
            for phase, result in metadata.agent_results.items()
        },
        "baselineCapturedAt": (
            metadata.production_baseline.captured_at if metadata.production_baseline else None
        ),
        "commitProgress": _commit_progress(context),
    }


def discard_staging_root(config: Config, root_dir: Path, reason: str) -> RollbackResult:
    """
    Roll back a staging root whose descriptor is missing or corrupt.

    The history entry is keyed by the directory name since no session id
    can be trusted.
    """
    removed = remove_staging_tree(root_dir)
    session_id = f"orphan:{root_dir.name}"
    entry = history.finalize_entry(
        config.history_path,
        session_id=session_id,
        version=root_dir.name,
        status=history.ROLLED_BACK,
        rollback_reason=reason,
    )
    print(f"[recovery] Discarded {root_dir} ({reason})")
    return RollbackResult(
        target_version=root_dir.name,
        session_id=session_id,
        history_status=entry.status,
        reason=reason,
        removed=removed,
    )


def recover(
    config: Config,
    orphan: OrphanedSession,
    action: str,
    force: bool = False,
    reason: str = "Manual orphan recovery",
):
    """
    Apply an explicit recovery action to an orphaned session.

    Returns:
        CommitResult for commit, RollbackResult for rollback, and the
        inspection dict for inspect.

    Raises:
        ValueError: Unknown action.
        StagingError: Commit requested on a session that is not eligible, or
            any action other than rollback on an inspect-only session.
    """
    if action not in RECOVERY_ACTIONS:
        raise ValueError(f"Unknown recovery action: {action}. Expected one of {RECOVERY_ACTIONS}")

    if orphan.context is None:
        if action == "rollback":
            return discard_staging_root(config, orphan.root_dir, reason)
        raise StagingError(
            f"RECOVERY BLOCKED: {orphan.root_dir} has no usable metadata.\n"
            f"  Reason: {orphan.error}\n"
            f"  Fix: Inspect the directory by hand, then recover with 'rollback'."
        )

    context = orphan.context

    if action == "inspect":
        return inspect_staging(context)

    if action == "rollback":
        return rollback_staging(context, reason)

    if orphan.classification != OrphanClassification.COMMIT_ELIGIBLE:
        raise StagingError(
            f"RECOVERY BLOCKED: Cannot commit {orphan.version}.\n"
            f"  Reason: status is '{context.metadata.status.value}', "
            f"need 'ready' or 'phase2-complete'\n"
            f"  Fix: Recover with 'rollback' instead."
        )

    if context.metadata.status == StagingStatus.PHASE2_COMPLETE:
        advance_status(context, StagingStatus.READY)

    from transform_staging.orchestrator import commit_to_production

    return commit_to_production(context, force=force)
