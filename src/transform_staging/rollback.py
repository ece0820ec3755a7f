"""Rollback engine: discard a staging tree without touching production."""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from transform_staging import history
from transform_staging.commit import commit_plan_progress
from transform_staging.metadata_store import advance_status
from transform_staging.staging_types import (
    TERMINAL_STATUSES,
    StagingContext,
    StagingStatus,
    can_transition,
)


@dataclass
class RollbackResult:
    target_version: str
    session_id: str
    history_status: str
    reason: str
    removed: bool


def _terminal_status_for(current: StagingStatus, commit_finished: bool) -> StagingStatus:
    # Only a fully prepared session can be cleanly rolled back; anything
    # earlier ends as failed. A commit that moved every planned file before
    # the process died is completed instead.
    if current == StagingStatus.READY:
        return StagingStatus.ROLLED_BACK
    if current == StagingStatus.COMMITTING and commit_finished:
        return StagingStatus.COMMITTED
    return StagingStatus.FAILED


def remove_staging_tree(root_dir: Path) -> bool:
    """Delete a staging root. Returns False if it was already gone."""
    if not root_dir.exists():
        return False
    try:
        shutil.rmtree(root_dir)
    except FileNotFoundError:
        pass
    return True


def rollback_staging(
    context: StagingContext,
    reason: str,
    error: Optional[str] = None,
) -> RollbackResult:
    """
    Delete the staging root and finalize the session's history entry.

    Idempotent: if the root is already gone this only makes sure a terminal
    history entry exists (a previous rollback may have crashed between
    deleting files and writing history).

    Files a commit already moved into production stay there. If the session
    recorded a commit plan, history reflects what actually happened:
    `transformed` when every planned file reached production, `partial` with
    the committed subset when only some did. Otherwise history status is
    `failed` when an error is supplied or the session ended in 'failed', and
    `rolled-back` when it did not.
    """
    current = context.metadata.status

    committed: List[str] = []
    remaining: List[str] = []
    planned = context.metadata.commit_plan is not None and context.root_dir.exists()
    if planned:
        committed, remaining = commit_plan_progress(context)

    if current not in TERMINAL_STATUSES:
        target = _terminal_status_for(current, planned and not remaining)
        if context.root_dir.exists():
            # Recorded before cleanup so a crash mid-delete still shows intent
            advance_status(context, target)
        elif can_transition(current, target):
            context.metadata = context.metadata.with_status(target)

    removed = remove_staging_tree(context.root_dir)

    committed_files = None
    if context.metadata.status == StagingStatus.COMMITTED:
        history_status = history.TRANSFORMED
        committed_files = committed if planned else None
    elif committed:
        history_status = history.PARTIAL
        committed_files = committed
        if error is None:
            error = f"Commit interrupted; not committed: {', '.join(remaining)}"
    elif error is not None or context.metadata.status == StagingStatus.FAILED:
        history_status = history.FAILED
    else:
        history_status = history.ROLLED_BACK

    entry = history.finalize_entry(
        context.config.history_path,
        session_id=context.session_id,
        version=context.target_version,
        status=history_status,
        error=error,
        committed_files=committed_files,
        rollback_reason=reason,
    )

    if removed:
        print(f"[rollback] Removed {context.root_dir} ({reason})")
    else:
        print(f"[rollback] {context.root_dir} already absent ({reason})")

    return RollbackResult(
        target_version=context.target_version,
        session_id=context.session_id,
        history_status=entry.status,
        reason=reason,
        removed=removed,
    )
