"""Commit engine: move staged files into production.

Best-effort atomic: everything that can be checked is checked before the
first rename, then files are renamed one by one (each rename is atomic on
its own). A rename failure after earlier successes is NOT undone; the
committed subset is recorded as a `partial` history entry instead.
"""

import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from transform_staging import history
from transform_staging.conflicts import FileConflict, detect_file_conflicts
from transform_staging.errors import (
    CommitBookkeepingError,
    ConflictError,
    FilesystemError,
    InvalidTransitionError,
    PartialCommitError,
    StagingError,
)
from transform_staging.metadata_store import advance_status, record_commit_plan
from transform_staging.staging_dir import list_staged_files
from transform_staging.staging_types import StagedFile, StagingContext, StagingStatus


@dataclass
class CommitResult:
    """Outcome of a successful commit."""
    target_version: str
    session_id: str
    committed_files: List[str] = field(default_factory=list)
    overridden_conflicts: List[FileConflict] = field(default_factory=list)


def _nearest_existing_ancestor(path: Path) -> Path:
    current = path
    while not current.exists():
        current = current.parent
    return current


def _prevalidate(staged: List[StagedFile]) -> List[str]:
    """
    Check every source is readable and every destination is writable.

    Returns:
        List of problems (empty when the commit can proceed).
    """
    problems: List[str] = []
    for f in staged:
        if not f.staging_path.is_file() or not os.access(f.staging_path, os.R_OK):
            problems.append(f"source not readable: {f.staging_path}")
            continue

        dest = f.production_path
        if dest.is_dir():
            problems.append(f"destination is a directory: {dest}")
            continue

        parent = dest.parent
        if parent.exists():
            if not parent.is_dir():
                problems.append(f"destination parent is not a directory: {parent}")
            elif not os.access(parent, os.W_OK | os.X_OK):
                problems.append(f"destination directory not writable: {parent}")
        else:
            anchor = _nearest_existing_ancestor(parent)
            if not anchor.is_dir():
                problems.append(f"cannot create {parent}: {anchor} is not a directory")
            elif not os.access(anchor, os.W_OK | os.X_OK):
                problems.append(f"cannot create {parent}: {anchor} not writable")
    return problems


def commit_plan_progress(context: StagingContext) -> Tuple[List[str], List[str]]:
    """
    Split a recorded commit plan into committed and remaining files.

    A planned file counts as committed once its staging copy is gone and its
    production destination exists. Both lists hold project-relative
    production paths in plan order; both are empty when no plan was recorded.
    """
    root = context.config.project_root
    committed: List[str] = []
    remaining: List[str] = []
    for entry in context.metadata.commit_plan or []:
        category, relative = entry.split("/", 1)
        destination = context.production_dir(category) / relative
        rel = destination.relative_to(root).as_posix()
        source = context.category_dir(category) / relative
        if not os.path.lexists(source) and destination.exists():
            committed.append(rel)
        else:
            remaining.append(rel)
    return committed, remaining


def _mark_failed(context: StagingContext) -> None:
    try:
        advance_status(context, StagingStatus.FAILED)
    except OSError as e:
        print(f"[commit] WARNING: could not persist 'failed' status: {e}", file=sys.stderr)


def commit_staging(context: StagingContext, force: bool = False) -> CommitResult:
    """
    Commit a ready staging session to production.

    Args:
        context: Session in 'ready' status.
        force: Commit even if the conflict detector reports drift.

    Returns:
        CommitResult with project-relative paths of committed files.

    Raises:
        InvalidTransitionError: If the session is not 'ready'.
        ConflictError: If production drifted and force is False.
        FilesystemError: If pre-validation fails, or the first rename fails.
            Nothing has been moved in either case.
        PartialCommitError: If a rename fails after others succeeded. The
            remaining files stay in staging for manual inspection.
        CommitBookkeepingError: If every file was moved but the 'committed'
            status or the history entry could not be written.
    """
    if context.metadata.status != StagingStatus.READY:
        raise InvalidTransitionError(
            context.metadata.status.value,
            StagingStatus.COMMITTING.value,
            "commit requires status 'ready'",
        )

    conflicts = detect_file_conflicts(context)
    if conflicts and not force:
        raise ConflictError(conflicts)
    if conflicts:
        print(f"[commit] Overriding {len(conflicts)} conflict(s) for {context.target_version}")

    staged = list_staged_files(context)
    root = context.config.project_root

    problems = _prevalidate(staged)
    if problems:
        raise FilesystemError(
            "COMMIT BLOCKED: Pre-validation failed; nothing was moved.\n"
            "  Reason: " + "; ".join(problems),
            path=str(context.root_dir),
        )

    record_commit_plan(context, [f"{f.category}/{f.relative_path}" for f in staged])
    advance_status(context, StagingStatus.COMMITTING)

    committed: List[str] = []
    for index, f in enumerate(staged):
        rel = f.production_relative(root)
        try:
            f.production_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(f.staging_path, f.production_path)
        except OSError as e:
            _mark_failed(context)
            remaining = [s.production_relative(root) for s in staged[index:]]
            if not committed:
                raise FilesystemError(
                    "COMMIT FAILED: First rename failed; nothing was moved.",
                    path=rel,
                    cause=e,
                )
            history.finalize_entry(
                context.config.history_path,
                session_id=context.session_id,
                version=context.target_version,
                status=history.PARTIAL,
                error=f"{rel}: {e}",
                committed_files=committed,
            )
            raise PartialCommitError(committed, rel, e, remaining)
        committed.append(rel)
        print(f"[commit] {f.staging_path.relative_to(context.root_dir).as_posix()} -> {rel}")

    try:
        advance_status(context, StagingStatus.COMMITTED)
        history.finalize_entry(
            context.config.history_path,
            session_id=context.session_id,
            version=context.target_version,
            status=history.TRANSFORMED,
            committed_files=committed,
        )
    except (OSError, StagingError) as e:
        raise CommitBookkeepingError(context.target_version, committed, e)

    try:
        shutil.rmtree(context.root_dir)
    except OSError as e:
        raise FilesystemError(
            "Commit succeeded but the staging directory could not be removed.\n"
            "  Fix: Roll it back with 'transform-staging recover <version> rollback'.",
            path=str(context.root_dir),
            cause=e,
        )

    print(f"[commit] Committed {len(committed)} file(s) for {context.target_version}")
    return CommitResult(
        target_version=context.target_version,
        session_id=context.session_id,
        committed_files=committed,
        overridden_conflicts=conflicts,
    )
