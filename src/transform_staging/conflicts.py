"""Pre-commit conflict detection against the production baseline."""

import sys
from dataclasses import dataclass
from typing import List, Optional

from transform_staging.baseline import stat_production_file
from transform_staging.staging_dir import list_staged_files
from transform_staging.staging_types import FileBaseline, StagingContext


MODIFIED = "modified"
DELETED = "deleted"
CREATED = "created"


@dataclass(frozen=True)
class FileConflict:
    """A production path whose state differs from what staging recorded."""
    path: str
    reason: str
    baseline: FileBaseline
    current: FileBaseline

    @property
    def baseline_mtime(self) -> Optional[int]:
        return self.baseline.mtime

    @property
    def current_mtime(self) -> Optional[int]:
        return self.current.mtime


def _reason(recorded: FileBaseline, current: FileBaseline) -> str:
    if recorded.exists and not current.exists:
        return DELETED
    if not recorded.exists and current.exists:
        return CREATED
    return MODIFIED


def detect_file_conflicts(context: StagingContext) -> List[FileConflict]:
    """
    Re-stat every baseline entry and report the ones that changed.

    A staged destination that was not in the baseline but exists now is
    also reported (`created`). Runs once, right before commit; it is not
    repeated per file during the commit itself.
    """
    baseline = context.metadata.production_baseline
    if baseline is None:
        print(
            f"[conflicts] WARNING: no baseline captured for {context.target_version}; "
            f"skipping conflict detection",
            file=sys.stderr,
        )
        return []

    root = context.config.project_root
    conflicts: List[FileConflict] = []

    for rel, recorded in sorted(baseline.files.items()):
        current = stat_production_file(root / rel)
        if current != recorded:
            conflicts.append(FileConflict(
                path=rel,
                reason=_reason(recorded, current),
                baseline=recorded,
                current=current,
            ))

    for staged in list_staged_files(context):
        rel = staged.production_relative(root)
        if rel in baseline.files:
            continue
        current = stat_production_file(staged.production_path)
        if current.exists:
            conflicts.append(FileConflict(
                path=rel,
                reason=CREATED,
                baseline=FileBaseline(exists=False),
                current=current,
            ))

    return conflicts


def conflicting_paths(conflicts: List[FileConflict]) -> List[str]:
    return [c.path for c in conflicts]
