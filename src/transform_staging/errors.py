"""Error taxonomy for staging, commit and recovery.

Every error carries enough detail (phase, path, underlying OS error) for an
operator to resolve the session by hand. Nothing here is retried.
"""

from typing import List, Optional


class StagingError(Exception):
    """Base class for all staging engine errors."""
    pass


class InvalidTransitionError(StagingError):
    """Raised when a status change is not allowed by the state machine."""
    
    def __init__(self, current: str, requested: str, detail: str = ""):
        self.current = current
        self.requested = requested
        message = f"Invalid staging transition: {current} -> {requested}"
        if detail:
            message += f"\n  Reason: {detail}"
        super().__init__(message)


class StagingExistsError(StagingError):
    """Raised when an unresolved staging session blocks a new one."""
    
    def __init__(self, roots: List[str]):
        self.roots = roots
        super().__init__(
            f"TRANSFORM BLOCKED: Unresolved staging session(s) present.\n"
            f"  Reason: at most one staging session may exist\n"
            f"  Staging: {', '.join(roots)}\n"
            f"  Fix: Run 'transform-staging status' and resolve with "
            f"'transform-staging recover <version> <commit|rollback|inspect>'."
        )


class PhaseFailure(StagingError):
    """Raised when an external transformation phase fails or throws."""
    
    def __init__(self, phase: str, error: Optional[str]):
        self.phase = phase
        self.error = error
        super().__init__(
            f"TRANSFORM FAILED: {phase} reported failure.\n"
            f"  Phase: {phase}\n"
            f"  Error: {error or 'Unknown error'}\n"
            f"  Staging was rolled back; production is unchanged."
        )


class FilesystemError(StagingError):
    """Raised for OS-level failures before any production file was written."""
    
    def __init__(self, summary: str, path: Optional[str] = None, cause: Optional[BaseException] = None):
        self.path = path
        self.cause = cause
        lines = [summary]
        if path:
            lines.append(f"  Path: {path}")
        if cause is not None:
            lines.append(f"  Detail: {cause}")
        super().__init__("\n".join(lines))


class ConflictError(StagingError):
    """Raised when production drifted from the baseline since staging began."""
    
    def __init__(self, conflicts: list):
        self.conflicts = conflicts
        lines = [
            "COMMIT BLOCKED: Production files changed since staging started.",
            "  Reason: conflict",
            f"  Offending files ({len(conflicts)}):",
        ]
        for conflict in conflicts:
            lines.append(f"    - {conflict.path} ({conflict.reason})")
        lines.append("  Fix: Review the changes, then commit with --force or roll back.")
        super().__init__("\n".join(lines))


class CorruptMetadataError(StagingError):
    """Raised when a staging descriptor or history file fails validation."""
    
    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(
            f"Corrupt staging metadata: {path}\n"
            f"  Detail: {detail}\n"
            f"  Fix: Inspect the directory and roll it back manually."
        )


class PartialCommitError(StagingError):
    """Raised when a rename fails after earlier renames already succeeded."""
    
    def __init__(self, committed: List[str], failed_path: str, cause: BaseException, remaining: List[str]):
        self.committed = committed
        self.failed_path = failed_path
        self.cause = cause
        self.remaining = remaining
        lines = [
            "COMMIT PARTIAL: Production now holds a mix of old and new files.",
            "  Reason: rename failed mid-sequence",
            f"  Failed: {failed_path}",
            f"  Detail: {cause}",
            f"  Committed ({len(committed)}):",
        ]
        for path in committed:
            lines.append(f"    - {path}")
        lines.append(f"  Not committed: {len(remaining)} file(s) left in staging")
        lines.append("  Fix: Resolve the cause, finish or revert the remaining files by hand.")
        super().__init__("\n".join(lines))


class CommitBookkeepingError(StagingError):
    """Raised when every file reached production but status or history could not be recorded."""
    
    def __init__(self, version: str, committed: List[str], cause: BaseException):
        self.version = version
        self.committed = committed
        self.cause = cause
        super().__init__(
            f"COMMIT COMPLETE, BOOKKEEPING FAILED: {len(committed)} file(s) are in production.\n"
            f"  Detail: {cause}\n"
            f"  Fix: Run 'transform-staging recover {version} rollback' to record the "
            f"commit and remove staging."
        )
