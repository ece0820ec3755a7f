"""Read-only observation surface: orphan, inspection and history summaries."""

from typing import Any, Dict, List, Optional

from transform_staging.history import TransformationHistory
from transform_staging.recovery import OrphanedSession


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def print_manifest(manifest: List[Dict[str, str]]) -> None:
    if not manifest:
        print("  (no staged files)")
        return
    for item in manifest:
        print(f"  {item['category']}/{item['relative_path']} -> {item['destination']}")


def print_inspection(summary: Dict[str, Any]) -> None:
    """Print a staging inspection summary."""
    print("=" * 60)
    print(f"STAGING: {summary['targetVersion']}")
    print("=" * 60)
    print(f"  Status:      {summary['status']} [{summary['classification']}]")
    print(f"  Previous:    {summary['previousVersion'] or '-'}")
    print(f"  Started:     {summary['startTime'][:19]} ({format_duration(summary['ageSeconds'])} ago)")
    print(f"  Session:     {summary['sessionId']}")
    print(f"  Root:        {summary['rootDir']}")
    print()

    files = summary["files"]
    print("FILES")
    print("-" * 40)
    print(
        f"  scripts: {files['scripts']}  commands: {files['commands']}  "
        f"agents: {files['agents']}  skills: {files['skills']}  total: {files['total']}"
    )
    print()

    print("PHASES")
    print("-" * 40)
    for phase, result in summary["agentResults"].items():
        if result is None:
            print(f"  {phase}: not run")
            continue
        icon = "✓" if result["success"] else "✗"
        line = f"  {icon} {phase}: {len(result['filesWritten'])} file(s) in {format_duration(result['duration'])}"
        if result.get("error"):
            line += f" - {result['error'][:60]}"
        print(line)
    print()

    progress = summary.get("commitProgress")
    if progress is not None:
        print("COMMIT")
        print("-" * 40)
        for path in progress["committed"]:
            print(f"  ✓ {path}")
        for path in progress["remaining"]:
            print(f"  ✗ {path} (still in staging)")
        print()

    print("MANIFEST")
    print("-" * 40)
    print_manifest(summary["manifest"])
    print()


def print_orphans(orphans: List[OrphanedSession]) -> None:
    """Print the recovery prompt for leftover staging roots."""
    if not orphans:
        print("No orphaned staging directories.")
        return

    print(f"Found {len(orphans)} orphaned staging director{'y' if len(orphans) == 1 else 'ies'}:")
    print()
    for orphan in orphans:
        print(f"  {orphan.version}  [{orphan.classification.value}]")
        print(f"    Path:    {orphan.root_dir}")
        if orphan.context is not None:
            print(f"    Status:  {orphan.status}")
            print(f"    Started: {orphan.context.metadata.start_time[:19]}")
        else:
            print(f"    Error:   {(orphan.error or '').splitlines()[0]}")
    print()
    print("Resolve with: transform-staging recover <version> <commit|rollback|inspect>")


def print_history(history: TransformationHistory, limit: Optional[int] = 10) -> None:
    """Print the most recent history entries, newest first."""
    print("TRANSFORMATION HISTORY")
    print("-" * 40)
    print(f"  Latest transformed: {history.latest_version or '-'}")
    print()

    if not history.entries:
        print("  No transformations recorded.")
        return

    entries = list(reversed(history.entries))
    shown = entries[:limit] if limit else entries
    icons = {
        "transformed": "✓",
        "failed": "✗",
        "partial": "!",
        "rolled-back": "↺",
        "in-progress": "◐",
    }
    for entry in shown:
        print(f"  {icons.get(entry.status, '?')} {entry.timestamp[:16]}  {entry.version:<14} {entry.status}")
        if entry.committed_files:
            print(f"      committed: {len(entry.committed_files)} file(s)")
        if entry.rollback_reason:
            print(f"      reason:    {entry.rollback_reason[:60]}")
        if entry.error:
            print(f"      error:     {entry.error.splitlines()[0][:60]}")

    if len(entries) > len(shown):
        print(f"  ... and {len(entries) - len(shown)} more")
