"""Transformation orchestrator.

Drives the two external phases against a staging tree:

    initialize_staging -> phase1 -> record -> phase2 -> record -> ready
        -> manifest -> conflict check -> commit

Any failure before the first production write routes to rollback. A
partial commit is surfaced as-is and never rolled back.

The phases themselves are opaque: they are told where to write and report
back an AgentResult. Callers that run the phases out-of-process can use the
stepwise functions; run_transformation composes them.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from transform_staging import history
from transform_staging.baseline import capture_production_baseline
from transform_staging.commit import CommitResult, commit_staging
from transform_staging.config import Config
from transform_staging.constants import PHASE1, PHASE2, PHASE_CATEGORIES
from transform_staging.errors import FilesystemError, PhaseFailure, StagingExistsError
from transform_staging.metadata_store import advance_status, record_agent_result
from transform_staging.recovery import detect_orphans
from transform_staging.rollback import RollbackResult, rollback_staging
from transform_staging.staging_dir import create_staging, generate_file_manifest, validate_version
from transform_staging.staging_types import AgentResult, StagingContext, StagingStatus


class TransformPhase(ABC):
    """An external transformation phase.

    Implementations must write only under the directories they are given.
    """

    name: str = "phase"

    @abstractmethod
    def run(self, output_dirs: Dict[str, Path], version: str) -> AgentResult:
        """Produce files into output_dirs and report what was written."""
        pass


@dataclass
class TransformationResult:
    version: str
    session_id: str
    committed_files: List[str] = field(default_factory=list)
    phase_results: Dict[str, AgentResult] = field(default_factory=dict)


def check_for_orphans(config: Config) -> None:
    """Refuse to start while any staging root is unresolved."""
    orphans = detect_orphans(config)
    if orphans:
        raise StagingExistsError(
            [f"{o.root_dir} [{o.classification.value}]" for o in orphans]
        )


def initialize_staging(
    config: Config,
    version: str,
    manifest_paths: Optional[Iterable[str]] = None,
) -> StagingContext:
    """
    Create a staging session, open its history entry and capture the baseline.

    Raises:
        StagingExistsError: If an unresolved staging session exists.
        FilesystemError: If staging cannot be created or the baseline cannot
            be captured (the new session is rolled back first).
    """
    validate_version(version)
    check_for_orphans(config)

    previous_version = history.latest_transformed_version(config.history_path)
    context = create_staging(config, version, previous_version)

    try:
        history.open_entry(config.history_path, version, context.session_id)
        capture_production_baseline(context, manifest_paths)
    except OSError as e:
        rollback_staging(context, "Staging initialization failed", error=str(e))
        raise FilesystemError(
            "STAGING BLOCKED: Could not initialize staging session.",
            path=str(context.root_dir),
            cause=e,
        )

    print(f"[transform] Staging ready for {version} (previous: {previous_version or 'none'})")
    return context


def get_output_dirs(context: StagingContext, phase: str) -> Dict[str, Path]:
    """Category directories a phase is allowed to write into."""
    if phase not in PHASE_CATEGORIES:
        raise ValueError(f"Unknown phase: {phase}")
    return {category: context.category_dir(category) for category in PHASE_CATEGORIES[phase]}


def invoke_phase(context: StagingContext, phase: str, runner: TransformPhase) -> AgentResult:
    """Run an external phase. Exceptions become a failed AgentResult."""
    output_dirs = get_output_dirs(context, phase)
    print(f"[transform] Running {phase} ({runner.name}) -> {', '.join(str(d) for d in output_dirs.values())}")
    start = time.monotonic()
    try:
        result = runner.run(output_dirs, context.target_version)
    except Exception as e:
        return AgentResult(
            success=False,
            files_written=[],
            error=f"{type(e).__name__}: {e}",
            duration=time.monotonic() - start,
        )
    return result


def record_phase_result(context: StagingContext, phase: str, result: AgentResult) -> StagingContext:
    """
    Record a phase's outcome and advance the state machine.

    phase2 success continues straight to 'ready'. A failed result marks the
    session failed, rolls it back and raises.

    Raises:
        PhaseFailure: If the result reports failure.
    """
    record_agent_result(context, phase, result)

    if not result.success:
        advance_status(context, StagingStatus.FAILED)
        rollback_staging(context, f"{phase} failed", error=result.error or "Unknown error")
        raise PhaseFailure(phase, result.error)

    if phase == PHASE1:
        advance_status(context, StagingStatus.PHASE1_COMPLETE)
    else:
        advance_status(context, StagingStatus.PHASE2_COMPLETE)
        advance_status(context, StagingStatus.READY)
    return context


def emit_manifest(context: StagingContext) -> List[Dict[str, str]]:
    """Print and return the source -> destination pairs about to be committed."""
    manifest = generate_file_manifest(context)
    print(f"[transform] Commit manifest for {context.target_version} ({len(manifest)} file(s)):")
    for item in manifest:
        print(f"  {item['category']}/{item['relative_path']} -> {item['destination']}")
    return manifest


def commit_to_production(context: StagingContext, force: bool = False) -> CommitResult:
    """
    Emit the manifest and commit.

    ConflictError leaves the session 'ready' for an operator decision.
    FilesystemError (nothing moved) routes to rollback, then re-raises.
    PartialCommitError and CommitBookkeepingError propagate without rollback.
    """
    emit_manifest(context)
    try:
        return commit_staging(context, force=force)
    except FilesystemError as e:
        if context.metadata.status != StagingStatus.COMMITTED:
            rollback_staging(context, "Commit pre-validation failed", error=str(e))
        raise


def rollback_changes(context: StagingContext, reason: str) -> RollbackResult:
    return rollback_staging(context, reason)


def run_transformation(
    config: Config,
    version: str,
    phase1: TransformPhase,
    phase2: TransformPhase,
    force: bool = False,
    manifest_paths: Optional[Iterable[str]] = None,
) -> TransformationResult:
    """
    Run the full staged transformation for one version.

    Raises:
        StagingExistsError, PhaseFailure, ConflictError, FilesystemError,
        PartialCommitError, CommitBookkeepingError: see the individual steps.
    """
    context = initialize_staging(config, version, manifest_paths)
    results: Dict[str, AgentResult] = {}

    for phase, runner in ((PHASE1, phase1), (PHASE2, phase2)):
        result = invoke_phase(context, phase, runner)
        results[phase] = result
        try:
            record_phase_result(context, phase, result)
        except OSError as e:
            rollback_staging(context, f"Could not record {phase} result", error=str(e))
            raise FilesystemError(
                f"TRANSFORM FAILED: Could not record {phase} result.",
                path=str(context.metadata_path),
                cause=e,
            )

    commit = commit_to_production(context, force=force)
    return TransformationResult(
        version=version,
        session_id=context.session_id,
        committed_files=commit.committed_files,
        phase_results=results,
    )
