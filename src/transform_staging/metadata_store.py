"""Metadata store for the staging descriptor (staging.json).

The descriptor is untrusted input: every read is validated against
schemas/staging_metadata.schema.json before any field is used, and every
write goes through a temp file plus rename so a crash never leaves a
half-written descriptor visible.
"""

import json
import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Union

import jsonschema

from transform_staging.constants import METADATA_FILENAME, PHASE_CATEGORIES, debug_enabled
from transform_staging.errors import CorruptMetadataError, InvalidTransitionError, StagingError
from transform_staging.staging_types import (
    ALLOWED_TRANSITIONS,
    REQUIRED_PHASE_RESULT,
    TERMINAL_STATUSES,
    AgentResult,
    StagingContext,
    StagingMetadata,
    StagingStatus,
    parse_iso_timestamp,
)


SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"


def load_schema(schema_filename: str) -> Dict[str, Any]:
    """Load a JSON schema shipped with the package."""
    with open(SCHEMA_DIR / schema_filename, "r") as f:
        return json.load(f)


def validate_against_schema(data: Any, schema_filename: str, source: Union[str, Path]) -> None:
    """
    Validate a parsed JSON document.

    Raises:
        CorruptMetadataError: With the failing JSON path in the detail.
    """
    schema = load_schema(schema_filename)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        detail = f"Validation failed: {e.message}"
        if e.absolute_path:
            detail += f" at path: {list(e.absolute_path)}"
        raise CorruptMetadataError(str(source), detail)


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON to a sibling temp file, fsync it, then rename over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def validate_timestamp(value: str, field_name: str, source: Union[str, Path]) -> None:
    """Reject timestamps the schema pattern lets through but no calendar has."""
    try:
        parse_iso_timestamp(value)
    except ValueError as e:
        raise CorruptMetadataError(str(source), f"Invalid timestamp in {field_name}: {e}")


def _validate_metadata_dict(data: Any, root_dir: Path, source: Union[str, Path]) -> None:
    validate_against_schema(data, "staging_metadata.schema.json", source)
    validate_timestamp(data["startTime"], "startTime", source)
    if data["productionBaseline"] is not None:
        validate_timestamp(data["productionBaseline"]["capturedAt"], "productionBaseline.capturedAt", source)
    if data["targetVersion"] != root_dir.name:
        raise CorruptMetadataError(
            str(source),
            f"targetVersion '{data['targetVersion']}' does not match "
            f"staging directory name '{root_dir.name}'",
        )


def write_metadata(context: StagingContext, metadata: StagingMetadata) -> None:
    """
    Validate and atomically persist metadata for a staging context.

    Raises:
        CorruptMetadataError: If the metadata would not pass read-side validation.
    """
    data = metadata.to_dict()
    _validate_metadata_dict(data, context.root_dir, context.metadata_path)
    atomic_write_json(context.metadata_path, data)
    if debug_enabled():
        print(f"[DEBUG] wrote {context.metadata_path} status={metadata.status.value}")


def read_metadata(path: Union[str, Path]) -> StagingMetadata:
    """
    Read and validate a staging descriptor.

    Args:
        path: The staging root directory or the staging.json file itself.

    Raises:
        FileNotFoundError: If the descriptor does not exist.
        CorruptMetadataError: If it is not JSON or fails validation.
    """
    path = Path(path)
    if path.is_dir():
        path = path / METADATA_FILENAME

    if not path.exists():
        raise FileNotFoundError(f"Staging metadata not found: {path}")

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise CorruptMetadataError(str(path), f"JSON parse error: {str(e)[:100]}")
    except UnicodeDecodeError as e:
        raise CorruptMetadataError(str(path), f"Not a text file: {e}")

    _validate_metadata_dict(data, path.parent, path)
    return StagingMetadata.from_dict(data)


def advance_status(context: StagingContext, new_status: StagingStatus) -> StagingContext:
    """
    Move a session to new_status if the state machine allows it.

    This is the only place statuses change. The check runs before anything is
    written, so a rejected call leaves the persisted descriptor untouched.

    Raises:
        InvalidTransitionError: If new_status is not a legal successor, the
            current status is terminal, or a phase-complete status lacks a
            successful result for that phase.
    """
    new_status = StagingStatus(new_status)
    current = context.metadata.status

    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            current.value, new_status.value, f"'{current.value}' is terminal"
        )

    if new_status not in ALLOWED_TRANSITIONS[current]:
        allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[current])
        raise InvalidTransitionError(
            current.value, new_status.value, f"allowed from '{current.value}': {allowed}"
        )

    phase = REQUIRED_PHASE_RESULT.get(new_status)
    if phase is not None:
        result = context.metadata.agent_results.get(phase)
        if result is None:
            raise InvalidTransitionError(
                current.value, new_status.value, f"no {phase} result recorded"
            )
        if not result.success:
            raise InvalidTransitionError(
                current.value, new_status.value,
                f"{phase} reported failure: {result.error or 'Unknown error'}",
            )

    updated = context.metadata.with_status(new_status)
    write_metadata(context, updated)
    context.metadata = updated
    print(f"[staging] {context.target_version}: {current.value} -> {new_status.value}")
    return context


def record_agent_result(context: StagingContext, phase: str, result: AgentResult) -> StagingContext:
    """
    Store a phase result in the descriptor. Results are write-once.

    Raises:
        ValueError: If phase is unknown.
        StagingError: If the phase already has a result or the session is terminal.
    """
    if phase not in PHASE_CATEGORIES:
        raise ValueError(f"Unknown phase: {phase}. Expected one of {sorted(PHASE_CATEGORIES)}")

    if context.metadata.status in TERMINAL_STATUSES:
        raise StagingError(
            f"Cannot record {phase} result: session {context.target_version} "
            f"is already '{context.metadata.status.value}'"
        )

    if context.metadata.agent_results.get(phase) is not None:
        raise StagingError(
            f"Cannot record {phase} result: already recorded for session {context.target_version}"
        )

    results = dict(context.metadata.agent_results)
    results[phase] = result
    updated = replace(context.metadata, agent_results=results)
    write_metadata(context, updated)
    context.metadata = updated
    return context


def record_commit_plan(context: StagingContext, plan: List[str]) -> StagingContext:
    """
    Persist the "category/relative" paths a commit is about to move.

    Written while the session is still 'ready' so an interrupted commit can
    later be told apart into the files that reached production and the ones
    that did not.

    Raises:
        StagingError: If the session is not 'ready'.
    """
    if context.metadata.status != StagingStatus.READY:
        raise StagingError(
            f"Cannot record commit plan: session {context.target_version} "
            f"is '{context.metadata.status.value}', not 'ready'"
        )

    updated = replace(context.metadata, commit_plan=list(plan))
    write_metadata(context, updated)
    context.metadata = updated
    return context
