"""Shared fixtures: a temporary project with production directories."""

import pytest

from transform_staging.config import load_config
from transform_staging.constants import PHASE1, PHASE2
from transform_staging.metadata_store import advance_status, record_agent_result
from transform_staging.staging_types import AgentResult, StagingStatus


EXISTING_SCRIPT = "// Existing production script\nexport function run() { return 1; }\n"
EXISTING_COMMAND = "---\ndescription: Existing command\n---\n\n# Existing Command\n"


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Project root with .speck/scripts and .claude/{commands,agents,skills}."""
    for var in ("TRANSFORM_PROJECT_ROOT", "TRANSFORM_STAGING_DIR", "TRANSFORM_HISTORY_PATH"):
        monkeypatch.delenv(var, raising=False)

    (tmp_path / ".speck" / "scripts").mkdir(parents=True)
    (tmp_path / ".claude" / "commands").mkdir(parents=True)
    (tmp_path / ".claude" / "agents").mkdir(parents=True)
    (tmp_path / ".claude" / "skills").mkdir(parents=True)

    (tmp_path / ".speck" / "scripts" / "existing-script.ts").write_text(EXISTING_SCRIPT)
    (tmp_path / ".claude" / "commands" / "speck.existing-command.md").write_text(EXISTING_COMMAND)

    return load_config(tmp_path)


@pytest.fixture
def advance_to_ready():
    """Record successful results for both phases and walk the session to 'ready'."""

    def _advance(context, phase1_files=None, phase2_files=None):
        record_agent_result(context, PHASE1, AgentResult(
            success=True, files_written=list(phase1_files or []), duration=0.5,
        ))
        advance_status(context, StagingStatus.PHASE1_COMPLETE)
        record_agent_result(context, PHASE2, AgentResult(
            success=True, files_written=list(phase2_files or []), duration=0.5,
        ))
        advance_status(context, StagingStatus.PHASE2_COMPLETE)
        advance_status(context, StagingStatus.READY)
        return context

    return _advance


def snapshot_tree(root):
    """Map of relative path -> bytes for every file under root."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def production_snapshot(config):
    """Callable returning a byte-level snapshot of the production directories."""

    def _snapshot():
        return {
            category: snapshot_tree(path)
            for category, path in config.production_dirs.items()
        }

    return _snapshot
