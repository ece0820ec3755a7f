"""Tests for orphan detection and recovery."""

import json
import os

import pytest

from transform_staging import history
from transform_staging.baseline import capture_production_baseline
from transform_staging.commit import commit_staging
from transform_staging.constants import PHASE1, PHASE2
from transform_staging.errors import ConflictError, StagingError
from transform_staging.metadata_store import advance_status, record_agent_result, record_commit_plan
from transform_staging.recovery import (
    OrphanClassification,
    classify,
    detect_orphans,
    find_orphan,
    inspect_staging,
    recover,
)
from transform_staging.staging_dir import create_staging
from transform_staging.staging_types import AgentResult, StagingStatus


OK = AgentResult(success=True, files_written=[], duration=1.0)


class Killed(BaseException):
    """Stands in for the process dying between two renames."""


def interrupted_session(config, version="v2.1.0"):
    """A session left behind by a process that died mid-run."""
    context = create_staging(config, version)
    history.open_entry(config.history_path, version, context.session_id)
    capture_production_baseline(context)
    (context.root_dir / "scripts" / "new.ts").write_text("new script")
    (context.root_dir / "commands" / "speck.new.md").write_text("new command")
    return context


def die_during_commit(context, monkeypatch, at):
    """Start a commit and stop it dead when it reaches the destination ending in `at`."""
    real_replace = os.replace

    def replace(src, dst):
        if str(dst).endswith(at):
            raise Killed()
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", replace)
    with pytest.raises(Killed):
        commit_staging(context)
    monkeypatch.undo()


class TestClassify:
    """Status -> classification."""

    @pytest.mark.parametrize("status,expected", [
        (StagingStatus.READY, OrphanClassification.COMMIT_ELIGIBLE),
        (StagingStatus.PHASE2_COMPLETE, OrphanClassification.COMMIT_ELIGIBLE),
        (StagingStatus.STAGING, OrphanClassification.ROLLBACK_ONLY),
        (StagingStatus.PHASE1_COMPLETE, OrphanClassification.ROLLBACK_ONLY),
        (StagingStatus.COMMITTING, OrphanClassification.ROLLBACK_ONLY),
        (StagingStatus.FAILED, OrphanClassification.ROLLBACK_ONLY),
        (StagingStatus.COMMITTED, OrphanClassification.ROLLBACK_ONLY),
        (StagingStatus.ROLLED_BACK, OrphanClassification.ROLLBACK_ONLY),
    ])
    def test_classification(self, status, expected):
        assert classify(status) == expected


class TestDetectOrphans:
    """Scanning the staging namespace."""

    def test_none(self, config):
        assert detect_orphans(config) == []

    def test_ready_session_is_commit_eligible(self, config, advance_to_ready):
        advance_to_ready(interrupted_session(config))

        orphans = detect_orphans(config)

        assert len(orphans) == 1
        assert orphans[0].version == "v2.1.0"
        assert orphans[0].status == "ready"
        assert orphans[0].classification == OrphanClassification.COMMIT_ELIGIBLE

    def test_deterministic(self, config):
        interrupted_session(config)
        assert detect_orphans(config) == detect_orphans(config)

    def test_corrupt_metadata_is_inspect_only(self, config):
        context = interrupted_session(config)
        context.metadata_path.write_text("{\"status\": ")

        orphans = detect_orphans(config)

        assert orphans[0].classification == OrphanClassification.INSPECT_ONLY
        assert orphans[0].context is None
        assert "JSON parse error" in orphans[0].error

    def test_impossible_start_time_is_inspect_only(self, config):
        """Detection never crashes on a descriptor whose age cannot be computed."""
        context = interrupted_session(config)
        data = json.loads(context.metadata_path.read_text())
        data["startTime"] = "2025-13-45T25:61:61Z"
        context.metadata_path.write_text(json.dumps(data))

        orphans = detect_orphans(config)

        assert orphans[0].classification == OrphanClassification.INSPECT_ONLY
        assert "Invalid timestamp" in orphans[0].error

    def test_missing_metadata_is_inspect_only(self, config):
        context = interrupted_session(config)
        context.metadata_path.unlink()

        assert detect_orphans(config)[0].classification == OrphanClassification.INSPECT_ONLY

    def test_find_orphan(self, config):
        interrupted_session(config)
        assert find_orphan(config, "v2.1.0").version == "v2.1.0"
        assert find_orphan(config, "v9.9.9") is None


class TestInspect:
    """Read-only summaries."""

    def test_summary(self, config):
        context = interrupted_session(config)
        record_agent_result(context, PHASE1, AgentResult(success=True, files_written=["scripts/new.ts"], duration=3.0))

        summary = inspect_staging(context)

        assert summary["status"] == "staging"
        assert summary["classification"] == "rollback-only"
        assert summary["files"] == {"scripts": 1, "commands": 1, "agents": 0, "skills": 0, "total": 2}
        assert summary["agentResults"]["phase1"]["filesWritten"] == ["scripts/new.ts"]
        assert summary["agentResults"]["phase2"] is None
        assert summary["ageSeconds"] >= 0
        assert summary["baselineCapturedAt"] is not None

    def test_inspect_changes_nothing(self, config):
        context = interrupted_session(config)
        before = context.metadata_path.read_bytes()

        recover(config, find_orphan(config, "v2.1.0"), "inspect")

        assert context.metadata_path.read_bytes() == before
        assert context.root_dir.exists()


class TestRecover:
    """Explicit recovery actions."""

    def test_commit_ready_orphan(self, config, advance_to_ready):
        """An interrupted run that reached 'ready' can be committed later."""
        advance_to_ready(interrupted_session(config))

        result = recover(config, find_orphan(config, "v2.1.0"), "commit")

        root = config.project_root
        assert result.committed_files == [".speck/scripts/new.ts", ".claude/commands/speck.new.md"]
        assert (root / ".speck/scripts/new.ts").read_text() == "new script"
        assert detect_orphans(config) == []
        assert history.latest_transformed_version(config.history_path) == "v2.1.0"

    def test_commit_phase2_complete_orphan(self, config):
        context = interrupted_session(config)
        record_agent_result(context, PHASE1, OK)
        advance_status(context, StagingStatus.PHASE1_COMPLETE)
        record_agent_result(context, PHASE2, OK)
        advance_status(context, StagingStatus.PHASE2_COMPLETE)

        recover(config, find_orphan(config, "v2.1.0"), "commit")

        assert (config.project_root / ".claude/commands/speck.new.md").exists()
        assert detect_orphans(config) == []

    def test_commit_rejected_for_early_session(self, config, production_snapshot):
        interrupted_session(config)
        before = production_snapshot()

        with pytest.raises(StagingError) as exc_info:
            recover(config, find_orphan(config, "v2.1.0"), "commit")

        assert "Cannot commit" in str(exc_info.value)
        assert production_snapshot() == before

    def test_commit_orphan_with_conflict(self, config, advance_to_ready):
        advance_to_ready(interrupted_session(config))
        (config.project_root / ".speck/scripts/existing-script.ts").unlink()

        with pytest.raises(ConflictError):
            recover(config, find_orphan(config, "v2.1.0"), "commit")

        assert find_orphan(config, "v2.1.0").status == "ready"

    def test_rollback_orphan(self, config, production_snapshot):
        context = interrupted_session(config)
        before = production_snapshot()

        result = recover(config, find_orphan(config, "v2.1.0"), "rollback", reason="stale")

        assert production_snapshot() == before
        assert not context.root_dir.exists()
        assert result.history_status == history.FAILED
        assert history.get_entry(config.history_path, context.session_id).rollback_reason == "stale"

    def test_rollback_corrupt_orphan(self, config):
        context = interrupted_session(config)
        context.metadata_path.write_text(json.dumps({"status": "ready"}))

        result = recover(config, find_orphan(config, "v2.1.0"), "rollback")

        assert not context.root_dir.exists()
        assert result.session_id == "orphan:v2.1.0"
        assert history.get_entry(config.history_path, "orphan:v2.1.0").status == history.ROLLED_BACK

    def test_corrupt_orphan_cannot_commit(self, config):
        context = interrupted_session(config)
        context.metadata_path.write_text("garbage")

        with pytest.raises(StagingError):
            recover(config, find_orphan(config, "v2.1.0"), "commit")

        assert context.root_dir.exists()

    def test_unknown_action(self, config):
        interrupted_session(config)
        with pytest.raises(ValueError):
            recover(config, find_orphan(config, "v2.1.0"), "merge")


class TestInterruptedCommit:
    """A process that died while moving files into production."""

    def test_rollback_records_committed_subset(self, config, advance_to_ready, monkeypatch):
        context = advance_to_ready(interrupted_session(config))
        die_during_commit(context, monkeypatch, at=".claude/commands/speck.new.md")

        orphan = find_orphan(config, "v2.1.0")
        assert orphan.status == "committing"
        result = recover(config, orphan, "rollback")

        root = config.project_root
        assert result.history_status == history.PARTIAL
        assert (root / ".speck/scripts/new.ts").read_text() == "new script"
        assert not (root / ".claude/commands/speck.new.md").exists()
        assert not context.root_dir.exists()
        entry = history.get_entry(config.history_path, context.session_id)
        assert entry.committed_files == [".speck/scripts/new.ts"]
        assert ".claude/commands/speck.new.md" in entry.error
        assert history.latest_transformed_version(config.history_path) is None

    def test_nothing_moved_records_failed(self, config, advance_to_ready, production_snapshot, monkeypatch):
        context = advance_to_ready(interrupted_session(config))
        before = production_snapshot()
        die_during_commit(context, monkeypatch, at=".speck/scripts/new.ts")

        result = recover(config, find_orphan(config, "v2.1.0"), "rollback")

        assert result.history_status == history.FAILED
        assert production_snapshot() == before
        assert history.get_entry(config.history_path, context.session_id).committed_files is None

    def test_every_file_moved_records_transformed(self, config, advance_to_ready):
        """Dying after the last rename but before 'committed' was written."""
        context = advance_to_ready(interrupted_session(config))
        record_commit_plan(context, ["scripts/new.ts", "commands/speck.new.md"])
        advance_status(context, StagingStatus.COMMITTING)
        root = config.project_root
        os.replace(context.root_dir / "scripts/new.ts", root / ".speck/scripts/new.ts")
        os.replace(context.root_dir / "commands/speck.new.md", root / ".claude/commands/speck.new.md")

        result = recover(config, find_orphan(config, "v2.1.0"), "rollback")

        assert result.history_status == history.TRANSFORMED
        assert history.latest_transformed_version(config.history_path) == "v2.1.0"
        entry = history.get_entry(config.history_path, context.session_id)
        assert entry.committed_files == [".speck/scripts/new.ts", ".claude/commands/speck.new.md"]

    def test_inspect_shows_commit_progress(self, config, advance_to_ready, monkeypatch):
        context = advance_to_ready(interrupted_session(config))
        die_during_commit(context, monkeypatch, at=".claude/commands/speck.new.md")

        summary = recover(config, find_orphan(config, "v2.1.0"), "inspect")

        assert summary["commitProgress"] == {
            "committed": [".speck/scripts/new.ts"],
            "remaining": [".claude/commands/speck.new.md"],
        }
        assert context.root_dir.exists()
