"""Tests for the commit engine."""

import os

import pytest

from transform_staging import history
from transform_staging.baseline import capture_production_baseline
from transform_staging.commit import commit_staging
from transform_staging.conflicts import MODIFIED
from transform_staging.errors import (
    CommitBookkeepingError,
    ConflictError,
    FilesystemError,
    InvalidTransitionError,
    PartialCommitError,
)
from transform_staging import metadata_store
from transform_staging.metadata_store import read_metadata
from transform_staging.recovery import find_orphan, recover
from transform_staging.staging_dir import create_staging
from transform_staging.staging_types import StagingStatus


NEW_SCRIPT = "export function checkPrereqs() { return true; }\n"
UPDATED_SCRIPT = "// Updated by transformation\nexport function run() { return 2; }\n"
NEW_COMMAND = "---\ndescription: Plan a feature\n---\n\n# Plan\n"


@pytest.fixture
def session(config):
    """A staging session with an open history entry and a full baseline."""
    context = create_staging(config, "v2.1.0", previous_version="v2.0.0")
    history.open_entry(config.history_path, "v2.1.0", context.session_id)
    capture_production_baseline(context)
    return context


def stage(context, category, relative, content):
    path = context.root_dir / category / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestCommitSuccess:
    """Clean commits."""

    def test_commits_new_and_updated_files(self, config, session, advance_to_ready):
        stage(session, "scripts", "check-prereqs.ts", NEW_SCRIPT)
        stage(session, "scripts", "existing-script.ts", UPDATED_SCRIPT)
        stage(session, "commands", "speck.plan.md", NEW_COMMAND)
        advance_to_ready(session)

        result = commit_staging(session)

        root = config.project_root
        assert result.committed_files == [
            ".speck/scripts/check-prereqs.ts",
            ".speck/scripts/existing-script.ts",
            ".claude/commands/speck.plan.md",
        ]
        assert (root / ".speck/scripts/check-prereqs.ts").read_text() == NEW_SCRIPT
        assert (root / ".speck/scripts/existing-script.ts").read_text() == UPDATED_SCRIPT
        assert (root / ".claude/commands/speck.plan.md").read_text() == NEW_COMMAND
        assert (root / ".claude/commands/speck.existing-command.md").exists()

    def test_staging_removed_and_history_recorded(self, config, session, advance_to_ready):
        stage(session, "scripts", "check-prereqs.ts", NEW_SCRIPT)
        advance_to_ready(session)

        commit_staging(session)

        assert not session.root_dir.exists()
        assert session.metadata.status == StagingStatus.COMMITTED
        h = history.read_history(config.history_path)
        assert h.latest_version == "v2.1.0"
        assert len(h.entries) == 1
        assert h.entries[0].status == history.TRANSFORMED
        assert h.entries[0].session_id == session.session_id
        assert h.entries[0].committed_files == [".speck/scripts/check-prereqs.ts"]

    def test_creates_missing_destination_directories(self, config, session, advance_to_ready):
        stage(session, "skills", "speck-help/SKILL.md", "skill")
        advance_to_ready(session)

        commit_staging(session)

        assert (config.project_root / ".claude/skills/speck-help/SKILL.md").read_text() == "skill"

    def test_empty_staging_commits_nothing(self, config, session, advance_to_ready):
        advance_to_ready(session)

        result = commit_staging(session)

        assert result.committed_files == []
        assert history.get_entry(config.history_path, session.session_id).status == history.TRANSFORMED


class TestCommitBlocked:
    """Commits that never touch production."""

    def test_requires_ready(self, session):
        stage(session, "scripts", "check-prereqs.ts", NEW_SCRIPT)

        with pytest.raises(InvalidTransitionError):
            commit_staging(session)

        assert read_metadata(session.root_dir).status == StagingStatus.STAGING

    def test_conflict_blocks_commit(self, config, session, advance_to_ready, production_snapshot):
        stage(session, "scripts", "existing-script.ts", UPDATED_SCRIPT)
        advance_to_ready(session)
        (config.project_root / ".speck/scripts/existing-script.ts").write_text("// hand edit, different size\n")
        before = production_snapshot()

        with pytest.raises(ConflictError) as exc_info:
            commit_staging(session)

        assert [(c.path, c.reason) for c in exc_info.value.conflicts] == [
            (".speck/scripts/existing-script.ts", MODIFIED),
        ]
        assert production_snapshot() == before
        assert read_metadata(session.root_dir).status == StagingStatus.READY
        assert (session.root_dir / "scripts" / "existing-script.ts").exists()

    def test_force_overrides_conflict(self, config, session, advance_to_ready):
        stage(session, "scripts", "existing-script.ts", UPDATED_SCRIPT)
        advance_to_ready(session)
        (config.project_root / ".speck/scripts/existing-script.ts").write_text("// hand edit, different size\n")

        result = commit_staging(session, force=True)

        assert [c.path for c in result.overridden_conflicts] == [".speck/scripts/existing-script.ts"]
        assert (config.project_root / ".speck/scripts/existing-script.ts").read_text() == UPDATED_SCRIPT

    def test_prevalidation_failure_moves_nothing(self, config, session, advance_to_ready, production_snapshot):
        """A destination occupied by a directory fails before the first rename."""
        stage(session, "scripts", "a.ts", "a")
        stage(session, "scripts", "blocked.ts", "b")
        advance_to_ready(session)
        (config.project_root / ".speck/scripts/blocked.ts").mkdir()
        before = production_snapshot()

        with pytest.raises(FilesystemError) as exc_info:
            commit_staging(session, force=True)

        assert "destination is a directory" in str(exc_info.value)
        assert production_snapshot() == before
        assert read_metadata(session.root_dir).status == StagingStatus.READY

    def test_first_rename_failure(self, config, session, advance_to_ready, monkeypatch, production_snapshot):
        stage(session, "scripts", "a.ts", "a")
        advance_to_ready(session)
        before = production_snapshot()
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(dst).endswith(".speck/scripts/a.ts"):
                raise OSError(28, "No space left on device")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", failing_replace)

        with pytest.raises(FilesystemError) as exc_info:
            commit_staging(session)

        assert not isinstance(exc_info.value, PartialCommitError)
        assert production_snapshot() == before
        assert read_metadata(session.root_dir).status == StagingStatus.FAILED


class TestPartialCommit:
    """A rename failure after earlier successes."""

    def test_partial_commit_is_recorded_not_undone(self, config, session, advance_to_ready, monkeypatch):
        stage(session, "scripts", "a.ts", "new a")
        stage(session, "scripts", "b.ts", "new b")
        stage(session, "commands", "speck.c.md", "new c")
        advance_to_ready(session)
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(dst).endswith(".speck/scripts/b.ts"):
                raise OSError(13, "Permission denied")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", failing_replace)

        with pytest.raises(PartialCommitError) as exc_info:
            commit_staging(session)

        error = exc_info.value
        assert error.committed == [".speck/scripts/a.ts"]
        assert error.failed_path == ".speck/scripts/b.ts"
        assert error.remaining == [".speck/scripts/b.ts", ".claude/commands/speck.c.md"]

        root = config.project_root
        assert (root / ".speck/scripts/a.ts").read_text() == "new a"
        assert not (root / ".speck/scripts/b.ts").exists()
        assert not (root / ".claude/commands/speck.c.md").exists()

        # Staging is left for manual resolution
        assert (session.root_dir / "scripts" / "b.ts").exists()
        assert (session.root_dir / "commands" / "speck.c.md").exists()
        metadata = read_metadata(session.root_dir)
        assert metadata.status == StagingStatus.FAILED
        assert metadata.commit_plan == ["scripts/a.ts", "scripts/b.ts", "commands/speck.c.md"]

        entry = history.get_entry(config.history_path, session.session_id)
        assert entry.status == history.PARTIAL
        assert entry.committed_files == [".speck/scripts/a.ts"]
        assert ".speck/scripts/b.ts" in entry.error
        assert history.latest_transformed_version(config.history_path) is None

    def test_rollback_after_partial_keeps_partial_history(self, config, session, advance_to_ready, monkeypatch):
        stage(session, "scripts", "a.ts", "new a")
        stage(session, "scripts", "b.ts", "new b")
        advance_to_ready(session)
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(dst).endswith(".speck/scripts/b.ts"):
                raise OSError(13, "Permission denied")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", failing_replace)
        with pytest.raises(PartialCommitError):
            commit_staging(session)
        monkeypatch.undo()

        result = recover(config, find_orphan(config, "v2.1.0"), "rollback")

        assert result.history_status == history.PARTIAL
        assert not session.root_dir.exists()
        assert (config.project_root / ".speck/scripts/a.ts").read_text() == "new a"
        entry = history.get_entry(config.history_path, session.session_id)
        assert entry.committed_files == [".speck/scripts/a.ts"]


class TestCommitBookkeeping:
    """Every file moved, but recording the outcome failed."""

    def test_history_write_failure(self, config, session, advance_to_ready, monkeypatch):
        stage(session, "scripts", "a.ts", "new a")
        stage(session, "commands", "speck.c.md", "new c")
        advance_to_ready(session)

        def broken_finalize(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(history, "finalize_entry", broken_finalize)

        with pytest.raises(CommitBookkeepingError) as exc_info:
            commit_staging(session)

        error = exc_info.value
        assert error.committed == [".speck/scripts/a.ts", ".claude/commands/speck.c.md"]
        assert "recover v2.1.0 rollback" in str(error)
        assert (config.project_root / ".claude/commands/speck.c.md").read_text() == "new c"
        assert read_metadata(session.root_dir).status == StagingStatus.COMMITTED
        assert history.get_entry(config.history_path, session.session_id).status == history.IN_PROGRESS

        monkeypatch.undo()
        result = recover(config, find_orphan(config, "v2.1.0"), "rollback")

        assert result.history_status == history.TRANSFORMED
        assert not session.root_dir.exists()
        entry = history.get_entry(config.history_path, session.session_id)
        assert entry.committed_files == [".speck/scripts/a.ts", ".claude/commands/speck.c.md"]
        assert history.latest_transformed_version(config.history_path) == "v2.1.0"

    def test_status_write_failure(self, config, session, advance_to_ready, monkeypatch):
        stage(session, "scripts", "a.ts", "new a")
        advance_to_ready(session)
        real_advance = metadata_store.advance_status

        def failing_advance(context, new_status):
            if new_status == StagingStatus.COMMITTED:
                raise OSError(5, "Input/output error")
            return real_advance(context, new_status)

        monkeypatch.setattr("transform_staging.commit.advance_status", failing_advance)

        with pytest.raises(CommitBookkeepingError):
            commit_staging(session)

        assert read_metadata(session.root_dir).status == StagingStatus.COMMITTING

        monkeypatch.undo()
        result = recover(config, find_orphan(config, "v2.1.0"), "rollback")

        assert result.history_status == history.TRANSFORMED
        assert (config.project_root / ".speck/scripts/a.ts").read_text() == "new a"
        assert history.latest_transformed_version(config.history_path) == "v2.1.0"
