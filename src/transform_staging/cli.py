"""CLI entrypoint for the transform staging engine."""

import json
from pathlib import Path
from typing import List, Optional

import click
import yaml
from dotenv import load_dotenv

from transform_staging.config import Config, ConfigError, load_config
from transform_staging.errors import CorruptMetadataError, PartialCommitError, StagingError

# Load .env file on CLI startup
load_dotenv()


def _fail(message: str) -> None:
    click.echo(message, err=True)
    raise SystemExit(1)


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _load_context(config: Config, version: str):
    from transform_staging.staging_dir import load_staging_context, staging_root_for

    try:
        return load_staging_context(config, staging_root_for(config, version))
    except FileNotFoundError:
        _fail(f"Error: No staging session for version {version}.")
    except (CorruptMetadataError, ValueError) as e:
        _fail(f"Error: {e}")


def _load_manifest_paths(manifest: Optional[str]) -> Optional[List[str]]:
    """Read manifest-declared production paths (YAML list or {paths: [...]})."""
    if manifest is None:
        return None
    data = yaml.safe_load(Path(manifest).read_text())
    if isinstance(data, dict):
        data = data.get("paths")
    if not isinstance(data, list) or not all(isinstance(p, str) for p in data):
        _fail(f"Error: Manifest {manifest} must be a list of paths or a mapping with 'paths'.")
    return data


def _refuse_if_orphans(config: Config) -> None:
    """Present leftover sessions and refuse to start a new one."""
    from transform_staging.observe import print_inspection, print_orphans
    from transform_staging.recovery import detect_orphans, inspect_staging

    orphans = detect_orphans(config)
    if not orphans:
        return
    print_orphans(orphans)
    for orphan in orphans:
        if orphan.context is not None:
            print_inspection(inspect_staging(orphan.context))
    _fail("Error: Resolve the existing staging session before starting a new transformation.")


@click.group()
@click.version_option(package_name="transform-staging")
@click.option(
    "--project",
    type=click.Path(file_okay=False),
    default=None,
    help="Project root (default: TRANSFORM_PROJECT_ROOT or current directory).",
)
@click.pass_context
def cli(ctx: click.Context, project: Optional[str]):
    """Staged transformation of upstream templates with commit/rollback."""
    try:
        ctx.obj = {"config": load_config(project)}
    except ConfigError as e:
        _fail(f"Configuration error:\n{e}")


@cli.command()
@click.argument("version")
@click.option("--manifest", type=click.Path(exists=True, dir_okay=False), help="YAML list of production paths to baseline.")
@click.pass_context
def init(ctx: click.Context, version: str, manifest: Optional[str]):
    """Create a staging session for VERSION and print its output directories."""
    from transform_staging.orchestrator import initialize_staging

    config = _config(ctx)
    _refuse_if_orphans(config)

    try:
        context = initialize_staging(config, version, _load_manifest_paths(manifest))
    except (StagingError, ValueError) as e:
        _fail(f"Error: {e}")

    click.echo(json.dumps({
        "rootDir": str(context.root_dir),
        "sessionId": context.session_id,
        **{f"{category}Dir": str(path) for category, path in context.category_dirs.items()},
    }, indent=2))


@cli.command()
@click.argument("version")
@click.argument("phase", type=click.Choice(["phase1", "phase2"]))
@click.option("--success/--failure", default=True, help="Outcome reported by the phase.")
@click.option("--file", "files", multiple=True, help="File written by the phase (repeatable).")
@click.option("--error", default=None, help="Error message for a failed phase.")
@click.option("--duration", type=float, default=0.0, help="Phase duration in seconds.")
@click.pass_context
def record(ctx, version, phase, success, files, error, duration):
    """Record the outcome of an externally run PHASE."""
    from transform_staging.orchestrator import record_phase_result
    from transform_staging.staging_types import AgentResult

    context = _load_context(_config(ctx), version)
    result = AgentResult(success=success, files_written=list(files), error=error, duration=duration)

    try:
        record_phase_result(context, phase, result)
    except (StagingError, ValueError) as e:
        _fail(f"Error: {e}")

    click.echo(f"Recorded {phase} for {version}. Status: {context.metadata.status.value}")


@cli.command()
@click.argument("version")
@click.option("--force", is_flag=True, help="Commit even if production changed since staging started.")
@click.pass_context
def commit(ctx: click.Context, version: str, force: bool):
    """Commit the staged files for VERSION to production."""
    from transform_staging.orchestrator import commit_to_production

    context = _load_context(_config(ctx), version)
    try:
        result = commit_to_production(context, force=force)
    except PartialCommitError as e:
        _fail(f"FATAL: {e}")
    except StagingError as e:
        _fail(f"Error: {e}")

    click.echo(f"Committed {len(result.committed_files)} file(s) for {version}.")


@cli.command()
@click.argument("version")
@click.option("--reason", default="Manual rollback", help="Reason recorded in history.")
@click.pass_context
def rollback(ctx: click.Context, version: str, reason: str):
    """Discard the staging session for VERSION."""
    from transform_staging.orchestrator import rollback_changes

    context = _load_context(_config(ctx), version)
    try:
        result = rollback_changes(context, reason)
    except StagingError as e:
        _fail(f"Error: {e}")

    click.echo(f"Rolled back {version} (history: {result.history_status}).")


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """List orphaned staging sessions and their recovery options."""
    from transform_staging.observe import print_orphans
    from transform_staging.recovery import detect_orphans

    print_orphans(detect_orphans(_config(ctx)))


@cli.command()
@click.argument("version")
@click.argument("action", type=click.Choice(["commit", "rollback", "inspect"]))
@click.option("--force", is_flag=True, help="Commit despite conflicts.")
@click.option("--reason", default="Manual orphan recovery", help="Reason recorded on rollback.")
@click.pass_context
def recover(ctx: click.Context, version: str, action: str, force: bool, reason: str):
    """Resolve an orphaned staging session for VERSION."""
    from transform_staging.observe import print_inspection
    from transform_staging.recovery import find_orphan
    from transform_staging.recovery import recover as recover_orphan

    config = _config(ctx)
    orphan = find_orphan(config, version)
    if orphan is None:
        _fail(f"Error: No staging session for version {version}.")

    try:
        result = recover_orphan(config, orphan, action, force=force, reason=reason)
    except PartialCommitError as e:
        _fail(f"FATAL: {e}")
    except (StagingError, ValueError) as e:
        _fail(f"Error: {e}")

    if action == "inspect":
        print_inspection(result)
    elif action == "commit":
        click.echo(f"Committed {len(result.committed_files)} file(s) for {version}.")
    else:
        click.echo(f"Rolled back {version} (history: {result.history_status}).")


@cli.command("run")
@click.argument("version")
@click.option("--phases", "phase_file", required=True, type=click.Path(exists=True, dir_okay=False), help="YAML phase definitions.")
@click.option("--manifest", type=click.Path(exists=True, dir_okay=False), help="YAML list of production paths to baseline.")
@click.option("--force", is_flag=True, help="Commit even if production changed during the run.")
@click.pass_context
def run_cmd(ctx, version, phase_file, manifest, force):
    """Run both phases for VERSION through staging and commit."""
    from transform_staging.orchestrator import run_transformation
    from transform_staging.phase_runner import load_phases

    config = _config(ctx)
    _refuse_if_orphans(config)

    try:
        phase1, phase2 = load_phases(Path(phase_file))
    except (ValueError, yaml.YAMLError) as e:
        _fail(f"Error: Invalid phase definition: {e}")

    try:
        result = run_transformation(
            config, version, phase1, phase2,
            force=force,
            manifest_paths=_load_manifest_paths(manifest),
        )
    except PartialCommitError as e:
        _fail(f"FATAL: {e}")
    except (StagingError, ValueError) as e:
        _fail(f"Error: {e}")

    click.echo(f"Transformed {version}: committed {len(result.committed_files)} file(s).")


@cli.command()
@click.option("--limit", type=int, default=10, help="Entries to show (0 for all).")
@click.pass_context
def history(ctx: click.Context, limit: int):
    """Show the transformation history."""
    from transform_staging.history import read_history
    from transform_staging.observe import print_history

    try:
        print_history(read_history(_config(ctx).history_path), limit=limit or None)
    except CorruptMetadataError as e:
        _fail(f"Error: {e}")


if __name__ == "__main__":
    cli()
