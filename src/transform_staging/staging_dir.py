"""Staging directory manager.

Layout: <staging_dir>/<version>/{scripts,commands,agents,skills}/ plus
staging.json. At most one staging root may exist at a time; this is
enforced by a presence check, not a lock file.
"""

import os
import re
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from transform_staging.config import Config
from transform_staging.constants import CATEGORIES, VERSION_PATTERN
from transform_staging.errors import FilesystemError, StagingExistsError
from transform_staging.metadata_store import read_metadata, write_metadata
from transform_staging.staging_types import (
    StagedFile,
    StagingContext,
    StagingMetadata,
    StagingStatus,
    utc_now_iso,
)


def validate_version(version: str) -> None:
    """Reject versions that are not safe as a single directory name."""
    if not version or not re.fullmatch(VERSION_PATTERN, version) or version in (".", ".."):
        raise ValueError(
            f"Invalid target version: {version!r}\n"
            f"  Expected letters, digits, '.', '_', '+', '-' (e.g. 'v2.1.0')."
        )


def list_staging_roots(config: Config) -> List[Path]:
    """All staging roots currently present under the staging namespace."""
    if not config.staging_dir.is_dir():
        return []
    return sorted(
        p for p in config.staging_dir.iterdir()
        if p.is_dir() and not p.is_symlink() and not p.name.startswith(".")
    )


def staging_root_for(config: Config, version: str) -> Path:
    validate_version(version)
    return config.staging_dir / version


def build_context(config: Config, root_dir: Path, metadata: StagingMetadata) -> StagingContext:
    return StagingContext(
        config=config,
        root_dir=root_dir,
        target_version=metadata.target_version,
        metadata=metadata,
    )


def load_staging_context(config: Config, root_dir: Path) -> StagingContext:
    """
    Rebuild a context from a staging root on disk.

    Raises:
        FileNotFoundError: If the descriptor is missing.
        CorruptMetadataError: If the descriptor fails validation.
    """
    root_dir = Path(root_dir)
    metadata = read_metadata(root_dir)
    return build_context(config, root_dir, metadata)


def create_staging(
    config: Config,
    target_version: str,
    previous_version: Optional[str] = None,
) -> StagingContext:
    """
    Create the staging root and category directories for a version.

    The initial descriptor is written before returning, so a crash right
    after creation still leaves a recoverable session.

    Raises:
        ValueError: If target_version is not a safe directory name.
        StagingExistsError: If any staging root already exists.
        FilesystemError: If the directories or descriptor cannot be written.
    """
    root_dir = staging_root_for(config, target_version)

    existing = list_staging_roots(config)
    if existing:
        raise StagingExistsError([str(p) for p in existing])

    try:
        config.staging_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(
            "STAGING BLOCKED: Cannot create staging namespace.", path=str(config.staging_dir), cause=e
        )

    try:
        root_dir.mkdir(exist_ok=False)
    except FileExistsError:
        raise StagingExistsError([str(root_dir)])
    except OSError as e:
        raise FilesystemError(
            "STAGING BLOCKED: Cannot create staging directory.", path=str(root_dir), cause=e
        )

    now = utc_now_iso()
    metadata = StagingMetadata(
        status=StagingStatus.STAGING,
        start_time=now,
        target_version=target_version,
        session_id=str(uuid4()),
        previous_version=previous_version,
    )
    context = build_context(config, root_dir, metadata)

    try:
        for category in CATEGORIES:
            context.category_dir(category).mkdir()
        write_metadata(context, metadata)
    except OSError as e:
        shutil.rmtree(root_dir, ignore_errors=True)
        raise FilesystemError(
            "STAGING BLOCKED: Cannot initialize staging directory.", path=str(root_dir), cause=e
        )

    print(f"[staging] Created {root_dir}")
    return context


def _warn_symlink(path: Path) -> None:
    print(f"[staging] WARNING: skipping symlink {path}", file=sys.stderr)


def list_staged_files(context: StagingContext) -> List[StagedFile]:
    """
    Every regular file under the category directories, with its destination.

    Symlinks (to files or directories) are reported and skipped, never
    followed. Results are ordered by category, then relative path.
    """
    staged: List[StagedFile] = []

    for category in CATEGORIES:
        base = context.category_dir(category)
        if not base.is_dir():
            continue
        production_root = context.production_dir(category)

        for dirpath, dirnames, filenames in os.walk(base, followlinks=False):
            current = Path(dirpath)

            for name in list(dirnames):
                if (current / name).is_symlink():
                    _warn_symlink(current / name)
                    dirnames.remove(name)
            dirnames.sort()

            for name in sorted(filenames):
                path = current / name
                if path.is_symlink():
                    _warn_symlink(path)
                    continue
                if not path.is_file():
                    continue

                relative = path.relative_to(base)
                destination = production_root / relative
                staged.append(StagedFile(
                    category=category,
                    relative_path=relative.as_posix(),
                    staging_path=path,
                    production_path=destination,
                ))

    return staged


def generate_file_manifest(context: StagingContext) -> List[Dict[str, str]]:
    """Source -> destination pairs for the pre-commit report."""
    root = context.config.project_root
    return [
        {
            "category": f.category,
            "relative_path": f.relative_path,
            "source": str(f.staging_path),
            "destination": f.production_relative(root),
        }
        for f in list_staged_files(context)
    ]
