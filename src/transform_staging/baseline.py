"""Production baseline capture.

Snapshots {exists, mtime, size} for every production path a commit could
touch. Captured once per session and never recomputed.
"""

import os
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from transform_staging.config import Config
from transform_staging.constants import CATEGORIES
from transform_staging.errors import StagingError
from transform_staging.metadata_store import write_metadata
from transform_staging.staging_types import (
    ABSENT,
    FileBaseline,
    ProductionBaseline,
    StagingContext,
    utc_now_iso,
)


def stat_production_file(path: Path) -> FileBaseline:
    """Current state of one production path (absent if missing)."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return ABSENT
    return FileBaseline(exists=True, mtime=st.st_mtime_ns, size=st.st_size)


def scan_production_files(config: Config) -> List[str]:
    """Project-relative paths of every regular file under the production roots."""
    paths: List[str] = []
    for category in CATEGORIES:
        root = config.production_dir(category)
        if not root.is_dir():
            continue
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                path = Path(dirpath) / name
                if path.is_file():
                    paths.append(path.relative_to(config.project_root).as_posix())
    return sorted(paths)


def _normalize(config: Config, path: str) -> str:
    p = Path(path)
    if p.is_absolute():
        p = p.relative_to(config.project_root)
    return p.as_posix()


def capture_production_baseline(
    context: StagingContext,
    paths: Optional[Iterable[str]] = None,
) -> StagingContext:
    """
    Record the production baseline into the staging descriptor.

    Args:
        context: Session in any non-terminal status without a baseline yet.
        paths: Project-relative paths the version declares it may touch.
               Recorded even when absent. Defaults to a scan of every
               existing file under the production roots.

    Raises:
        StagingError: If a baseline was already captured.
    """
    if context.metadata.production_baseline is not None:
        raise StagingError(
            f"Baseline already captured for {context.target_version} "
            f"at {context.metadata.production_baseline.captured_at}"
        )

    config = context.config
    if paths is None:
        targets = scan_production_files(config)
    else:
        targets = sorted({_normalize(config, p) for p in paths})

    files: Dict[str, FileBaseline] = {
        rel: stat_production_file(config.project_root / rel) for rel in targets
    }
    baseline = ProductionBaseline(files=files, captured_at=utc_now_iso())

    updated = replace(context.metadata, production_baseline=baseline)
    write_metadata(context, updated)
    context.metadata = updated

    print(f"[baseline] Captured {len(files)} production path(s) for {context.target_version}")
    return context
