"""Configuration loading for the transform staging engine."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from dotenv import load_dotenv

from transform_staging.constants import (
    CATEGORIES,
    DEFAULT_HISTORY_PATH,
    DEFAULT_STAGING_DIR,
    PRODUCTION_DIRS,
)


@dataclass
class Config:
    """Resolved project layout for one invocation."""
    
    project_root: Path
    staging_dir: Path
    history_path: Path
    
    @property
    def production_dirs(self) -> Dict[str, Path]:
        return {
            category: self.project_root / PRODUCTION_DIRS[category]
            for category in CATEGORIES
        }
    
    def production_dir(self, category: str) -> Path:
        if category not in PRODUCTION_DIRS:
            raise ValueError(f"Unknown file category: {category}")
        return self.project_root / PRODUCTION_DIRS[category]


class ConfigError(Exception):
    """Raised when configuration is unusable."""
    pass


def _resolve_under(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path


def load_config(project_root: Optional[Union[str, Path]] = None) -> Config:
    """
    Load configuration from arguments and environment variables.
    
    Args:
        project_root: Explicit project root. Falls back to TRANSFORM_PROJECT_ROOT,
                      then the current working directory.
    
    Returns:
        Config with absolute paths.
    
    Raises:
        ConfigError: If the project root does not exist or the staging
                     namespace would fall outside it.
    """
    load_dotenv()
    
    if project_root is None:
        project_root = os.environ.get("TRANSFORM_PROJECT_ROOT") or os.getcwd()
    root = Path(project_root).resolve()
    
    if not root.is_dir():
        raise ConfigError(
            f"Project root is not a directory: {root}\n"
            f"Set TRANSFORM_PROJECT_ROOT in your environment or .env file,\n"
            f"or run from the project directory."
        )
    
    staging_dir = _resolve_under(
        root, os.environ.get("TRANSFORM_STAGING_DIR") or DEFAULT_STAGING_DIR
    ).resolve()
    history_path = _resolve_under(
        root, os.environ.get("TRANSFORM_HISTORY_PATH") or DEFAULT_HISTORY_PATH
    ).resolve()
    
    # Staging must share a filesystem with production for renames to be atomic
    try:
        staging_dir.relative_to(root)
    except ValueError:
        raise ConfigError(
            f"Staging directory must live inside the project root.\n"
            f"  Staging: {staging_dir}\n"
            f"  Project: {root}\n"
            f"Fix TRANSFORM_STAGING_DIR in your environment or .env file."
        )
    
    return Config(
        project_root=root,
        staging_dir=staging_dir,
        history_path=history_path,
    )
