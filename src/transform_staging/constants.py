"""Constants for the transform staging engine."""

import os

# File categories a transformation may produce, in commit order
CATEGORIES = ["scripts", "commands", "agents", "skills"]

# Production root for each category (relative to the project root)
PRODUCTION_DIRS = {
    "scripts": ".speck/scripts",
    "commands": ".claude/commands",
    "agents": ".claude/agents",
    "skills": ".claude/skills",
}

# External phases and the staging categories each one writes into
PHASE1 = "phase1"
PHASE2 = "phase2"
PHASE_CATEGORIES = {
    PHASE1: ["scripts"],
    PHASE2: ["commands", "agents", "skills"],
}

DEFAULT_STAGING_DIR = ".speck/.transform-staging"
DEFAULT_HISTORY_PATH = ".speck/transformation-history.json"

METADATA_FILENAME = "staging.json"
HISTORY_SCHEMA_VERSION = "1.0.0"

# Versions become directory names, so keep them to a safe charset
VERSION_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._+-]*$"


def debug_enabled() -> bool:
    """Env-gated diagnostic output."""
    return bool(os.environ.get("TRANSFORM_STAGING_DEBUG"))
