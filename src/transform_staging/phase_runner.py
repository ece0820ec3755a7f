"""Command-backed transformation phases loaded from a YAML definition.

Example phases.yaml:

    phases:
      phase1:
        command: "bun run transform-scripts --out {scripts_dir}"
      phase2:
        command: "bun run transform-commands --commands {commands_dir} --agents {agents_dir} --skills {skills_dir}"
        description: "Generate command, agent and skill files"

Placeholders: {scripts_dir}, {commands_dir}, {agents_dir}, {skills_dir},
{version}. A phase may only use the placeholders for its own categories.
"""

import json
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Tuple

import yaml

from transform_staging.constants import PHASE1, PHASE2, debug_enabled
from transform_staging.orchestrator import TransformPhase
from transform_staging.staging_types import AgentResult


def load_phase_definitions(phase_file: Path) -> Dict[str, dict]:
    """
    Load phase definitions from YAML or JSON.

    Required fields per phase:
        - command: str

    Optional fields:
        - description: str
    """
    content = phase_file.read_text()

    if phase_file.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(content)
    elif phase_file.suffix == ".json":
        data = json.loads(content)
    else:
        raise ValueError(f"Unsupported file type: {phase_file.suffix}. Use .yaml, .yml, or .json")

    if not isinstance(data, dict) or not isinstance(data.get("phases"), dict):
        raise ValueError("Phase definition missing required mapping: phases")

    phases = data["phases"]
    missing = [p for p in (PHASE1, PHASE2) if p not in phases]
    if missing:
        raise ValueError(f"Phase definition missing phases: {', '.join(missing)}")

    for name in (PHASE1, PHASE2):
        definition = phases[name]
        if not isinstance(definition, dict) or not definition.get("command"):
            raise ValueError(f"Phase '{name}' missing required field: command")

    return {name: phases[name] for name in (PHASE1, PHASE2)}


def _files_under(output_dirs: Dict[str, Path]) -> List[str]:
    files: List[str] = []
    for category, directory in sorted(output_dirs.items()):
        if not directory.is_dir():
            continue
        for dirpath, _dirnames, filenames in os.walk(directory):
            for name in filenames:
                rel = (Path(dirpath) / name).relative_to(directory).as_posix()
                files.append(f"{category}/{rel}")
    return sorted(files)


class CommandPhase(TransformPhase):
    """Run an external command with its staging output directories."""

    def __init__(self, name: str, command: str, description: str = ""):
        self.name = name
        self.command = command
        self.description = description

    def build_command(self, output_dirs: Dict[str, Path], version: str) -> List[str]:
        values = {f"{category}_dir": str(path) for category, path in output_dirs.items()}
        values["version"] = version
        # Split before substituting so paths with spaces stay one argument
        try:
            return [token.format(**values) for token in shlex.split(self.command)]
        except KeyError as e:
            raise ValueError(
                f"Phase '{self.name}' command uses {e} which is not one of its outputs "
                f"({', '.join(sorted(values))})"
            )

    def run(self, output_dirs: Dict[str, Path], version: str) -> AgentResult:
        """
        Run the command and report files present in output_dirs afterwards.

        A non-zero exit status or a launch error is a failed result.
        No timeout is applied.
        """
        start = time.monotonic()
        try:
            cmd = self.build_command(output_dirs, version)
            if debug_enabled():
                print(f"[DEBUG] {self.name}: {cmd}")
            result = subprocess.run(cmd, capture_output=True, text=True)
        except (OSError, ValueError) as e:
            return AgentResult(
                success=False,
                files_written=[],
                error=str(e),
                duration=time.monotonic() - start,
            )

        duration = time.monotonic() - start
        files = _files_under(output_dirs)

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            return AgentResult(
                success=False,
                files_written=files,
                error=f"exit code {result.returncode}: {stderr[:500]}",
                duration=duration,
            )

        return AgentResult(success=True, files_written=files, duration=duration)


def build_phases(definitions: Dict[str, dict]) -> Tuple[CommandPhase, CommandPhase]:
    return (
        CommandPhase(PHASE1, definitions[PHASE1]["command"], definitions[PHASE1].get("description", "")),
        CommandPhase(PHASE2, definitions[PHASE2]["command"], definitions[PHASE2].get("description", "")),
    )


def load_phases(phase_file: Path) -> Tuple[CommandPhase, CommandPhase]:
    return build_phases(load_phase_definitions(phase_file))
