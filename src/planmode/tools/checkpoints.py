"""Checkpoint runners that gate step completion.

Test, build, and lint checkpoints run the commands configured under the
``checkpoints`` section; smoke checkpoints carry their own command. A
checkpoint passes when its command exits with status zero.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Literal, Protocol, Sequence

from ..config import CheckpointSettings
from ..graph import CheckpointSpec, SmokeCheckpoint, Step

LOGGER = logging.getLogger(__name__)

CheckpointStatus = Literal["passed", "failed"]


@dataclass(slots=True)
class CheckpointResult:
    """Outcome of evaluating one checkpoint."""

    kind: str
    status: CheckpointStatus
    command: List[str] = field(default_factory=list)
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "passed"

    def short_message(self) -> str:
        if self.ok:
            return f"{self.kind}: passed"
        fallback = self.stderr.strip() or self.stdout.strip()
        snippet = fallback.splitlines()[0] if fallback else "exit code != 0"
        return f"{self.kind}: failed ({snippet})"


class CheckpointRunner(Protocol):
    """Evaluates a step's checkpoint."""

    def run(self, step: Step, spec: CheckpointSpec) -> CheckpointResult: ...


class SubprocessCheckpointRunner:
    """Run checkpoint commands in the repository root."""

    def __init__(self, settings: CheckpointSettings | None = None, *, cwd: Path | None = None) -> None:
        self._settings = settings or CheckpointSettings()
        self._cwd = Path(cwd or Path.cwd())

    def command_for(self, spec: CheckpointSpec) -> list[str]:
        if isinstance(spec, SmokeCheckpoint):
            return list(spec.command)
        if spec.kind == "test":
            return list(self._settings.test)
        if spec.kind == "build":
            return list(self._settings.build)
        if spec.kind == "lint":
            return list(self._settings.lint)
        return []

    def run(self, step: Step, spec: CheckpointSpec) -> CheckpointResult:
        if spec.kind == "noop":
            return CheckpointResult(kind="noop", status="passed")

        command = self.command_for(spec)
        if not command:
            return CheckpointResult(
                kind=spec.kind,
                status="failed",
                stderr=f"No command configured for {spec.kind} checkpoints.",
            )
        return _run_command(spec.kind, command, cwd=self._cwd, timeout=self._settings.timeout)


@dataclass(slots=True)
class DryRunCheckpointRunner:
    """Report every checkpoint as passed and remember what would have run."""

    settings: CheckpointSettings = field(default_factory=CheckpointSettings)
    evaluated: list[tuple[str, str]] = field(default_factory=list)

    def run(self, step: Step, spec: CheckpointSpec) -> CheckpointResult:
        self.evaluated.append((step.id, spec.kind))
        command = SubprocessCheckpointRunner(self.settings).command_for(spec)
        if command:
            LOGGER.info("[dry-run] %s checkpoint for %s: %s", spec.kind, step.id, " ".join(command))
        return CheckpointResult(kind=spec.kind, status="passed", command=command)


def _run_command(kind: str, command: Sequence[str], *, cwd: Path, timeout: float) -> CheckpointResult:
    executable = command[0]
    if shutil.which(executable) is None:
        return CheckpointResult(
            kind=kind,
            status="failed",
            command=list(command),
            stderr=f"Executable not available: {executable}",
        )

    LOGGER.debug("Running %s checkpoint: %s", kind, " ".join(command))
    try:
        process = subprocess.run(  # noqa: S603 - command comes from config or the plan
            list(command),
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        return CheckpointResult(
            kind=kind,
            status="failed",
            command=list(command),
            stdout=_decode(error.stdout),
            stderr=f"Timed out after {timeout:g}s",
        )
    except OSError as error:
        return CheckpointResult(kind=kind, status="failed", command=list(command), stderr=str(error))

    return CheckpointResult(
        kind=kind,
        status="passed" if process.returncode == 0 else "failed",
        command=list(command),
        exit_code=process.returncode,
        stdout=process.stdout,
        stderr=process.stderr,
    )


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = [
    "CheckpointResult",
    "CheckpointRunner",
    "CheckpointStatus",
    "DryRunCheckpointRunner",
    "SubprocessCheckpointRunner",
]
