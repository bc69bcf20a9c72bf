"""Action executors that carry out a step's work."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

from ..graph import Action, Step

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ActionResult:
    """Outcome of dispatching a step's actions."""

    ok: bool
    detail: str = ""
    output: str = ""


class ActionExecutor(Protocol):
    """Runs the actions of one step; may block for a long time."""

    def execute(self, step: Step, actions: Sequence[Action]) -> ActionResult: ...


@dataclass(slots=True)
class DryRunActionExecutor:
    """Record dispatched actions without touching the workspace."""

    dispatched: list[tuple[str, Action]] = field(default_factory=list)

    def execute(self, step: Step, actions: Sequence[Action]) -> ActionResult:
        for action in actions:
            self.dispatched.append((step.id, action))
            LOGGER.info("[dry-run] %s: %s", step.id, action.description or action.kind)
        return ActionResult(ok=True, detail=f"{len(actions)} action(s) recorded")


class SubprocessActionExecutor:
    """Run actions that carry a command; other actions are logged and skipped."""

    def __init__(self, *, cwd: Path | None = None, timeout: float = 600) -> None:
        self._cwd = Path(cwd or Path.cwd())
        self._timeout = timeout

    def execute(self, step: Step, actions: Sequence[Action]) -> ActionResult:
        outputs: list[str] = []
        for action in actions:
            if not action.command:
                LOGGER.info("%s: no command for action '%s'", step.id, action.description or action.kind)
                continue
            executable = action.command[0]
            if shutil.which(executable) is None:
                return ActionResult(ok=False, detail=f"Executable not available: {executable}")
            try:
                process = subprocess.run(  # noqa: S603 - commands come from the accepted plan
                    list(action.command),
                    cwd=self._cwd,
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                )
            except subprocess.TimeoutExpired:
                return ActionResult(ok=False, detail=f"Timed out: {' '.join(action.command)}")
            except OSError as error:
                return ActionResult(ok=False, detail=str(error))
            outputs.append(process.stdout)
            if process.returncode != 0:
                message = (process.stderr or process.stdout).strip().splitlines()
                return ActionResult(
                    ok=False,
                    detail=message[0] if message else f"exit code {process.returncode}",
                    output="".join(outputs),
                )
        return ActionResult(ok=True, output="".join(outputs))


__all__ = ["ActionExecutor", "ActionResult", "DryRunActionExecutor", "SubprocessActionExecutor"]
