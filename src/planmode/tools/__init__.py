"""Collaborator implementations used by the engine runtime."""

from .actions import ActionExecutor, ActionResult, DryRunActionExecutor, SubprocessActionExecutor
from .checkpoints import (
    CheckpointResult,
    CheckpointRunner,
    DryRunCheckpointRunner,
    SubprocessCheckpointRunner,
)
from .run_logs import RunLog, RunLogEntry, load_run_log

__all__ = [
    "ActionExecutor",
    "ActionResult",
    "CheckpointResult",
    "CheckpointRunner",
    "DryRunActionExecutor",
    "DryRunCheckpointRunner",
    "RunLog",
    "RunLogEntry",
    "SubprocessActionExecutor",
    "SubprocessCheckpointRunner",
    "load_run_log",
]
