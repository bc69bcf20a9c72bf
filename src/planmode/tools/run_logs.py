"""Structured JSON logs of plan-mode runs, for post-mortem inspection."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)

__all__ = ["RunLog", "RunLogEntry", "load_run_log"]


class RunLog:
    """Accumulate engine transitions and rewrite the log file after each one."""

    def __init__(self, logs_root: Path, *, goal: str = "") -> None:
        self._logs_root = Path(logs_root)
        self._started = datetime.now(timezone.utc)
        timestamp = self._started.strftime("%Y%m%dT%H%M%S%fZ")
        file_name = "__".join(["run", slugify(goal, fallback="plan"), timestamp, uuid.uuid4().hex[:8]])
        self._path = self._logs_root / f"{file_name}.json"
        self._payload: dict[str, Any] = {
            "started_at": self._started.isoformat(),
            "goal": goal,
            "transitions": [],
        }
        self._enabled = True

    @property
    def path(self) -> Path:
        return self._path

    def set_goal(self, goal: str) -> None:
        self._payload["goal"] = goal

    def append(self, event: Mapping[str, Any]) -> None:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **dict(event)}
        self._payload["transitions"].append(entry)
        self._flush()

    def _flush(self) -> None:
        if not self._enabled:
            return
        try:
            self._logs_root.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as handle:
                json.dump(self._payload, handle, indent=2, sort_keys=True, ensure_ascii=False, default=str)
        except OSError as error:
            LOGGER.warning("Disabling run log %s: %s", self._path, error)
            self._enabled = False


@dataclass(slots=True)
class RunLogEntry:
    """In-memory view of a stored run log."""

    path: Path
    payload: Mapping[str, Any]

    @property
    def goal(self) -> str:
        return str(self.payload.get("goal") or "")

    @property
    def transitions(self) -> list[Mapping[str, Any]]:
        value = self.payload.get("transitions")
        if isinstance(value, list):
            return [item for item in value if isinstance(item, Mapping)]
        return []

    @property
    def final_state(self) -> str | None:
        transitions = self.transitions
        if not transitions:
            return None
        state = transitions[-1].get("state")
        return str(state) if state else None

    @property
    def decisions(self) -> list[Mapping[str, Any]]:
        for transition in reversed(self.transitions):
            ledger = transition.get("ledger")
            if isinstance(ledger, Mapping):
                decisions = ledger.get("decisions")
                if isinstance(decisions, list):
                    return [item for item in decisions if isinstance(item, Mapping)]
        return []


def load_run_log(path: Path | str) -> RunLogEntry:
    """Load a structured run log from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return RunLogEntry(path=log_path, payload=payload)
