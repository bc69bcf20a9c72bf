"""Append-only record of resolved decisions and the plan changes they caused."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field


class DeltaKind(str, Enum):
    """Kinds of plan edits recorded alongside decisions."""

    STEP_CHANGED = "STEP_CHANGED"
    STEP_ADDED = "STEP_ADDED"
    STEP_REMOVED = "STEP_REMOVED"


class Decision(BaseModel):
    """Resolved outcome of one question; immutable once recorded."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    key: str
    value: str
    source_round: int = Field(ge=1)


class PlanDelta(BaseModel):
    """One applied plan edit, numbered by the step's position after patching."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: DeltaKind
    step_id: str
    description: str
    step_number: int | None = None

    def render(self) -> str:
        label = f"Step {self.step_number}" if self.step_number is not None else f"Step {self.step_id}"
        if self.kind == DeltaKind.STEP_ADDED:
            return f"Added {label}: {self.description}"
        if self.kind == DeltaKind.STEP_REMOVED:
            return f"Removed {label}: {self.description}"
        return f"{label} changed: {self.description}"


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Stable view handed to renderers."""

    decisions: tuple[Decision, ...] = ()
    deltas: tuple[PlanDelta, ...] = ()

    def render(self) -> str:
        lines = ["Decisions"]
        if self.decisions:
            lines.extend(f"{decision.key}: {decision.value}" for decision in self.decisions)
        else:
            lines.append("(none)")
        lines.append("")
        lines.append("Plan updates")
        if self.deltas:
            lines.extend(delta.render() for delta in self.deltas)
        else:
            lines.append("(none)")
        return "\n".join(lines)


class DecisionLedger:
    """Append-only ledger for a single plan-mode run.

    ``record`` is the only mutator. Earlier entries are never rewritten, so a
    snapshot taken after N calls stays a prefix of every later snapshot.
    """

    def __init__(self) -> None:
        self._decisions: list[Decision] = []
        self._deltas: list[PlanDelta] = []
        self._records = 0

    def record(self, decisions: Iterable[Decision], deltas: Iterable[PlanDelta] = ()) -> LedgerSnapshot:
        new_decisions = tuple(decisions)
        new_deltas = tuple(deltas)
        self._decisions.extend(new_decisions)
        self._deltas.extend(new_deltas)
        self._records += 1
        return LedgerSnapshot(decisions=new_decisions, deltas=new_deltas)

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(decisions=tuple(self._decisions), deltas=tuple(self._deltas))

    @property
    def decisions(self) -> tuple[Decision, ...]:
        return tuple(self._decisions)

    @property
    def deltas(self) -> tuple[PlanDelta, ...]:
        return tuple(self._deltas)

    @property
    def record_count(self) -> int:
        return self._records

    def __len__(self) -> int:
        return len(self._decisions)

    def latest(self, key: str) -> Decision | None:
        for decision in reversed(self._decisions):
            if decision.key == key:
                return decision
        return None


__all__ = ["DecisionLedger", "Decision", "DeltaKind", "LedgerSnapshot", "PlanDelta"]
