"""Versioned plan graph: steps, checkpoints, fallback policies, and integrity checks."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import GraphIntegrityError


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class StepStatus(str, Enum):
    """Lifecycle states for a plan step."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


SETTLED_STATUSES = frozenset({StepStatus.DONE, StepStatus.SKIPPED})
PROTECTED_STATUSES = frozenset({StepStatus.DONE, StepStatus.IN_PROGRESS})


class Action(RecordModel):
    """Opaque unit of work dispatched to the action executor."""

    kind: str = "edit"
    description: str = ""
    command: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)


class NoOpCheckpoint(RecordModel):
    kind: Literal["noop"] = "noop"


class TestCheckpoint(RecordModel):
    __test__ = False

    kind: Literal["test"] = "test"


class BuildCheckpoint(RecordModel):
    kind: Literal["build"] = "build"


class LintCheckpoint(RecordModel):
    kind: Literal["lint"] = "lint"


class SmokeCheckpoint(RecordModel):
    """Ad-hoc command whose zero exit code gates the step."""

    kind: Literal["smoke"] = "smoke"
    command: List[str]


CheckpointSpec = Annotated[
    Union[NoOpCheckpoint, TestCheckpoint, BuildCheckpoint, LintCheckpoint, SmokeCheckpoint],
    Field(discriminator="kind"),
]


class RetryPolicy(RecordModel):
    """Re-dispatch the step up to ``attempts`` more times, then ask the user."""

    kind: Literal["retry"] = "retry"
    attempts: int = Field(default=1, ge=1)


class FallbackActions(RecordModel):
    """Run alternate actions once; a second failure is reported, not escalated."""

    kind: Literal["fallback"] = "fallback"
    actions: List[Action] = Field(default_factory=list)


class AskQuestion(RecordModel):
    """Interrupt execution with a new question round."""

    kind: Literal["ask"] = "ask"


FallbackPolicy = Annotated[
    Union[RetryPolicy, FallbackActions, AskQuestion],
    Field(discriminator="kind"),
]


class Step(RecordModel):
    """Single node of the plan graph."""

    id: str
    description: str
    actions: List[Action] = Field(default_factory=list)
    preconditions: Set[str] = Field(default_factory=set)
    postconditions: Set[str] = Field(default_factory=set)
    checkpoint: CheckpointSpec = Field(default_factory=NoOpCheckpoint)
    status: StepStatus = StepStatus.PENDING
    on_fail: FallbackPolicy = Field(default_factory=AskQuestion)
    note: Optional[str] = None


class PlanGraph(RecordModel):
    """Ordered steps plus the version counter bumped on every re-plan."""

    goal: str = ""
    steps: List[Step] = Field(default_factory=list)
    version: int = 1
    checkpoints: List[str] = Field(default_factory=list)
    rollback: List[str] = Field(default_factory=list)

    def get(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def require(self, step_id: str) -> Step:
        step = self.get(step_id)
        if step is None:
            raise GraphIntegrityError(f"Unknown step '{step_id}'.", step_ids=[step_id])
        return step

    def position(self, step_id: str) -> int:
        """Return the 1-based position of ``step_id`` in graph order."""
        for index, step in enumerate(self.steps, start=1):
            if step.id == step_id:
                return index
        raise GraphIntegrityError(f"Unknown step '{step_id}'.", step_ids=[step_id])

    def with_status(self, *statuses: StepStatus) -> list[Step]:
        wanted = set(statuses)
        return [step for step in self.steps if step.status in wanted]

    @property
    def complete(self) -> bool:
        return all(step.status in SETTLED_STATUSES for step in self.steps)

    def snapshot(self) -> "PlanGraph":
        return self.model_copy(deep=True)


def producers(graph: PlanGraph) -> dict[str, list[str]]:
    """Map each postcondition token to the ids of the steps that establish it."""
    mapping: dict[str, list[str]] = {}
    for step in graph.steps:
        for token in sorted(step.postconditions):
            mapping.setdefault(token, []).append(step.id)
    return mapping


def dependencies(graph: PlanGraph) -> dict[str, set[str]]:
    """Return the step ids each step waits on.

    A precondition token names either a step id or a postcondition token
    established by other steps.
    """
    step_ids = {step.id for step in graph.steps}
    produced = producers(graph)
    edges: dict[str, set[str]] = {}
    for step in graph.steps:
        upstream: set[str] = set()
        for token in step.preconditions:
            if token in step_ids:
                upstream.add(token)
            upstream.update(owner for owner in produced.get(token, ()) if owner != step.id)
        edges[step.id] = upstream
    return edges


def validate_graph(graph: PlanGraph) -> None:
    """Raise :class:`GraphIntegrityError` when the graph cannot be executed."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for step in graph.steps:
        if step.id in seen and step.id not in duplicates:
            duplicates.append(step.id)
        seen.add(step.id)
    if duplicates:
        raise GraphIntegrityError(
            "Duplicate step identifiers: " + ", ".join(duplicates),
            step_ids=duplicates,
        )

    produced = producers(graph)
    for step in graph.steps:
        if step.status in SETTLED_STATUSES:
            # Settled steps never run again.
            continue
        dangling = sorted(
            token for token in step.preconditions if token not in seen and token not in produced
        )
        if dangling:
            raise GraphIntegrityError(
                f"Step {step.id} has preconditions referencing unknown steps: {', '.join(dangling)}",
                step_ids=[step.id],
            )

    cycle = _find_cycle(dependencies(graph), [step.id for step in graph.steps])
    if cycle:
        raise GraphIntegrityError(
            "Cyclic step dependencies: " + " -> ".join(cycle),
            step_ids=cycle,
        )


def _find_cycle(edges: dict[str, set[str]], order: Iterable[str]) -> list[str]:
    """Depth-first search returning the first dependency cycle found."""
    visiting: list[str] = []
    state: dict[str, int] = {}

    def _visit(node: str) -> list[str]:
        state[node] = 1
        visiting.append(node)
        for upstream in sorted(edges.get(node, ())):
            if state.get(upstream) == 1:
                start = visiting.index(upstream)
                return visiting[start:] + [upstream]
            if upstream not in state:
                found = _visit(upstream)
                if found:
                    return found
        visiting.pop()
        state[node] = 2
        return []

    for node in order:
        if node not in state:
            found = _visit(node)
            if found:
                return found
    return []


def preconditions_met(graph: PlanGraph, step: Step) -> bool:
    """Return True when every precondition of ``step`` is satisfied."""
    produced = producers(graph)
    for token in step.preconditions:
        referenced = graph.get(token)
        if referenced is not None:
            if referenced.status not in SETTLED_STATUSES:
                return False
            continue
        owners = [graph.get(owner) for owner in produced.get(token, ()) if owner != step.id]
        if not any(owner is not None and owner.status == StepStatus.DONE for owner in owners):
            return False
    return True


def eligible_steps(graph: PlanGraph) -> list[Step]:
    """Pending steps whose preconditions hold, in graph order."""
    return [
        step
        for step in graph.steps
        if step.status == StepStatus.PENDING and preconditions_met(graph, step)
    ]


def blocked_by(graph: PlanGraph, step: Step) -> list[str]:
    """Return the failed upstream step ids, direct or transitive, that keep ``step`` from running."""
    edges = dependencies(graph)
    failed: set[str] = set()
    seen: set[str] = set()
    pending = list(edges.get(step.id, ()))
    while pending:
        upstream = pending.pop()
        if upstream in seen:
            continue
        seen.add(upstream)
        found = graph.get(upstream)
        if found is None:
            continue
        if found.status == StepStatus.FAILED:
            failed.add(upstream)
        pending.extend(edges.get(upstream, ()))
    return sorted(failed)


__all__ = [
    "Action",
    "AskQuestion",
    "BuildCheckpoint",
    "CheckpointSpec",
    "FallbackActions",
    "FallbackPolicy",
    "LintCheckpoint",
    "NoOpCheckpoint",
    "PlanGraph",
    "RecordModel",
    "RetryPolicy",
    "SETTLED_STATUSES",
    "SmokeCheckpoint",
    "Step",
    "StepStatus",
    "TestCheckpoint",
    "blocked_by",
    "dependencies",
    "eligible_steps",
    "preconditions_met",
    "producers",
    "validate_graph",
]
