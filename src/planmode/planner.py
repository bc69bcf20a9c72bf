"""Planner collaborators: gather repository context and draft plan graphs.

The engine only depends on the narrow :class:`Planner` protocol. How plan text
or question wording is produced stays behind it; :class:`StructuredPlanner`
delegates to an :class:`~planmode.models.llm_client.LLMClient` and validates
the structured draft it returns.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from pydantic import Field

from .errors import ContextUnavailable
from .graph import PlanGraph, RecordModel, Step
from .ledger import Decision
from .models.llm_client import LLMClient, LLMRequest
from .prompts import PLAN_MODE_INSTRUCTIONS
from .questions import MAX_QUESTIONS_PER_ROUND, Question, parse_decision_points

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlanContext:
    """Everything the planner sees when drafting or re-drafting."""

    goal: str
    repo_root: Path | None = None
    files: tuple[str, ...] = ()
    decisions: tuple[Decision, ...] = ()
    live_graph: PlanGraph | None = None
    guidance: str | None = None

    @property
    def is_replan(self) -> bool:
        return self.live_graph is not None

    def with_updates(self, **changes: object) -> "PlanContext":
        return dataclasses.replace(self, **changes)


class ContextProvider(Protocol):
    """Scans the workspace before drafting; raises ContextUnavailable on failure."""

    def gather(self, goal: str) -> PlanContext: ...


class WorkspaceContextProvider:
    """List the visible top-level entries of a repository as planning context."""

    def __init__(self, root: Path, *, limit: int = 50) -> None:
        self._root = Path(root)
        self._limit = limit

    def gather(self, goal: str) -> PlanContext:
        if not self._root.is_dir():
            raise ContextUnavailable(f"Repository root not found: {self._root}")
        try:
            entries = sorted(path.name for path in self._root.iterdir() if not path.name.startswith("."))
        except OSError as error:
            raise ContextUnavailable(f"Unable to scan {self._root}: {error}") from error
        LOGGER.debug("Scanned %d entries under %s", len(entries), self._root)
        return PlanContext(goal=goal, repo_root=self._root, files=tuple(entries[: self._limit]))


class PlannerDraft(RecordModel):
    """Structured output of one drafting call."""

    goal: str
    steps: List[Step] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list, max_length=MAX_QUESTIONS_PER_ROUND)
    checkpoints: List[str] = Field(default_factory=list)
    rollback: List[str] = Field(default_factory=list)
    plan_text: Optional[str] = None

    def graph(self, *, version: int = 1) -> PlanGraph:
        return PlanGraph(
            goal=self.goal,
            steps=[step.model_copy(deep=True) for step in self.steps],
            version=version,
            checkpoints=list(self.checkpoints),
            rollback=list(self.rollback),
        )

    def round_questions(self) -> list[Question]:
        """Structured questions, or those parsed from the plan text's decision points."""
        if self.questions:
            return [question.model_copy(deep=True) for question in self.questions]
        if self.plan_text:
            return parse_decision_points(self.plan_text) or []
        return []


class Planner(Protocol):
    """Drafts a plan graph plus the first question round for a context.

    A planner may also implement ``interrupt(context, step, reason)`` returning
    questions to ask when a step fails; otherwise the engine asks its own
    recovery question.
    """

    def draft(self, context: PlanContext) -> PlannerDraft: ...


class StructuredPlanner:
    """Planner backed by an LLM client returning :class:`PlannerDraft` JSON."""

    def __init__(self, client: LLMClient, *, system_prompt: str = PLAN_MODE_INSTRUCTIONS) -> None:
        self._client = client
        self._system_prompt = system_prompt

    def draft(self, context: PlanContext) -> PlannerDraft:
        request = LLMRequest(
            prompt=build_planner_prompt(context),
            response_model=PlannerDraft,
            system_prompt=self._system_prompt,
            metadata={
                "phase": "replan" if context.is_replan else "draft",
                "goal": context.goal,
                "guidance": context.guidance or "",
            },
        )
        draft = self._client.invoke(request)
        LOGGER.info(
            "Planner drafted %d step(s) and %d question(s) for '%s'",
            len(draft.steps),
            len(draft.questions),
            context.goal,
        )
        return draft


def build_planner_prompt(context: PlanContext) -> str:
    """Render the user prompt for a drafting call."""
    lines = [f"Goal: {context.goal}"]
    if context.files:
        lines.append("")
        lines.append("Repository entries:")
        lines.extend(f"- {name}" for name in context.files)
    if context.decisions:
        lines.append("")
        lines.append("Decisions so far:")
        lines.extend(f"- {decision.key}: {decision.value}" for decision in context.decisions)
    if context.live_graph is not None:
        lines.append("")
        lines.append(f"Current plan (version {context.live_graph.version}):")
        lines.extend(_describe_steps(context.live_graph.steps))
        lines.append("Keep the ids of steps you retain; finished steps are not re-run.")
    if context.guidance:
        lines.append("")
        lines.append(f"Guidance: {context.guidance}")
    return "\n".join(lines)


def _describe_steps(steps: Sequence[Step]) -> list[str]:
    return [
        f"{index}. [{step.id}] {step.description} ({step.status.value.lower()})"
        for index, step in enumerate(steps, start=1)
    ]


__all__ = [
    "ContextProvider",
    "PlanContext",
    "Planner",
    "PlannerDraft",
    "StructuredPlanner",
    "WorkspaceContextProvider",
    "build_planner_prompt",
]
