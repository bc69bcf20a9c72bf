from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from planmode.graph import Action, AskQuestion, Step, TestCheckpoint  # noqa: E402
from planmode.planner import PlanContext, PlannerDraft  # noqa: E402
from planmode.questions import Question, QuestionType  # noqa: E402
from planmode.tools.actions import ActionResult  # noqa: E402
from planmode.tools.checkpoints import CheckpointResult  # noqa: E402


@dataclass(slots=True)
class ScriptedPlanner:
    """Planner fake returning queued drafts; the last draft repeats."""

    drafts: list[PlannerDraft]
    contexts: list[PlanContext] = field(default_factory=list)

    def draft(self, context: PlanContext) -> PlannerDraft:
        self.contexts.append(context)
        if len(self.drafts) > 1:
            return self.drafts.pop(0)
        return self.drafts[0]


@dataclass(slots=True)
class ScriptedCheckpoints:
    """Checkpoint fake: queued pass/fail outcomes per step id, passing by default."""

    outcomes: dict[str, list[bool]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    def run(self, step: Step, spec) -> CheckpointResult:
        self.calls.append(step.id)
        queue = self.outcomes.get(step.id)
        passed = queue.pop(0) if queue else True
        return CheckpointResult(
            kind=spec.kind,
            status="passed" if passed else "failed",
            stderr="" if passed else "1 test failed",
        )


@dataclass(slots=True)
class RecordingExecutor:
    """Action executor fake that records dispatches and fails listed steps."""

    failing: set[str] = field(default_factory=set)
    dispatched: list[str] = field(default_factory=list)

    def execute(self, step: Step, actions: Sequence[Action]) -> ActionResult:
        self.dispatched.append(step.id)
        if step.id in self.failing:
            return ActionResult(ok=False, detail=f"{step.id} exploded")
        return ActionResult(ok=True)


def make_step(step_id: str, description: str = "", **kwargs) -> Step:
    return Step(id=step_id, description=description or f"Do {step_id}", **kwargs)


def backoff_draft(*, on_fail=None) -> PlannerDraft:
    """Three-step draft for 'add retry logic to the fetch client' with two questions."""
    steps = [
        make_step("step-1", "Read the fetch client", postconditions={"client-read"}),
        make_step(
            "step-2",
            "Wrap requests in a retry loop",
            preconditions={"client-read"},
            postconditions={"retry-added"},
            checkpoint=TestCheckpoint(),
            on_fail=on_fail or AskQuestion(),
        ),
        make_step("step-3", "Document the retry settings", preconditions={"step-2"}),
    ]
    questions = [
        Question.build("q1", "Which errors should be retried?", ["Timeouts only", "Timeouts and 5xx"], key="retry_on"),
        Question.build(
            "q2",
            "Which backoff strategy?",
            ["exponential backoff", "fixed delay", "no backoff"],
            key="backoff_strategy",
        ),
    ]
    return PlannerDraft(
        goal="add retry logic to the fetch client",
        steps=steps,
        questions=questions,
        checkpoints=["step-2: tests pass"],
        rollback=["git checkout -- src/fetch_client.py"],
    )


@pytest.fixture()
def draft() -> PlannerDraft:
    return backoff_draft()


@pytest.fixture()
def free_text_question() -> Question:
    return Question.build("notes", "Anything else?", type=QuestionType.FREE_TEXT)
