"""Deterministic planner client used for demos and tests."""

from __future__ import annotations

import json
from typing import Any, Dict

from ..graph import Action, RetryPolicy, Step, TestCheckpoint
from ..ledger import DeltaKind
from ..questions import Option, Question, StepPatch
from .llm_client import LLMClient

__all__ = ["OfflineLLMClient"]


class OfflineLLMClient(LLMClient):
    """Local stub that synthesizes a three-step draft without network access."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        metadata = payload.get("metadata") or {}
        phase = str(metadata.get("phase") or "draft")
        goal = str(metadata.get("goal") or "").strip() or "the requested change"
        guidance = str(metadata.get("guidance") or "").strip()
        return json.dumps(self._build_draft(goal, guidance, ask=phase == "draft"))

    def _build_draft(self, goal: str, guidance: str, *, ask: bool) -> Dict[str, Any]:
        implement = f"Implement: {goal}"
        if guidance:
            implement = f"{implement} ({guidance})"
        steps = [
            Step(
                id="step-1",
                description=f"Survey the code paths involved in: {goal}",
                actions=[Action(kind="inspect", description="Read the relevant modules and tests")],
                postconditions={"context-gathered"},
            ),
            Step(
                id="step-2",
                description=implement,
                actions=[Action(kind="edit", description=implement)],
                preconditions={"context-gathered"},
                postconditions={"change-applied"},
            ),
            Step(
                id="step-3",
                description="Verify the change with the test suite",
                preconditions={"change-applied"},
                checkpoint=TestCheckpoint(),
                on_fail=RetryPolicy(attempts=1),
            ),
        ]
        questions = []
        if ask:
            questions = [
                Question.build(
                    "q1",
                    "How broad should the change be?",
                    ["Minimal change", "Refactor nearby code as needed"],
                    key="scope",
                    label="Scope",
                ),
                Question.build(
                    "q2",
                    "How should the result be verified?",
                    [
                        "Run the test suite",
                        Option(
                            title="Skip automated verification",
                            patches=[
                                StepPatch(
                                    kind=DeltaKind.STEP_REMOVED,
                                    step_id="step-3",
                                    description="Verify the change with the test suite",
                                )
                            ],
                        ),
                    ],
                    key="verification",
                    label="Verification",
                ),
            ]
        return {
            "goal": goal,
            "steps": [step.model_dump(mode="json") for step in steps],
            "questions": [question.model_dump(mode="json") for question in questions],
            "checkpoints": ["step-3: the test suite passes"],
            "rollback": ["Revert the working tree changes made by step-2."],
            "plan_text": None,
        }
