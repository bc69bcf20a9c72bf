from __future__ import annotations

from conftest import make_step
from planmode.engine import EngineSnapshot, EngineState, FinishSummary, recovery_question
from planmode.graph import PlanGraph, StepStatus
from planmode.mode import Mode
from planmode.prompts import PLAN_MODE_INSTRUCTIONS, inject_plan_mode_instructions
from planmode.questions import SENTINEL_TITLE, RoundManager, parse_decision_points
from planmode.render import render_finish_summary, render_plan_block, render_round, render_snapshot


def _graph() -> PlanGraph:
    return PlanGraph(
        goal="add retry logic to the fetch client",
        steps=[
            make_step("step-1", "Read the fetch client", status=StepStatus.DONE),
            make_step("step-2", "Wrap requests in a retry loop", status=StepStatus.FAILED, note="tests failed"),
            make_step("step-3", "Document the retry settings"),
        ],
        checkpoints=["step-2: tests pass"],
    )


def test_plan_block_has_sections_in_order(draft) -> None:
    round_ = RoundManager().start_round(draft.round_questions())

    text = render_plan_block(_graph(), round_)

    headers = ["Goal", "Plan", "Decision points (round 1 of 5)", "Checkpoints", "Rollback"]
    positions = [text.index(header) for header in headers]
    assert positions == sorted(positions)
    assert "2. [!] Wrap requests in a retry loop (tests failed)" in text
    assert "Rollback\n(none)" in text


def test_rendered_round_parses_back_to_the_same_questions(draft) -> None:
    round_ = RoundManager().start_round(draft.round_questions())

    parsed = parse_decision_points(render_round(round_))

    assert parsed is not None
    assert [question.prompt for question in parsed] == [question.prompt for question in round_.questions]
    assert [[option.title for option in question.options] for question in parsed] == [
        [option.title for option in question.options] for question in round_.questions
    ]


def test_recovery_round_renders_options_and_hint() -> None:
    step = make_step("step-2", "Wrap requests")
    round_ = RoundManager().start_round([recovery_question(step, "tests failed")], reason="Step step-2 failed")

    text = render_round(round_, max_rounds=3)

    assert text.splitlines()[:2] == ["Decision points (round 1 of 3)", "Step step-2 failed"]
    assert f"  4. {SENTINEL_TITLE}" in text
    assert text.endswith("Reply with 1 line, one per question. Non-numeric text is a free-text answer.")


def test_finish_summary_lists_completed_failed_and_skipped() -> None:
    summary = FinishSummary(
        goal="g",
        completed=("1. Read",),
        checkpoints=("step-2 test: failed (boom)",),
        failed=(("step-2", "boom"),),
        skipped=(("step-3", "Blocked by failed step(s): step-2"),),
    )

    text = render_finish_summary(summary)

    assert text.splitlines()[:5] == ["Finished", "Goal: g", "", "Completed", "1. Read"]
    assert "Failed\nstep-2: boom" in text
    assert text.endswith("Skipped\nstep-3: Blocked by failed step(s): step-2")


def test_render_snapshot_messages() -> None:
    assert render_snapshot(EngineSnapshot(state=EngineState.EXECUTING)) is None
    assert render_snapshot(EngineSnapshot(state=EngineState.ABORTED, error="stop")) == "Plan run aborted: stop"
    invalid = EngineSnapshot(state=EngineState.AWAITING_ANSWERS, error="Question 1: bad")
    assert render_snapshot(invalid) == "Invalid answer: Question 1: bad"
    limit = render_snapshot(EngineSnapshot(state=EngineState.ROUND_LIMIT, error="no rounds left"))
    assert "/continue" in limit and "/abort" in limit


def test_instructions_injected_only_in_plan_mode() -> None:
    messages = [
        {"role": "developer", "content": "house rules"},
        {"role": "user", "content": "hello"},
    ]

    planned = inject_plan_mode_instructions(messages, Mode.PLAN)
    plain = inject_plan_mode_instructions(messages, Mode.NORMAL)

    assert [message["role"] for message in planned] == ["developer", "developer", "user"]
    assert planned[1]["content"][0]["text"] == PLAN_MODE_INSTRUCTIONS
    assert plain == messages
    assert len(messages) == 2


def test_instructions_mention_sentinel_and_limits() -> None:
    assert SENTINEL_TITLE in PLAN_MODE_INSTRUCTIONS
    assert "Decision points" in PLAN_MODE_INSTRUCTIONS
    assert "at most 5 question rounds" in PLAN_MODE_INSTRUCTIONS
