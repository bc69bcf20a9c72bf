"""Plain-text renderings of plans, question rounds, ledgers, and run summaries."""

from __future__ import annotations

from typing import Sequence

from .engine import EngineSnapshot, EngineState, FinishSummary
from .graph import PlanGraph, Step, StepStatus
from .ledger import LedgerSnapshot
from .questions import MAX_ROUNDS, Question, Round

_STATUS_MARKERS = {
    StepStatus.PENDING: "[ ]",
    StepStatus.IN_PROGRESS: "[>]",
    StepStatus.DONE: "[x]",
    StepStatus.FAILED: "[!]",
    StepStatus.SKIPPED: "[-]",
}


def render_plan_block(graph: PlanGraph, round_: Round | None = None, *, max_rounds: int = MAX_ROUNDS) -> str:
    """Render Goal, Plan, Decision points, Checkpoints, and Rollback sections."""
    sections = [
        "Goal\n" + (graph.goal or "(no goal)"),
        "Plan\n" + render_steps(graph.steps),
    ]
    if round_ is not None:
        sections.append(render_round(round_, max_rounds=max_rounds))
    sections.append("Checkpoints\n" + _bullets(graph.checkpoints))
    sections.append("Rollback\n" + _bullets(graph.rollback))
    return "\n\n".join(sections)


def render_steps(steps: Sequence[Step]) -> str:
    if not steps:
        return "(no steps)"
    lines = []
    for index, step in enumerate(steps, start=1):
        line = f"{index}. {_STATUS_MARKERS[step.status]} {step.description}"
        if step.note:
            line += f" ({step.note})"
        lines.append(line)
    return "\n".join(lines)


def render_round(round_: Round, *, max_rounds: int = MAX_ROUNDS) -> str:
    """Render a round in the same layout the decision-points parser reads."""
    lines = [f"Decision points (round {round_.round_number} of {max_rounds})"]
    if round_.reason:
        lines.append(round_.reason)
    for number, question in enumerate(round_.questions, start=1):
        lines.extend(_question_lines(number, question))
    lines.append("")
    lines.append(answer_hint(round_))
    return "\n".join(lines)


def _question_lines(number: int, question: Question) -> list[str]:
    label = question.label or f"Question {number}"
    lines = [f"{number}) **{label}** ({question.type.value}): {question.prompt}"]
    for index, option in enumerate(question.options, start=1):
        lines.append(f"  {index}. {option.title}")
        if option.description:
            lines.append(f"     {option.description}")
    return lines


def answer_hint(round_: Round) -> str:
    count = len(round_.questions)
    noun = "line" if count == 1 else "lines"
    return f"Reply with {count} {noun}, one per question. Non-numeric text is a free-text answer."


def render_ledger(snapshot: LedgerSnapshot) -> str:
    return snapshot.render()


def render_finish_summary(summary: FinishSummary) -> str:
    lines = ["Finished", f"Goal: {summary.goal}", "", "Completed"]
    lines.extend(summary.completed or ("(none)",))
    if summary.checkpoints:
        lines.append("")
        lines.append("Checkpoints")
        lines.extend(summary.checkpoints)
    if summary.failed:
        lines.append("")
        lines.append("Failed")
        lines.extend(f"{step_id}: {reason}" for step_id, reason in summary.failed)
    if summary.skipped:
        lines.append("")
        lines.append("Skipped")
        lines.extend(f"{step_id}: {reason}" for step_id, reason in summary.skipped)
    return "\n".join(lines)


def render_snapshot(snapshot: EngineSnapshot, *, max_rounds: int = MAX_ROUNDS) -> str | None:
    """Text to show the user for a transition, or ``None`` when there is nothing to say."""
    if snapshot.state == EngineState.AWAITING_ANSWERS:
        if snapshot.error:
            return f"Invalid answer: {snapshot.error}"
        if snapshot.graph is not None and snapshot.round is not None and snapshot.round.round_number == 1:
            return render_plan_block(snapshot.graph, snapshot.round, max_rounds=max_rounds)
        if snapshot.round is not None:
            return render_round(snapshot.round, max_rounds=max_rounds)
    if snapshot.state == EngineState.PATCHING and snapshot.ledger_update is not None:
        return render_ledger(snapshot.ledger_update)
    if snapshot.state == EngineState.ROUND_LIMIT:
        return (
            f"Round limit reached: {snapshot.error}\n"
            "Use /continue to keep going best-effort or /abort to stop."
        )
    if snapshot.state == EngineState.FINISHED and snapshot.summary is not None:
        return render_finish_summary(snapshot.summary)
    if snapshot.state == EngineState.ABORTED:
        return f"Plan run aborted: {snapshot.error or 'no reason given'}"
    return None


def _bullets(items: Sequence[str]) -> str:
    if not items:
        return "(none)"
    return "\n".join(f"- {item}" for item in items)


__all__ = [
    "answer_hint",
    "render_finish_summary",
    "render_ledger",
    "render_plan_block",
    "render_round",
    "render_snapshot",
    "render_steps",
]
