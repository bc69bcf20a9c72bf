from __future__ import annotations

import pytest

from conftest import RecordingExecutor, ScriptedCheckpoints, ScriptedPlanner, backoff_draft, make_step
from planmode.config import PlanModeConfig
from planmode.engine import EngineState, ExecutionEngine
from planmode.errors import CommandError
from planmode.mode import Mode
from planmode.planner import PlannerDraft
from planmode.session import PLAN_OFF_REASON, CommandName, PlanSession, parse_command


def _session(*drafts: PlannerDraft, outcomes=None, config: PlanModeConfig | None = None) -> PlanSession:
    engine = ExecutionEngine(
        ScriptedPlanner(list(drafts or [backoff_draft()])),
        RecordingExecutor(),
        ScriptedCheckpoints(outcomes or {}),
        config=config,
    )
    return PlanSession(engine, config=config)


def test_parse_command_variants() -> None:
    assert parse_command("hello") is None
    assert parse_command("/unknown thing") is None
    assert parse_command("/plan").goal is None
    assert parse_command("/plan add caching").goal == "add caching"

    rewind = parse_command("/plan --rewind step-2,step-3 use a queue")
    assert rewind.rewind == ("step-2", "step-3")
    assert rewind.goal == "use a queue"
    assert parse_command("/plan --rewind=step-1").rewind == ("step-1",)

    assert parse_command("/mode AUTO").mode is Mode.AUTO
    assert parse_command("/cancel").name is CommandName.CANCEL


@pytest.mark.parametrize("line", ["/mode", "/mode turbo", "/plan --rewind"])
def test_parse_command_rejects_bad_arguments(line: str) -> None:
    with pytest.raises(CommandError):
        parse_command(line)


def test_toggle_preserves_buffer_and_cycles_mode() -> None:
    session = _session()

    buffer = session.handle_key("shift+tab", "half-typed message")

    assert buffer == "half-typed message"
    assert session.mode_state.mode is Mode.PLAN
    assert session.badge() == "PLAN"
    assert session.handle_key("x", "abc") == "abc"
    assert session.mode_state.mode is Mode.PLAN


def test_preflight_starts_run_from_next_message() -> None:
    session = _session()
    session.handle_key("shift+tab")

    reply = session.submit("add retry logic to the fetch client")

    assert reply.snapshot.state is EngineState.AWAITING_ANSWERS
    assert any(message.startswith("Goal\nadd retry logic") for message in reply.messages)


def test_plain_text_passes_through_outside_plan_mode() -> None:
    session = _session()

    reply = session.submit("what does this function do?")

    assert not reply.handled
    assert reply.passthrough == "what does this function do?"
    assert session.engine.state is EngineState.IDLE


def test_bare_plan_takes_goal_from_last_message() -> None:
    session = _session()
    session.submit("add retry logic to the fetch client")

    reply = session.submit("/plan")

    assert session.mode_state.mode is Mode.PLAN
    assert reply.snapshot.state is EngineState.AWAITING_ANSWERS
    assert reply.snapshot.graph.goal == "add retry logic to the fetch client"
    assert session.engine._planner.contexts[-1].goal == "add retry logic to the fetch client"


def test_bare_plan_arms_preflight() -> None:
    session = _session()

    reply = session.submit("/plan")

    assert session.mode_state.mode is Mode.PLAN
    assert reply.messages[-1].endswith("Describe the goal in your next message.")
    assert session.submit("add retry logic").snapshot.state is EngineState.AWAITING_ANSWERS


def test_answers_route_to_engine_and_render_ledger() -> None:
    session = _session()
    session.submit("/plan add retry logic to the fetch client")

    reply = session.submit("1\n1")

    assert reply.snapshot.state is EngineState.FINISHED
    assert any(message.startswith("Decisions\nretry_on: Timeouts only") for message in reply.messages)
    assert reply.messages[-1].startswith("Finished")


def test_leaving_plan_mode_cancels_active_run() -> None:
    session = _session()
    session.submit("/plan add retry logic to the fetch client")

    reply = session.submit("/mode normal")

    assert session.engine.state is EngineState.ABORTED
    assert session.engine.last_snapshot.error == PLAN_OFF_REASON
    assert reply.messages[-1] == "normal mode (shift+tab to cycle)"


def test_switching_to_auto_mode_cancels_active_run() -> None:
    session = _session()
    session.submit("/plan add retry logic to the fetch client")

    session.submit("/mode auto")

    assert session.engine.state is EngineState.ABORTED
    assert session.engine.last_snapshot.error == PLAN_OFF_REASON
    assert session.engine.last_snapshot.round is None
    assert session.engine.ledger.decisions == ()


def test_cycling_past_plan_cancels_active_run() -> None:
    session = _session()
    session.handle_key("shift+tab")
    session.submit("add retry logic to the fetch client")

    session.handle_key("shift+tab")

    assert session.mode_state.mode is Mode.AUTO
    assert session.engine.state is EngineState.ABORTED


def test_plan_while_active_replans_with_rewind() -> None:
    session = _session(backoff_draft(), backoff_draft())
    session.submit("/plan add retry logic to the fetch client")

    reply = session.submit("/plan --rewind step-1")

    assert reply.snapshot.graph.version == 2
    assert reply.snapshot.round.round_number == 2


def test_rewind_without_active_run_is_rejected() -> None:
    reply = _session().submit("/plan --rewind step-1")

    assert reply.messages == ["No plan run is active to rewind."]


def test_round_limit_commands() -> None:
    config = PlanModeConfig.model_validate({"rounds": {"max_rounds": 1}})
    session = _session(outcomes={"step-2": [False]}, config=config)
    session.submit("/plan add retry logic to the fetch client")
    paused = session.submit("1\n1")
    assert paused.snapshot.state is EngineState.ROUND_LIMIT

    waiting = session.submit("please continue")
    assert "round limit" in waiting.messages[0]

    reply = session.submit("/continue")
    assert reply.snapshot.state is EngineState.FINISHED


def test_abort_and_cancel_without_run() -> None:
    session = _session()

    assert session.submit("/cancel").messages == ["No plan run is active."]
    assert session.submit("/abort").messages == ["No plan run is active."]
    assert session.submit("/continue").messages[0].startswith("The run is not waiting")


def test_fatal_abort_returns_to_normal_mode() -> None:
    broken = PlannerDraft(goal="g", steps=[make_step("a", preconditions={"ghost"})])
    session = _session(broken)

    reply = session.submit("/plan add retry logic")

    assert reply.snapshot.state is EngineState.ABORTED
    assert session.mode_state.mode is Mode.NORMAL
    assert reply.messages[-1].startswith("Plan run aborted: Plan graph rejected")


def test_prepare_messages_injects_instructions_in_plan_mode() -> None:
    session = _session()
    messages = [{"role": "user", "content": "hi"}]

    assert session.prepare_messages(messages) == messages
    session.submit("/mode plan")
    assert [message["role"] for message in session.prepare_messages(messages)] == ["developer", "user"]


def test_close_cancels_run_and_resets_mode() -> None:
    session = _session()
    session.submit("/plan add retry logic to the fetch client")

    state = session.close()

    assert state.mode is Mode.NORMAL
    assert session.engine.state is EngineState.ABORTED
