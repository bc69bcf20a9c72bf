"""Chat-session front end: slash commands, the mode toggle, and preflight routing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence

from .config import PlanModeConfig
from .engine import EngineSnapshot, EngineState, ExecutionEngine
from .errors import CommandError, InvalidTransition
from .mode import Mode, ModeController, ModeState, badge, status_line
from .prompts import inject_plan_mode_instructions
from .render import render_snapshot

LOGGER = logging.getLogger(__name__)

PLAN_OFF_REASON = "Plan mode turned off."


class CommandName(str, Enum):
    PLAN = "plan"
    MODE = "mode"
    CANCEL = "cancel"
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass(frozen=True, slots=True)
class Command:
    """Parsed slash command."""

    name: CommandName
    goal: str | None = None
    rewind: tuple[str, ...] = ()
    mode: Mode | None = None


def parse_command(line: str) -> Command | None:
    """Parse a slash command; plain text and unknown commands return ``None``.

    Raises :class:`CommandError` for a known command with bad arguments.
    """
    stripped = line.strip()
    if not stripped.startswith("/"):
        return None
    head, _, rest = stripped[1:].partition(" ")
    name = head.lower()
    rest = rest.strip()

    if name == CommandName.PLAN.value:
        if rest.startswith("--rewind"):
            arguments = rest[len("--rewind") :].lstrip("=").strip()
            ids, _, goal = arguments.partition(" ")
            rewind = tuple(item.strip() for item in ids.split(",") if item.strip())
            if not rewind:
                raise CommandError("Usage: /plan --rewind <step-id>[,<step-id>]")
            return Command(CommandName.PLAN, goal=goal.strip() or None, rewind=rewind)
        return Command(CommandName.PLAN, goal=rest or None)

    if name == CommandName.MODE.value:
        if not rest:
            raise CommandError("Usage: /mode {plan|normal|auto}")
        try:
            mode = Mode.parse(rest)
        except ValueError as error:
            raise CommandError(str(error)) from error
        return Command(CommandName.MODE, mode=mode)

    if name in (CommandName.CANCEL.value, CommandName.CONTINUE.value, CommandName.ABORT.value):
        return Command(CommandName(name))
    return None


@dataclass(slots=True)
class SessionReply:
    """What the session produced for one submission."""

    handled: bool
    messages: List[str] = field(default_factory=list)
    snapshot: EngineSnapshot | None = None
    passthrough: str | None = None


class PlanSession:
    """Owns the mode controller and routes user input to the engine."""

    def __init__(
        self,
        engine: ExecutionEngine,
        *,
        config: PlanModeConfig | None = None,
        modes: ModeController | None = None,
    ) -> None:
        self._config = config or PlanModeConfig()
        self._engine = engine
        self._modes = modes or ModeController.from_default(
            self._config.session.default_mode,
            auto_enabled=self._config.session.auto_mode,
        )
        self._outbox: list[str] = []
        self._last_message: str | None = None
        engine.add_listener(self._on_snapshot)

    @property
    def engine(self) -> ExecutionEngine:
        return self._engine

    @property
    def mode_state(self) -> ModeState:
        return self._modes.state

    @property
    def modes(self) -> ModeController:
        return self._modes

    def status_line(self) -> str:
        return status_line(self._modes.state, self._config.session.toggle_key)

    def badge(self) -> str | None:
        return badge(self._modes.state)

    def handle_key(self, key: str, buffer: str = "") -> str:
        """Handle a key press ahead of submission; the input buffer is returned untouched."""
        if key.strip().lower() == self._config.session.toggle_key.lower():
            self._modes.cycle()
            self._after_mode_change()
        return buffer

    def submit(self, line: str) -> SessionReply:
        try:
            command = parse_command(line)
        except CommandError as error:
            return SessionReply(handled=True, messages=[str(error)])
        if command is not None:
            return self._run_command(command)

        state = self._engine.state
        if state == EngineState.AWAITING_ANSWERS:
            return self._reply(self._engine.submit_answers(line))
        if state == EngineState.ROUND_LIMIT:
            return SessionReply(
                handled=True,
                messages=["The run is paused at the round limit. Use /continue or /abort."],
            )
        if self._modes.mode == Mode.PLAN and line.strip() and self._modes.consume_preflight():
            return self._reply(self._engine.start(line))
        if line.strip():
            self._last_message = line.strip()
        return SessionReply(handled=False, passthrough=line)

    def prepare_messages(self, messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Inject plan-mode instructions into an outgoing message list."""
        return inject_plan_mode_instructions(messages, self._modes.mode)

    def close(self) -> ModeState:
        """End the session: cancel any active run and return to the default mode."""
        if self._engine.is_active:
            self._engine.cancel("Session ended.")
        self._outbox.clear()
        self._last_message = None
        return self._modes.reset()

    # ------------------------------------------------------------------ commands

    def _run_command(self, command: Command) -> SessionReply:
        try:
            if command.name == CommandName.PLAN:
                return self._plan(command)
            if command.name == CommandName.MODE:
                return self._set_mode(command.mode or Mode.NORMAL)
            if command.name == CommandName.CANCEL:
                if not self._engine.is_active:
                    return SessionReply(handled=True, messages=["No plan run is active."])
                return self._reply(self._engine.cancel())
            if command.name == CommandName.CONTINUE:
                return self._reply(self._engine.resolve_round_limit(True))
            if self._engine.state == EngineState.ROUND_LIMIT:
                return self._reply(self._engine.resolve_round_limit(False))
            if self._engine.is_active:
                return self._reply(self._engine.cancel("Aborted by user."))
            return SessionReply(handled=True, messages=["No plan run is active."])
        except InvalidTransition as error:
            return SessionReply(handled=True, messages=[str(error)])

    def _plan(self, command: Command) -> SessionReply:
        if self._engine.is_active:
            return self._reply(self._engine.replan(command.goal, command.rewind))
        if command.rewind:
            return SessionReply(handled=True, messages=["No plan run is active to rewind."])
        if self._modes.mode != Mode.PLAN:
            self._modes.set_mode(Mode.PLAN)
        goal = command.goal or self._last_message
        if goal is None:
            self._modes.arm_preflight()
            return SessionReply(
                handled=True,
                messages=[f"{self.status_line()}. Describe the goal in your next message."],
            )
        if command.goal is None:
            LOGGER.info("Deriving the plan goal from the last message")
        self._last_message = None
        self._modes.consume_preflight()
        return self._reply(self._engine.start(goal))

    def _set_mode(self, mode: Mode) -> SessionReply:
        try:
            self._modes.set_mode(mode)
        except ValueError as error:
            return SessionReply(handled=True, messages=[str(error)])
        self._after_mode_change()
        return self._reply(None, extra=[self.status_line()])

    def _after_mode_change(self) -> None:
        if self._modes.mode != Mode.PLAN and self._engine.is_active:
            LOGGER.info("Leaving plan mode for %s cancels the active run", self._modes.mode.value)
            self._engine.cancel(PLAN_OFF_REASON)

    # ------------------------------------------------------------------ output

    def _on_snapshot(self, snapshot: EngineSnapshot) -> None:
        if snapshot.state == EngineState.ABORTED and snapshot.fatal and self._modes.mode != Mode.NORMAL:
            self._modes.set_mode(Mode.NORMAL)
        text = render_snapshot(snapshot, max_rounds=self._config.rounds.max_rounds)
        if text:
            self._outbox.append(text)

    def _reply(self, snapshot: EngineSnapshot | None, *, extra: Sequence[str] = ()) -> SessionReply:
        messages = [*self._outbox, *extra]
        self._outbox.clear()
        return SessionReply(handled=True, messages=messages, snapshot=snapshot)


__all__ = [
    "Command",
    "CommandName",
    "PLAN_OFF_REASON",
    "PlanSession",
    "SessionReply",
    "parse_command",
]
