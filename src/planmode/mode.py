"""Session interaction mode and the controller that cycles it."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict

LOGGER = logging.getLogger(__name__)

DEFAULT_TOGGLE_KEY = "shift+tab"
PLAN_BADGE = "PLAN"


class Mode(str, Enum):
    """Interaction modes a session can be in."""

    NORMAL = "normal"
    PLAN = "plan"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: "Mode | str | None", *, default: "Mode | None" = None) -> "Mode":
        if isinstance(value, Mode):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        if default is not None:
            return default
        valid = ", ".join(item.value for item in cls)
        raise ValueError(f"Unknown mode '{value}'. Expected one of: {valid}")


class ModeState(BaseModel):
    """Session-scoped mode plus where it came from."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: Mode = Mode.NORMAL
    default_mode: Mode = Mode.NORMAL
    explicit: bool = False
    auto_enabled: bool = True


class ModeController:
    """Owns the session's :class:`ModeState`.

    ``cycle`` and ``set_mode`` are the only mutators. Neither touches the
    user's input buffer; toggling is a pure state transition. Entering plan mode
    from another mode arms the engine's preflight, which the session consumes
    on the next message.
    """

    def __init__(self, default_mode: Mode | str | None = None, *, auto_enabled: bool = True) -> None:
        default = Mode.parse(default_mode, default=Mode.NORMAL)
        if default == Mode.AUTO and not auto_enabled:
            LOGGER.warning("Auto mode is disabled; starting in normal mode.")
            default = Mode.NORMAL
        self._state = ModeState(mode=default, default_mode=default, auto_enabled=auto_enabled)
        self._preflight_armed = default == Mode.PLAN

    @classmethod
    def from_default(cls, default_mode: Mode | str | None, *, auto_enabled: bool = True) -> "ModeController":
        """Create the controller at session start from the per-repo default."""
        return cls(default_mode, auto_enabled=auto_enabled)

    @property
    def state(self) -> ModeState:
        return self._state

    @property
    def mode(self) -> Mode:
        return self._state.mode

    @property
    def auto_enabled(self) -> bool:
        return self._state.auto_enabled

    @property
    def preflight_armed(self) -> bool:
        return self._preflight_armed

    def cycle(self) -> ModeState:
        """Advance Normal -> Plan -> Auto -> Normal (Normal <-> Plan without auto)."""
        order = [Mode.NORMAL, Mode.PLAN]
        if self.auto_enabled:
            order.append(Mode.AUTO)
        current = self._state.mode if self._state.mode in order else Mode.NORMAL
        target = order[(order.index(current) + 1) % len(order)]
        return self._transition(target)

    def set_mode(self, target: Mode | str) -> ModeState:
        """Set the mode directly; repeating the same target is a no-op."""
        mode = Mode.parse(target)
        if mode == Mode.AUTO and not self.auto_enabled:
            raise ValueError("Auto mode is not enabled for this session.")
        if mode == self._state.mode:
            if not self._state.explicit:
                self._state = self._state.model_copy(update={"explicit": True})
            return self._state
        return self._transition(mode)

    def arm_preflight(self) -> None:
        """Re-arm preflight while already in plan mode (a bare ``/plan``)."""
        if self._state.mode == Mode.PLAN:
            self._preflight_armed = True

    def consume_preflight(self) -> bool:
        """Return whether preflight was armed, disarming it."""
        armed = self._preflight_armed
        self._preflight_armed = False
        return armed

    def reset(self) -> ModeState:
        """Return to the session default; used at session end."""
        self._state = ModeState(
            mode=self._state.default_mode,
            default_mode=self._state.default_mode,
            auto_enabled=self._state.auto_enabled,
        )
        self._preflight_armed = False
        return self._state

    def _transition(self, target: Mode) -> ModeState:
        previous = self._state.mode
        self._state = self._state.model_copy(update={"mode": target, "explicit": True})
        if target == Mode.PLAN and previous != Mode.PLAN:
            self._preflight_armed = True
        elif target != Mode.PLAN:
            self._preflight_armed = False
        LOGGER.info("Mode changed: %s -> %s", previous.value, target.value)
        return self._state


def status_line(state: ModeState, toggle_key: str = DEFAULT_TOGGLE_KEY) -> str:
    """Persistent status string for the mode indicator."""
    return f"{state.mode.value} mode ({toggle_key} to cycle)"


def badge(state: ModeState) -> str | None:
    """Short badge token shown only while plan mode is active."""
    return PLAN_BADGE if state.mode == Mode.PLAN else None


__all__ = [
    "DEFAULT_TOGGLE_KEY",
    "Mode",
    "ModeController",
    "ModeState",
    "PLAN_BADGE",
    "badge",
    "status_line",
]
