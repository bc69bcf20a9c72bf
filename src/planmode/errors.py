"""Error taxonomy raised by the plan-mode engine and its collaborators."""

from __future__ import annotations

from typing import Sequence


class PlanModeError(RuntimeError):
    """Base error for plan-mode failures."""


class ConfigError(PlanModeError):
    """Raised when the plan-mode configuration cannot be loaded or validated."""


class AnswerValidationError(PlanModeError):
    """Raised when raw user input does not answer a question.

    The round that produced the question stays open; callers re-prompt.
    ``needs_free_text`` is set when the user picked the free-text option but
    did not supply the text yet.
    """

    def __init__(
        self,
        message: str,
        *,
        question_id: str | None = None,
        needs_free_text: bool = False,
    ) -> None:
        super().__init__(message)
        self.question_id = question_id
        self.needs_free_text = needs_free_text


class RoundConstructionError(PlanModeError):
    """Raised when a round would hold fewer than one or more than five questions."""


class RoundLimitExceeded(PlanModeError):
    """Raised when a run tries to open more rounds than the ceiling allows."""

    def __init__(self, message: str, *, limit: int, reason: str | None = None) -> None:
        super().__init__(message)
        self.limit = limit
        self.reason = reason


class GraphIntegrityError(PlanModeError):
    """Raised for cyclic, duplicate, or dangling step references."""

    def __init__(self, message: str, *, step_ids: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.step_ids = tuple(step_ids)


class StepExecutionFailure(PlanModeError):
    """Raised when a step's actions or checkpoint fail."""

    def __init__(self, step_id: str, reason: str, *, output: str = "") -> None:
        super().__init__(f"Step {step_id} failed: {reason}")
        self.step_id = step_id
        self.reason = reason
        self.output = output


class ContextUnavailable(PlanModeError):
    """Raised when the scanning stage cannot gather context for a draft."""


class InvalidTransition(PlanModeError):
    """Raised when an engine operation is invoked from the wrong state."""


class CommandError(PlanModeError):
    """Raised for malformed slash commands."""


__all__ = [
    "AnswerValidationError",
    "CommandError",
    "ConfigError",
    "ContextUnavailable",
    "GraphIntegrityError",
    "InvalidTransition",
    "PlanModeError",
    "RoundConstructionError",
    "RoundLimitExceeded",
    "StepExecutionFailure",
]
