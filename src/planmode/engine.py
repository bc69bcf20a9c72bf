"""State machine that drives one plan-mode run from draft to finish.

A run moves through ``SCANNING -> DRAFTING -> AWAITING_ANSWERS -> PATCHING ->
EXECUTING`` and may loop back to ``AWAITING_ANSWERS`` whenever a step failure
needs a decision. The only suspension points are ``AWAITING_ANSWERS`` and
``ROUND_LIMIT``; every other state is left before the public call returns.

All public operations take the engine lock, so transitions are serialised even
when actions are dispatched on a worker pool. A cancel issued while the loop
runs only sets the cancel event, which the loop checks after each batch. Each
transition produces an :class:`EngineSnapshot` that is handed to listeners and
appended to the run log.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Sequence

from .config import PlanModeConfig, RoundLimitPolicy
from .errors import (
    AnswerValidationError,
    ContextUnavailable,
    GraphIntegrityError,
    InvalidTransition,
    RoundConstructionError,
    RoundLimitExceeded,
    StepExecutionFailure,
)
from .graph import (
    PROTECTED_STATUSES,
    Action,
    FallbackActions,
    PlanGraph,
    RetryPolicy,
    Step,
    StepStatus,
    blocked_by,
    eligible_steps,
    validate_graph,
)
from .ledger import DecisionLedger, DeltaKind, LedgerSnapshot, PlanDelta
from .models.llm_client import LLMClientError
from .planner import ContextProvider, PlanContext, Planner, PlannerDraft
from .questions import (
    Answer,
    AnswerKind,
    Question,
    Round,
    RoundManager,
    StepPatch,
    parse_answers,
    resolve_round,
)
from .replan import reconcile
from .tools.actions import ActionExecutor, ActionResult
from .tools.checkpoints import CheckpointRunner
from .tools.run_logs import RunLog

LOGGER = logging.getLogger(__name__)

RECOVERY_QUESTION_ID = "recovery"
RECOVERY_OPTIONS = ("Retry the step", "Change approach", "Abort the run")
RETRY_CHOICE, CHANGE_CHOICE, ABORT_CHOICE = 1, 2, 3

REMOVED_NOTE = "Removed by decision."
UNSATISFIED_NOTE = "Preconditions were never satisfied."


class EngineState(str, Enum):
    IDLE = "IDLE"
    SCANNING = "SCANNING"
    DRAFTING = "DRAFTING"
    AWAITING_ANSWERS = "AWAITING_ANSWERS"
    PATCHING = "PATCHING"
    EXECUTING = "EXECUTING"
    FINISHED = "FINISHED"
    ROUND_LIMIT = "ROUND_LIMIT"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in (EngineState.FINISHED, EngineState.ABORTED)

    @property
    def is_suspended(self) -> bool:
        return self in (EngineState.AWAITING_ANSWERS, EngineState.ROUND_LIMIT)


@dataclass(frozen=True, slots=True)
class FinishSummary:
    """Recap emitted when a run reaches FINISHED."""

    goal: str
    completed: tuple[str, ...] = ()
    checkpoints: tuple[str, ...] = ()
    skipped: tuple[tuple[str, str], ...] = ()
    failed: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "completed": list(self.completed),
            "checkpoints": list(self.checkpoints),
            "skipped": [{"step": step_id, "reason": reason} for step_id, reason in self.skipped],
            "failed": [{"step": step_id, "reason": reason} for step_id, reason in self.failed],
        }


@dataclass(frozen=True, slots=True)
class EngineSnapshot:
    """Immutable view of the engine after a transition."""

    state: EngineState
    graph: PlanGraph | None = None
    round: Round | None = None
    ledger: LedgerSnapshot = field(default_factory=LedgerSnapshot)
    ledger_update: LedgerSnapshot | None = None
    error: str | None = None
    needs_free_text: bool = False
    fatal: bool = False
    summary: FinishSummary | None = None
    rounds_started: int = 0

    def to_event(self) -> Dict[str, Any]:
        """Serialise the snapshot for the JSON run log."""
        return {
            "state": self.state.value,
            "graph": self.graph.model_dump(mode="json") if self.graph is not None else None,
            "round": self.round.model_dump(mode="json") if self.round is not None else None,
            "ledger": {
                "decisions": [decision.model_dump(mode="json") for decision in self.ledger.decisions],
                "deltas": [delta.model_dump(mode="json") for delta in self.ledger.deltas],
            },
            "error": self.error,
            "fatal": self.fatal,
            "summary": self.summary.to_dict() if self.summary is not None else None,
            "rounds_started": self.rounds_started,
        }


Listener = Callable[[EngineSnapshot], None]


def recovery_question(step: Step, reason: str) -> Question:
    """Default interrupt question asked when a step fails."""
    return Question.build(
        RECOVERY_QUESTION_ID,
        f"Step {step.id} failed ({reason}). How should the run continue?",
        RECOVERY_OPTIONS,
        key=f"{step.id}.recovery",
        label="Recovery",
    )


def apply_patches(graph: PlanGraph, patches: Sequence[StepPatch]) -> tuple[PlanGraph, list[PlanDelta]]:
    """Apply option patches to a copy of ``graph`` and describe what changed.

    Done and in-progress steps cannot be removed; such patches are ignored.
    The patched graph is validated before it is returned.
    """
    updated = graph.snapshot()
    applied: list[StepPatch] = []
    for patch in patches:
        if patch.kind == DeltaKind.STEP_ADDED:
            if patch.step is None:
                raise GraphIntegrityError(
                    f"Patch adding step {patch.step_id} carries no step definition.",
                    step_ids=[patch.step_id],
                )
            if updated.get(patch.step_id) is not None:
                raise GraphIntegrityError(
                    f"Patch adds step {patch.step_id}, which already exists.",
                    step_ids=[patch.step_id],
                )
            updated.steps.append(
                patch.step.model_copy(deep=True, update={"id": patch.step_id, "status": StepStatus.PENDING})
            )
        elif patch.kind == DeltaKind.STEP_CHANGED:
            existing = updated.require(patch.step_id)
            if patch.step is not None:
                status = existing.status if existing.status in PROTECTED_STATUSES else StepStatus.PENDING
                replacement = patch.step.model_copy(
                    deep=True,
                    update={"id": patch.step_id, "status": status, "note": None},
                )
                updated.steps[updated.position(patch.step_id) - 1] = replacement
            elif patch.description:
                existing.description = patch.description
        else:
            existing = updated.require(patch.step_id)
            if existing.status in PROTECTED_STATUSES:
                LOGGER.warning("Not removing step %s: it is already %s", patch.step_id, existing.status.value)
                continue
            existing.status = StepStatus.SKIPPED
            existing.note = REMOVED_NOTE
        applied.append(patch)

    validate_graph(updated)
    deltas = [
        PlanDelta(
            kind=patch.kind,
            step_id=patch.step_id,
            description=patch.summary(),
            step_number=updated.position(patch.step_id),
        )
        for patch in applied
    ]
    return updated, deltas


class ExecutionEngine:
    """Drive a plan-mode run: draft, ask, patch, execute, recover, finish."""

    def __init__(
        self,
        planner: Planner,
        action_executor: ActionExecutor,
        checkpoint_runner: CheckpointRunner,
        *,
        config: PlanModeConfig | None = None,
        context_provider: ContextProvider | None = None,
        logs_root: Path | None = None,
        listeners: Iterable[Listener] = (),
    ) -> None:
        self._planner = planner
        self._executor = action_executor
        self._checkpoints = checkpoint_runner
        self._config = config or PlanModeConfig()
        self._context_provider = context_provider
        self._logs_root = Path(logs_root) if logs_root is not None else None
        self._listeners: list[Listener] = list(listeners)
        self._lock = threading.RLock()
        self._cancel_event = threading.Event()
        self._cancel_reason: str | None = None
        self._in_loop = False
        self._state = EngineState.IDLE
        self._reset_run()
        self._last_snapshot = self._snapshot()

    # ------------------------------------------------------------------ read access

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def graph(self) -> PlanGraph | None:
        with self._lock:
            return self._graph.snapshot() if self._graph is not None else None

    @property
    def round(self) -> Round | None:
        with self._lock:
            return self._round.model_copy(deep=True) if self._round is not None else None

    @property
    def ledger(self) -> LedgerSnapshot:
        return self._ledger.snapshot()

    @property
    def last_snapshot(self) -> EngineSnapshot:
        return self._last_snapshot

    @property
    def run_log_path(self) -> Path | None:
        return self._run_log.path if self._run_log is not None else None

    @property
    def is_active(self) -> bool:
        return self._state not in (EngineState.IDLE, EngineState.FINISHED, EngineState.ABORTED)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------ operations

    def start(self, goal: str) -> EngineSnapshot:
        """Scan, draft, and open round one (or execute directly if there are no questions)."""
        goal = goal.strip()
        if not goal:
            raise ValueError("A goal is required to start a plan-mode run.")
        with self._lock:
            if self.is_active:
                raise InvalidTransition(f"A run is already active ({self._state.value}).")
            self._reset_run()
            if self._logs_root is not None:
                self._run_log = RunLog(self._logs_root, goal=goal)
            LOGGER.info("Starting plan-mode run: %s", goal)

            self._emit(EngineState.SCANNING)
            try:
                context = self._gather(goal)
            except ContextUnavailable as error:
                return self._abort(f"Context unavailable: {error}", fatal=True)
            self._context = context

            self._emit(EngineState.DRAFTING)
            try:
                draft = self._planner.draft(context)
                graph = draft.graph()
                validate_graph(graph)
            except GraphIntegrityError as error:
                return self._abort(f"Plan graph rejected: {error}", fatal=True)
            except LLMClientError as error:
                return self._abort(f"Planner failed: {error}", fatal=True)
            except Exception as error:  # noqa: BLE001 - planner faults abort the run
                LOGGER.exception("Planner raised while drafting")
                return self._abort(f"Planner failed: {type(error).__name__}: {error}", fatal=True)
            self._graph = graph
            return self._open_draft_round(draft, reason="Initial plan")

    def submit_answers(self, raw: str) -> EngineSnapshot:
        """Parse an answer block for the open round and, if valid, commit it."""
        with self._lock:
            if self._state != EngineState.AWAITING_ANSWERS or self._round is None:
                raise InvalidTransition(f"No question round is open ({self._state.value}).")
            round_ = self._round
            try:
                answers = parse_answers(round_, raw)
            except AnswerValidationError as error:
                LOGGER.info("Answer rejected for round %d: %s", round_.round_number, error)
                return self._emit(
                    EngineState.AWAITING_ANSWERS,
                    error=str(error),
                    needs_free_text=error.needs_free_text,
                )
            return self._patch(round_, answers)

    def replan(self, goal: str | None = None, rewind: Sequence[str] = ()) -> EngineSnapshot:
        """Draft afresh and merge the result into the live graph."""
        with self._lock:
            if self._graph is None or not self.is_active:
                raise InvalidTransition("There is no active run to re-plan.")
            if self._round is not None:
                LOGGER.info("Discarding unanswered round %d for re-plan", self._round.round_number)
            self._round = None
            self._pending_recovery = None
            self._limit_step_id = None
            return self._redraft(rewind=tuple(rewind), goal=(goal or "").strip() or None)

    def cancel(self, reason: str = "Cancelled by user.") -> EngineSnapshot:
        """Abort the run; in-flight steps are skipped and the open round is dropped."""
        self._cancel_reason = reason
        self._cancel_event.set()
        if self._in_loop:
            # The loop observes the event; a worker thread must not wait on the lock.
            return self._last_snapshot
        with self._lock:
            if not self.is_active:
                self._cancel_event.clear()
                return self._last_snapshot
            return self._cancel_run()

    def resolve_round_limit(self, continue_run: bool) -> EngineSnapshot:
        """Leave ROUND_LIMIT by continuing best-effort or aborting."""
        with self._lock:
            if self._state != EngineState.ROUND_LIMIT:
                raise InvalidTransition(f"The run is not waiting on the round limit ({self._state.value}).")
            step_id = self._limit_step_id
            self._limit_step_id = None
            if not continue_run:
                return self._abort("Round limit reached; run aborted by user.")
            if step_id is not None:
                LOGGER.info("Continuing best-effort; step %s stays failed", step_id)
            else:
                LOGGER.info("Continuing best-effort without the drafted questions")
            self._best_effort = True
            return self._execute()

    # ------------------------------------------------------------------ drafting

    def _gather(self, goal: str) -> PlanContext:
        if self._context_provider is None:
            return PlanContext(goal=goal)
        return self._context_provider.gather(goal)

    def _open_draft_round(self, draft: PlannerDraft, *, reason: str) -> EngineSnapshot:
        questions = draft.round_questions()
        if not questions:
            return self._execute()
        try:
            self._round = self._rounds.start_round(questions, reason=reason)
        except RoundConstructionError as error:
            return self._abort(f"Planner produced an invalid question round: {error}", fatal=True)
        except RoundLimitExceeded as error:
            message = f"{error} The {reason.lower()} has {len(questions)} open question(s)."
            suspended = self._round_limit(message)
            if suspended is not None:
                return suspended
            LOGGER.warning("Continuing without answers to %d drafted question(s)", len(questions))
            return self._execute()
        return self._emit(EngineState.AWAITING_ANSWERS)

    def _redraft(
        self,
        *,
        rewind: Sequence[str] = (),
        goal: str | None = None,
        guidance: str | None = None,
    ) -> EngineSnapshot:
        assert self._graph is not None
        base = self._context or PlanContext(goal=self._graph.goal)
        context = base.with_updates(
            goal=goal or self._graph.goal,
            decisions=self._ledger.decisions,
            live_graph=self._graph.snapshot(),
            guidance=guidance,
        )
        self._emit(EngineState.DRAFTING)
        try:
            draft = self._planner.draft(context)
            merged = reconcile(self._graph, draft.graph(), rewind=rewind)
        except GraphIntegrityError as error:
            return self._abort(f"Re-plan rejected: {error}", fatal=True)
        except LLMClientError as error:
            return self._abort(f"Planner failed: {error}", fatal=True)
        except Exception as error:  # noqa: BLE001 - planner faults abort the run
            LOGGER.exception("Planner raised while re-drafting")
            return self._abort(f"Planner failed: {type(error).__name__}: {error}", fatal=True)
        if self._run_log is not None and goal:
            self._run_log.set_goal(goal)
        self._graph = merged
        return self._open_draft_round(draft, reason="Re-plan")

    # ------------------------------------------------------------------ patching

    def _patch(self, round_: Round, answers: Sequence[Answer]) -> EngineSnapshot:
        assert self._graph is not None
        resolution = resolve_round(round_, answers)
        try:
            graph, deltas = apply_patches(self._graph, resolution.patches)
        except GraphIntegrityError as error:
            self._round = None
            return self._abort(f"Answer patches broke the plan: {error}", fatal=True)

        self._rounds.close(round_, answers)
        self._graph = graph
        update = self._ledger.record(resolution.decisions, deltas)
        LOGGER.info(
            "Round %d resolved: %d decision(s), %d plan update(s)",
            round_.round_number,
            len(update.decisions),
            len(update.deltas),
        )
        self._emit(EngineState.PATCHING, ledger_update=update)
        self._round = None

        pending = self._pending_recovery
        self._pending_recovery = None
        if pending is not None:
            step_id, custom = pending
            return self._recover(step_id, round_, custom=custom)
        return self._execute()

    def _recover(self, step_id: str, round_: Round, *, custom: bool) -> EngineSnapshot:
        assert self._graph is not None
        step = self._graph.get(step_id)
        if step is None or step.status != StepStatus.FAILED:
            return self._execute()
        if custom:
            step.status = StepStatus.PENDING
            step.note = None
            return self._execute()

        question = next(item for item in round_.questions if item.id == RECOVERY_QUESTION_ID)
        answer = question.answer or Answer.empty()
        if answer.kind == AnswerKind.SELECTED and answer.indices == (RETRY_CHOICE,):
            LOGGER.info("Retrying step %s on request", step.id)
            step.status = StepStatus.PENDING
            step.note = None
            return self._execute()
        if answer.kind == AnswerKind.SELECTED and answer.indices == (ABORT_CHOICE,):
            return self._abort(f"Run aborted after step {step.id} failed.")

        if answer.kind == AnswerKind.FREE_TEXT and answer.text:
            guidance = answer.text.strip()
        else:
            guidance = f"Take a different approach to step {step.id}; it failed with: {step.note}"
        LOGGER.info("Re-drafting around failed step %s", step.id)
        return self._redraft(rewind=(step.id,), guidance=guidance)

    # ------------------------------------------------------------------ execution

    def _execute(self) -> EngineSnapshot:
        self._in_loop = True
        try:
            return self._run_loop()
        finally:
            self._in_loop = False

    def _run_loop(self) -> EngineSnapshot:
        assert self._graph is not None
        self._emit(EngineState.EXECUTING)
        while True:
            if self._cancel_event.is_set():
                return self._cancel_run()

            if self._escalations:
                step_id, reason = self._escalations.pop(0)
                suspended = self._escalate(self._graph.require(step_id), reason)
                if suspended is not None:
                    return suspended
                continue

            eligible = eligible_steps(self._graph)
            if not eligible:
                return self._finish()

            batch = eligible[: self._config.execution.max_workers]
            for step in batch:
                step.status = StepStatus.IN_PROGRESS
            self._emit(EngineState.EXECUTING)

            results = self._dispatch(batch)
            if self._cancel_event.is_set():
                return self._cancel_run()
            # Checkpoints and graph mutations stay on this thread, in graph order.
            for step, result in zip(batch, results):
                self._settle(step, result)

    def _dispatch(self, batch: Sequence[Step]) -> list[ActionResult]:
        if len(batch) == 1:
            return [self._run_actions(batch[0], batch[0].actions)]
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            futures = [
                pool.submit(self._run_actions, step.model_copy(deep=True), list(step.actions))
                for step in batch
            ]
            return [future.result() for future in futures]

    def _run_actions(self, step: Step, actions: Sequence[Action]) -> ActionResult:
        try:
            return self._executor.execute(step, actions)
        except Exception as error:  # noqa: BLE001 - executor faults fail the step
            LOGGER.exception("Action executor raised for step %s", step.id)
            return ActionResult(ok=False, detail=f"{type(error).__name__}: {error}")

    def _check(self, step: Step, result: ActionResult) -> None:
        if not result.ok:
            raise StepExecutionFailure(step.id, result.detail or "actions failed", output=result.output)
        outcome = self._checkpoints.run(step, step.checkpoint)
        if step.checkpoint.kind != "noop":
            self._checkpoint_log.append(f"{step.id} {outcome.short_message()}")
        if not outcome.ok:
            raise StepExecutionFailure(step.id, outcome.short_message(), output=outcome.stdout)

    def _settle(self, step: Step, result: ActionResult) -> None:
        try:
            self._check(step, result)
        except StepExecutionFailure as failure:
            self._handle_failure(step, failure)
            return
        step.status = StepStatus.DONE
        LOGGER.info("Step %s done", step.id)

    def _handle_failure(self, step: Step, failure: StepExecutionFailure) -> None:
        LOGGER.warning("Step %s failed: %s", step.id, failure.reason)
        policy = step.on_fail

        if isinstance(policy, RetryPolicy):
            for attempt in range(1, policy.attempts + 1):
                LOGGER.warning("Retrying step %s (attempt %d of %d)", step.id, attempt, policy.attempts)
                try:
                    self._check(step, self._run_actions(step, step.actions))
                except StepExecutionFailure as retry_failure:
                    failure = retry_failure
                    continue
                step.status = StepStatus.DONE
                step.note = f"Passed on retry {attempt}."
                return
            self._fail(step, failure.reason)
            self._escalations.append((step.id, failure.reason))
            return

        if isinstance(policy, FallbackActions):
            LOGGER.warning("Running %d fallback action(s) for step %s", len(policy.actions), step.id)
            try:
                self._check(step, self._run_actions(step, policy.actions))
            except StepExecutionFailure as fallback_failure:
                self._fail(step, f"Fallback failed: {fallback_failure.reason}")
                return
            step.status = StepStatus.DONE
            step.note = "Completed with fallback actions."
            return

        self._fail(step, failure.reason)
        self._escalations.append((step.id, failure.reason))

    @staticmethod
    def _fail(step: Step, reason: str) -> None:
        step.status = StepStatus.FAILED
        step.note = reason

    def _escalate(self, step: Step, reason: str) -> EngineSnapshot | None:
        """Open an interrupt round for ``step``; ``None`` means keep executing."""
        questions, custom = self._interrupt_questions(step, reason)
        try:
            self._round = self._rounds.start_round(questions, reason=f"Step {step.id} failed: {reason}")
        except RoundConstructionError as error:
            return self._abort(f"Planner produced an invalid interrupt round: {error}", fatal=True)
        except RoundLimitExceeded as error:
            return self._round_limit(f"{error} Step {step.id} needs a decision: {reason}", step_id=step.id)

        self._pending_recovery = (step.id, custom)
        LOGGER.info("Opened round %d for failed step %s", self._round.round_number, step.id)
        return self._emit(EngineState.AWAITING_ANSWERS)

    def _round_limit(self, message: str, *, step_id: str | None = None) -> EngineSnapshot | None:
        """Apply ``rounds.on_limit`` at the ceiling; ``None`` means keep executing."""
        policy = self._config.rounds.on_limit
        LOGGER.warning("%s (policy: %s)", message, policy.value)
        if policy == RoundLimitPolicy.BEST_EFFORT or self._best_effort:
            return None
        if policy == RoundLimitPolicy.ABORT:
            return self._abort(message)
        self._limit_step_id = step_id
        return self._emit(EngineState.ROUND_LIMIT, error=message)

    def _interrupt_questions(self, step: Step, reason: str) -> tuple[list[Question], bool]:
        interrupt = getattr(self._planner, "interrupt", None)
        if callable(interrupt):
            context = (self._context or PlanContext(goal=self._graph.goal if self._graph else "")).with_updates(
                decisions=self._ledger.decisions,
                live_graph=self._graph.snapshot() if self._graph is not None else None,
            )
            try:
                questions = interrupt(context, step.model_copy(deep=True), reason)
            except LLMClientError as error:
                LOGGER.warning("Planner interrupt failed; asking the default recovery question: %s", error)
                questions = None
            if questions:
                return list(questions), True
        return [recovery_question(step, reason)], False

    # ------------------------------------------------------------------ endings

    def _finish(self) -> EngineSnapshot:
        assert self._graph is not None
        for step in self._graph.steps:
            if step.status != StepStatus.PENDING:
                continue
            blockers = blocked_by(self._graph, step)
            step.status = StepStatus.SKIPPED
            step.note = f"Blocked by failed step(s): {', '.join(blockers)}" if blockers else UNSATISFIED_NOTE
        summary = self._summarize()
        LOGGER.info(
            "Run finished: %d done, %d skipped, %d failed",
            len(summary.completed),
            len(summary.skipped),
            len(summary.failed),
        )
        return self._emit(EngineState.FINISHED, summary=summary)

    def _summarize(self) -> FinishSummary:
        assert self._graph is not None
        graph = self._graph
        return FinishSummary(
            goal=graph.goal,
            completed=tuple(
                f"{graph.position(step.id)}. {step.description}" for step in graph.with_status(StepStatus.DONE)
            ),
            checkpoints=tuple(self._checkpoint_log),
            skipped=tuple((step.id, step.note or "") for step in graph.with_status(StepStatus.SKIPPED)),
            failed=tuple((step.id, step.note or "") for step in graph.with_status(StepStatus.FAILED)),
        )

    def _cancel_run(self) -> EngineSnapshot:
        reason = self._cancel_reason or "Cancelled."
        if self._graph is not None:
            for step in self._graph.with_status(StepStatus.IN_PROGRESS):
                step.status = StepStatus.SKIPPED
                step.note = reason
        if self._round is not None:
            LOGGER.info("Discarding unanswered round %d on cancel", self._round.round_number)
        self._round = None
        self._pending_recovery = None
        self._cancel_event.clear()
        return self._abort(reason)

    def _abort(self, message: str, *, fatal: bool = False) -> EngineSnapshot:
        if fatal:
            LOGGER.error("Run aborted: %s", message)
        else:
            LOGGER.info("Run aborted: %s", message)
        self._round = None
        return self._emit(EngineState.ABORTED, error=message, fatal=fatal)

    # ------------------------------------------------------------------ plumbing

    def _reset_run(self) -> None:
        self._rounds = RoundManager(self._config.rounds.max_rounds)
        self._ledger = DecisionLedger()
        self._graph: PlanGraph | None = None
        self._round: Round | None = None
        self._context: PlanContext | None = None
        self._pending_recovery: tuple[str, bool] | None = None
        self._limit_step_id: str | None = None
        self._best_effort = False
        self._escalations: list[tuple[str, str]] = []
        self._checkpoint_log: list[str] = []
        self._run_log: RunLog | None = None
        self._cancel_event.clear()
        self._cancel_reason = None

    def _snapshot(self, **fields: Any) -> EngineSnapshot:
        return EngineSnapshot(
            state=self._state,
            graph=self._graph.snapshot() if self._graph is not None else None,
            round=self._round.model_copy(deep=True) if self._round is not None else None,
            ledger=self._ledger.snapshot(),
            rounds_started=self._rounds.rounds_started,
            **fields,
        )

    def _emit(self, state: EngineState, **fields: Any) -> EngineSnapshot:
        previous = self._state
        self._state = state
        snapshot = self._snapshot(**fields)
        self._last_snapshot = snapshot
        if previous != state:
            LOGGER.debug("Engine %s -> %s", previous.value, state.value)
        if self._run_log is not None:
            self._run_log.append(snapshot.to_event())
        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot


__all__ = [
    "ABORT_CHOICE",
    "CHANGE_CHOICE",
    "EngineSnapshot",
    "EngineState",
    "ExecutionEngine",
    "FinishSummary",
    "Listener",
    "RECOVERY_OPTIONS",
    "RECOVERY_QUESTION_ID",
    "RETRY_CHOICE",
    "apply_patches",
    "recovery_question",
]
