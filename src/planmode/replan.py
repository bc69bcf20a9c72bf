"""Merge a freshly drafted plan into the live graph without losing progress."""

from __future__ import annotations

import logging
from typing import Iterable

from .graph import PROTECTED_STATUSES, PlanGraph, Step, StepStatus, validate_graph

LOGGER = logging.getLogger(__name__)

REPLAN_SKIP_NOTE = "Dropped by re-plan."


def reconcile(
    live: PlanGraph,
    fresh: PlanGraph,
    *,
    rewind: Iterable[str] = (),
) -> PlanGraph:
    """Return a new graph that merges ``fresh`` into ``live``.

    Steps are matched by id. A live step that is done or in progress is kept
    as-is unless its id is in ``rewind``. Other matched steps take the fresh
    definition as pending work. Fresh-only steps are inserted as pending, and
    unfinished live-only steps are kept but marked skipped so the ledger
    history still resolves. The version always increments by one.
    """
    rewind_ids = set(rewind)
    live_by_id = {step.id: step for step in live.steps}
    fresh_ids = {step.id for step in fresh.steps}

    merged: list[Step] = []
    for fresh_step in fresh.steps:
        existing = live_by_id.get(fresh_step.id)
        if existing is not None and existing.status in PROTECTED_STATUSES and existing.id not in rewind_ids:
            merged.append(existing.model_copy(deep=True))
            continue
        merged.append(fresh_step.model_copy(deep=True, update={"status": StepStatus.PENDING, "note": None}))

    # Live-only steps keep their place after the step that preceded them in the live graph.
    previous_id: str | None = None
    for live_step in live.steps:
        if live_step.id in fresh_ids:
            previous_id = live_step.id
            continue
        carried = live_step.model_copy(deep=True)
        if carried.status != StepStatus.SKIPPED and (
            carried.status not in PROTECTED_STATUSES or carried.id in rewind_ids
        ):
            carried.status = StepStatus.SKIPPED
            carried.note = REPLAN_SKIP_NOTE
        insert_at = 0
        if previous_id is not None:
            insert_at = next(index for index, step in enumerate(merged) if step.id == previous_id) + 1
        merged.insert(insert_at, carried)
        previous_id = carried.id

    unknown_rewinds = sorted(rewind_ids - set(live_by_id))
    if unknown_rewinds:
        LOGGER.warning("Ignoring rewind request for unknown step(s): %s", ", ".join(unknown_rewinds))

    result = PlanGraph(
        goal=fresh.goal or live.goal,
        steps=merged,
        version=live.version + 1,
        checkpoints=list(fresh.checkpoints),
        rollback=list(fresh.rollback),
    )
    validate_graph(result)
    LOGGER.info(
        "Re-planned to version %d: %d step(s), %d kept, %d new",
        result.version,
        len(result.steps),
        sum(1 for step in live.steps if step.id in fresh_ids),
        sum(1 for step in fresh.steps if step.id not in live_by_id),
    )
    return result


__all__ = ["REPLAN_SKIP_NOTE", "reconcile"]
