"""Developer instructions sent to the planner while plan mode is active."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from .mode import Mode
from .questions import MAX_QUESTIONS_PER_ROUND, MAX_ROUNDS, SENTINEL_TITLE

DEVELOPER_ROLE = "developer"

PLAN_MODE_INSTRUCTIONS = f"""You are running in plan mode.

Shape every first reply as five sections, in this order:
Goal (one or two lines), Plan (numbered steps), Decision points, Checkpoints, Rollback.

Decision points
- Start the section with the exact header line "Decision points".
- Ask between 1 and {MAX_QUESTIONS_PER_ROUND} questions. A run gets at most {MAX_ROUNDS} question rounds in total.
- Write each question as `N) **Label** (single-select|multi-select): Prompt`.
- Write each option on its own indented line as `  N. Option title`; put an optional description on the next line, indented five spaces.
- Offer 2 to 5 options per question. The last option is always "{SENTINEL_TITLE}".

Answers
- The user replies with one line per question, in order.
- A single-select answer is one number such as "2"; a multi-select answer is a list such as "1,3".
- Any non-numeric line is a free-text answer, the same as choosing "{SENTINEL_TITLE}".

Execution
- Make no edits and call no tools until the current round is answered.
- After the answers arrive, print the decision ledger ("Decisions" then "Plan updates") and keep executing.
- Run the planned validation at each checkpoint.
- If a failure or new ambiguity forces a choice, ask another round (within the round limit), update the plan, and continue.
"""


def plan_mode_message() -> Dict[str, Any]:
    """Return the developer message carrying the plan-mode instructions."""
    return {
        "role": DEVELOPER_ROLE,
        "content": [{"type": "input_text", "text": PLAN_MODE_INSTRUCTIONS}],
    }


def inject_plan_mode_instructions(
    messages: Sequence[Mapping[str, Any]],
    mode: Mode,
) -> List[Dict[str, Any]]:
    """Insert the plan-mode developer message after any leading developer messages.

    Outside plan mode the messages are returned unchanged (as a new list).
    """
    result = [dict(message) for message in messages]
    if mode != Mode.PLAN:
        return result

    insert_at = len(result)
    for index, message in enumerate(result):
        if message.get("role") != DEVELOPER_ROLE:
            insert_at = index
            break
    result.insert(insert_at, plan_mode_message())
    return result


__all__ = [
    "PLAN_MODE_INSTRUCTIONS",
    "inject_plan_mode_instructions",
    "plan_mode_message",
]
