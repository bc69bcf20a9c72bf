"""Question rounds: construction limits, answer parsing, and round resolution.

A round holds one to five questions and a run may open at most five rounds.
Select-type questions always end with the free-text sentinel option, so a
question offers at most four predefined choices.

Answers arrive as raw text following a small grammar:

``^\\s*\\d+\\s*$``
    a single option index.
``^\\s*\\d+(\\s*,\\s*\\d+)*\\s*$``
    a comma separated index list (multi-select only).
anything else
    free text. On a select question this is the same as picking the sentinel.

Picking the sentinel index takes the *next* line verbatim as the free-text
answer. ``parse_answer`` is pure: the same question and input always give the
same answer or the same validation failure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import AnswerValidationError, RoundConstructionError, RoundLimitExceeded
from .graph import RecordModel, Step
from .ledger import Decision, DeltaKind

SENTINEL_TITLE = "(None) Type your answer"
MAX_QUESTIONS_PER_ROUND = 5
MAX_OPTIONS = 5
MAX_PREDEFINED_OPTIONS = MAX_OPTIONS - 1
MAX_ROUNDS = 5

_INDEX_LIST_RE = re.compile(r"^\s*\d+(\s*,\s*\d+)*\s*$")


class QuestionType(str, Enum):
    """Supported answer shapes."""

    SINGLE_SELECT = "single-select"
    MULTI_SELECT = "multi-select"
    FREE_TEXT = "free-text"

    @property
    def is_select(self) -> bool:
        return self is not QuestionType.FREE_TEXT


class StepPatch(RecordModel):
    """Plan edit implied by choosing an option."""

    kind: DeltaKind
    step_id: str
    step: Optional[Step] = None
    description: str = ""

    def summary(self) -> str:
        if self.description:
            return self.description
        if self.step is not None:
            return self.step.description
        return self.step_id


class Option(RecordModel):
    """One selectable choice of a select-type question."""

    title: str
    description: Optional[str] = None
    is_free_text: bool = False
    patches: List[StepPatch] = Field(default_factory=list)


def sentinel_option() -> Option:
    return Option(title=SENTINEL_TITLE, is_free_text=True)


class AnswerKind(str, Enum):
    SELECTED = "SELECTED"
    FREE_TEXT = "FREE_TEXT"
    EMPTY = "EMPTY"


class Answer(BaseModel):
    """Validated answer to a single question."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: AnswerKind
    indices: tuple[int, ...] = ()
    text: Optional[str] = None

    @classmethod
    def selected(cls, *indices: int) -> "Answer":
        return cls(kind=AnswerKind.SELECTED, indices=tuple(indices))

    @classmethod
    def free_text(cls, text: str) -> "Answer":
        return cls(kind=AnswerKind.FREE_TEXT, text=text)

    @classmethod
    def empty(cls) -> "Answer":
        return cls(kind=AnswerKind.EMPTY)


class Question(RecordModel):
    """Structured question posed to the user."""

    id: str
    prompt: str
    type: QuestionType = QuestionType.SINGLE_SELECT
    key: Optional[str] = None
    label: Optional[str] = None
    options: List[Option] = Field(default_factory=list)
    required: bool = True
    answer: Optional[Answer] = None

    @model_validator(mode="after")
    def _check_options(self) -> "Question":
        if not self.type.is_select:
            if self.options:
                raise ValueError("free-text questions do not take options")
            return self
        if not 2 <= len(self.options) <= MAX_OPTIONS:
            raise ValueError(
                f"select questions need 2-{MAX_OPTIONS} options including the free-text option"
            )
        last = self.options[-1]
        if last.title != SENTINEL_TITLE or not last.is_free_text:
            raise ValueError(f"the last option must be {SENTINEL_TITLE!r}")
        if any(option.is_free_text for option in self.options[:-1]):
            raise ValueError("only the last option may be free text")
        return self

    @property
    def decision_key(self) -> str:
        return self.key or self.id

    @property
    def sentinel_index(self) -> int | None:
        return len(self.options) if self.type.is_select else None

    @classmethod
    def build(
        cls,
        id: str,
        prompt: str,
        options: Iterable[Option | str] = (),
        *,
        type: QuestionType = QuestionType.SINGLE_SELECT,
        key: str | None = None,
        label: str | None = None,
        required: bool = True,
    ) -> "Question":
        """Create a question, normalising the option list for select types."""
        normalised = normalize_options(options) if type.is_select else []
        return cls(
            id=id,
            prompt=prompt,
            type=type,
            key=key,
            label=label,
            options=normalised,
            required=required,
        )


def normalize_options(options: Iterable[Option | str]) -> list[Option]:
    """Cap predefined options at four and end the list with the sentinel."""
    predefined: list[Option] = []
    for entry in options:
        option = Option(title=entry) if isinstance(entry, str) else entry
        if option.is_free_text or option.title == SENTINEL_TITLE:
            continue
        predefined.append(option)
    return [*predefined[:MAX_PREDEFINED_OPTIONS], sentinel_option()]


class RoundStatus(str, Enum):
    AWAITING_ANSWERS = "AWAITING_ANSWERS"
    RESOLVED = "RESOLVED"


class Round(RecordModel):
    """Bounded batch of questions posed together."""

    round_number: int = Field(ge=1, le=MAX_ROUNDS)
    questions: List[Question] = Field(min_length=1, max_length=MAX_QUESTIONS_PER_ROUND)
    status: RoundStatus = RoundStatus.AWAITING_ANSWERS
    reason: Optional[str] = None


@dataclass(slots=True)
class RoundResolution:
    """Decisions and plan edits derived from a fully answered round."""

    decisions: list[Decision] = field(default_factory=list)
    patches: list[StepPatch] = field(default_factory=list)


class RoundManager:
    """Builds rounds for a single plan-mode run and enforces the round ceiling."""

    def __init__(self, max_rounds: int = MAX_ROUNDS) -> None:
        if not 1 <= max_rounds <= MAX_ROUNDS:
            raise ValueError(f"max_rounds must be between 1 and {MAX_ROUNDS}")
        self._max_rounds = max_rounds
        self._rounds: list[Round] = []

    @property
    def max_rounds(self) -> int:
        return self._max_rounds

    @property
    def rounds(self) -> tuple[Round, ...]:
        return tuple(self._rounds)

    @property
    def rounds_started(self) -> int:
        return len(self._rounds)

    @property
    def remaining(self) -> int:
        return self._max_rounds - len(self._rounds)

    def can_open(self) -> bool:
        return self.remaining > 0

    def start_round(self, questions: Sequence[Question], *, reason: str | None = None) -> Round:
        count = len(questions)
        if not 1 <= count <= MAX_QUESTIONS_PER_ROUND:
            raise RoundConstructionError(
                f"A round needs 1-{MAX_QUESTIONS_PER_ROUND} questions; got {count}."
            )
        ids = [question.id for question in questions]
        duplicates = sorted({item for item in ids if ids.count(item) > 1})
        if duplicates:
            raise RoundConstructionError("Duplicate question ids: " + ", ".join(duplicates))
        if not self.can_open():
            raise RoundLimitExceeded(
                f"Round limit reached: {self._max_rounds} round(s) already used in this run.",
                limit=self._max_rounds,
                reason=reason,
            )
        round_ = Round(
            round_number=len(self._rounds) + 1,
            questions=[question.model_copy(deep=True, update={"answer": None}) for question in questions],
            reason=reason,
        )
        self._rounds.append(round_)
        return round_

    def close(self, round_: Round, answers: Sequence[Answer]) -> Round:
        """Attach validated answers and mark the round resolved."""
        for question, answer in zip(round_.questions, answers):
            question.answer = answer
        round_.status = RoundStatus.RESOLVED
        return round_

    def reset(self) -> None:
        self._rounds.clear()


def parse_answer(question: Question, raw: str) -> Answer:
    """Parse one raw answer for ``question``.

    Raises :class:`AnswerValidationError` for out-of-range indices, malformed
    selections, or a missing answer to a required question.
    """
    if question.type is QuestionType.FREE_TEXT:
        if not raw.strip():
            return _empty_answer(question)
        return Answer.free_text(raw)

    first, _, remainder = raw.partition("\n")
    if not first.strip():
        if remainder.strip():
            raise AnswerValidationError(
                "Answer on the first line; use the last option to type a free-text answer.",
                question_id=question.id,
            )
        return _empty_answer(question)

    if not _INDEX_LIST_RE.match(first):
        return Answer.free_text(raw)

    indices = sorted({int(token) for token in first.split(",")})
    if question.type is QuestionType.SINGLE_SELECT and len(first.split(",")) > 1:
        raise AnswerValidationError(
            "Pick exactly one option for a single-select question.",
            question_id=question.id,
        )

    option_count = len(question.options)
    out_of_range = [index for index in indices if not 1 <= index <= option_count]
    if out_of_range:
        raise AnswerValidationError(
            f"Option {out_of_range[0]} is out of range; choose 1-{option_count}.",
            question_id=question.id,
        )

    sentinel = question.sentinel_index
    if sentinel in indices:
        if len(indices) > 1:
            raise AnswerValidationError(
                f"Option {sentinel} ({SENTINEL_TITLE}) must be the only selection.",
                question_id=question.id,
            )
        if not remainder.strip():
            raise AnswerValidationError(
                "Type your answer on the next line.",
                question_id=question.id,
                needs_free_text=True,
            )
        return Answer.free_text(remainder)

    if remainder.strip():
        raise AnswerValidationError(
            "Give one answer per line.",
            question_id=question.id,
        )
    return Answer.selected(*indices)


def _empty_answer(question: Question) -> Answer:
    if question.required:
        raise AnswerValidationError("An answer is required.", question_id=question.id)
    return Answer.empty()


def _selects_sentinel(question: Question, line: str) -> bool:
    if not question.type.is_select or not _INDEX_LIST_RE.match(line):
        return False
    indices = {int(token) for token in line.split(",")}
    return indices == {question.sentinel_index}


def parse_answers(round_: Round, raw_block: str) -> list[Answer]:
    """Parse a multi-line answer block: one line per question, in order.

    A line choosing the sentinel consumes the following line as its free-text
    answer. Validation failures name the offending question by position.
    """
    lines = raw_block.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()

    answers: list[Answer] = []
    cursor = 0
    total = len(round_.questions)
    for position, question in enumerate(round_.questions, start=1):
        if cursor >= len(lines):
            raise AnswerValidationError(
                f"Expected {total} answer line(s); question {position} is unanswered.",
                question_id=question.id,
            )
        raw = lines[cursor]
        cursor += 1
        if _selects_sentinel(question, raw) and cursor < len(lines):
            raw = f"{raw}\n{lines[cursor]}"
            cursor += 1
        try:
            answers.append(parse_answer(question, raw))
        except AnswerValidationError as error:
            raise AnswerValidationError(
                f"Question {position}: {error}",
                question_id=question.id,
                needs_free_text=error.needs_free_text,
            ) from error

    if cursor < len(lines):
        raise AnswerValidationError(
            f"Received more answer lines than the {total} question(s) in this round."
        )
    return answers


def collect_answer_block(round_: Round, read_line: Callable[[], Optional[str]]) -> str:
    """Read exactly the lines ``parse_answers`` expects for ``round_``.

    ``read_line`` returns ``None`` at end of input; collection stops early then.
    """
    lines: list[str] = []
    for question in round_.questions:
        line = read_line()
        if line is None:
            break
        lines.append(line)
        if _selects_sentinel(question, line):
            follow_up = read_line()
            if follow_up is None:
                break
            lines.append(follow_up)
    return "\n".join(lines)


def resolve_round(round_: Round, answers: Sequence[Answer]) -> RoundResolution:
    """Map a round and its validated answers to decisions and plan patches."""
    if len(answers) != len(round_.questions):
        raise AnswerValidationError(
            f"Expected {len(round_.questions)} answer(s); got {len(answers)}."
        )
    resolution = RoundResolution()
    for question, answer in zip(round_.questions, answers):
        if answer.kind is AnswerKind.EMPTY:
            continue
        if answer.kind is AnswerKind.FREE_TEXT:
            value = answer.text or ""
        else:
            chosen = [question.options[index - 1] for index in answer.indices]
            value = ", ".join(option.title for option in chosen)
            for option in chosen:
                resolution.patches.extend(patch.model_copy(deep=True) for patch in option.patches)
        resolution.decisions.append(
            Decision(key=question.decision_key, value=value, source_round=round_.round_number)
        )
    return resolution


def format_answers(round_: Round, answers: Sequence[Answer]) -> str:
    """Render answers back into the line-oriented answer grammar."""
    lines: list[str] = []
    for question, answer in zip(round_.questions, answers):
        if answer.kind is AnswerKind.EMPTY:
            lines.append("")
        elif answer.kind is AnswerKind.FREE_TEXT:
            text = normalize_free_text(answer.text or "")
            if question.type.is_select and (_INDEX_LIST_RE.match(text) or not text):
                lines.append(str(question.sentinel_index))
            lines.append(text)
        else:
            lines.append(",".join(str(index) for index in answer.indices))
    return "\n".join(lines)


def normalize_free_text(text: str) -> str:
    """Collapse runs of whitespace, including newlines, into single spaces."""
    return " ".join(text.split())


# --------------------------------------------------------------------------- decision points text


_SECTION_STOP_WORDS = {"checkpoints", "rollback", "plan", "goal"}
_NUMBERED_LINE_RE = re.compile(r"^\s*(\d+)[).:-]\s+(.*)$")
_BULLET_LINE_RE = re.compile(r"^\s*[-*]\s+(.*)$")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_TYPE_TAG_RE = re.compile(r"\((?:single|multi)[- ]select\)|\(free-text\)", re.IGNORECASE)
_HEADER_RE = re.compile(r"^#*\s*decision points(?:$|[\s:\-\u2014<])", re.IGNORECASE)


@dataclass(slots=True)
class _DraftQuestion:
    number: int
    label: str
    prompt: str
    type: QuestionType
    options: list[Option] = field(default_factory=list)


def parse_decision_points(text: str) -> list[Question] | None:
    """Parse the "Decision points" section of a plan block into questions.

    Returns ``None`` when the section is missing or holds no recognisable
    questions. Question lines look like ``1) **Label** (single-select): Prompt``;
    options are numbered or bulleted lines underneath, and plain indented lines
    extend the previous option's description.
    """
    lines = text.splitlines()
    start = next((index for index, line in enumerate(lines) if _HEADER_RE.match(line.strip())), None)
    if start is None:
        return None

    drafts: list[_DraftQuestion] = []
    current_option: Option | None = None

    def _flush_option() -> None:
        nonlocal current_option
        if current_option is not None and drafts:
            drafts[-1].options.append(current_option)
        current_option = None

    for line in lines[start + 1 :]:
        stripped = line.strip()
        if stripped.lower() in _SECTION_STOP_WORDS:
            break

        numbered = _NUMBERED_LINE_RE.match(line)
        if numbered:
            rest = numbered.group(2).strip()
            if _looks_like_question(rest):
                _flush_option()
                drafts.append(_parse_question_line(int(numbered.group(1)), rest))
            elif drafts:
                _flush_option()
                current_option = _parse_option_line(rest)
            continue

        bullet = _BULLET_LINE_RE.match(line)
        if bullet:
            if drafts:
                _flush_option()
                current_option = _parse_option_line(bullet.group(1).strip())
            continue

        if current_option is not None and stripped:
            joined = f"{current_option.description} {stripped}" if current_option.description else stripped
            current_option.description = joined

    _flush_option()
    if not drafts:
        return None

    questions: list[Question] = []
    for draft in drafts[:MAX_QUESTIONS_PER_ROUND]:
        options = normalize_options(draft.options)
        # Only the sentinel survived: ask for free text instead.
        question_type = draft.type if len(options) > 1 else QuestionType.FREE_TEXT
        questions.append(
            Question(
                id=f"q{len(questions) + 1}",
                key=_decision_key(draft.label),
                label=draft.label,
                prompt=draft.prompt,
                type=question_type,
                options=options if question_type.is_select else [],
            )
        )
    return questions


def _looks_like_question(rest: str) -> bool:
    # Option titles may mention a select type; only a bold label or a type tag starts a question.
    return bool(_BOLD_RE.search(rest) or _TYPE_TAG_RE.search(rest))


def _parse_question_line(number: int, rest: str) -> _DraftQuestion:
    bold = _BOLD_RE.search(rest)
    label = bold.group(1).strip() if bold and bold.group(1).strip() else f"Question {number}"
    remainder = rest[: bold.start()] + rest[bold.end() :] if bold and bold.group(1).strip() else rest

    lowered = rest.lower()
    if "(free-text)" in lowered:
        question_type = QuestionType.FREE_TEXT
    elif any(marker in lowered for marker in ("multi-select", "multi select", "select all")):
        question_type = QuestionType.MULTI_SELECT
    else:
        question_type = QuestionType.SINGLE_SELECT

    for marker in ("(single-select)", "(multi-select)", "(free-text)"):
        remainder = remainder.replace(marker, "")
    prompt = normalize_free_text(remainder.strip().lstrip(":-\u2014").strip())
    return _DraftQuestion(number=number, label=label, prompt=prompt or rest, type=question_type)


def _parse_option_line(rest: str) -> Option:
    lowered = rest.lower()
    is_free_text = any(marker in lowered for marker in ("type your answer", "type something", "(none)"))
    title, description = rest, None
    for separator in (" - ", " \u2014 "):
        if separator in rest:
            head, tail = rest.split(separator, 1)
            title, description = head.strip(), tail.strip()
            break
    return Option(title=title, description=description, is_free_text=is_free_text)


def _decision_key(label: str) -> str:
    key = re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")
    return key or "decision"


__all__ = [
    "Answer",
    "AnswerKind",
    "MAX_OPTIONS",
    "MAX_PREDEFINED_OPTIONS",
    "MAX_QUESTIONS_PER_ROUND",
    "MAX_ROUNDS",
    "Option",
    "Question",
    "QuestionType",
    "Round",
    "RoundManager",
    "RoundResolution",
    "RoundStatus",
    "SENTINEL_TITLE",
    "StepPatch",
    "collect_answer_block",
    "format_answers",
    "normalize_free_text",
    "normalize_options",
    "parse_answer",
    "parse_answers",
    "parse_decision_points",
    "resolve_round",
    "sentinel_option",
]
