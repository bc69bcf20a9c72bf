from __future__ import annotations

import pytest
from pydantic import ValidationError

from planmode.errors import AnswerValidationError, RoundConstructionError, RoundLimitExceeded
from planmode.ledger import DeltaKind
from planmode.questions import (
    SENTINEL_TITLE,
    Answer,
    AnswerKind,
    Option,
    Question,
    QuestionType,
    RoundManager,
    StepPatch,
    collect_answer_block,
    format_answers,
    normalize_free_text,
    parse_answer,
    parse_answers,
    parse_decision_points,
    resolve_round,
)


def _single(options=("alpha", "beta", "gamma"), question_id: str = "q") -> Question:
    return Question.build(question_id, "Pick one", options, key="choice")


def _multi(options=("alpha", "beta", "gamma")) -> Question:
    return Question.build("m", "Pick some", options, type=QuestionType.MULTI_SELECT)


def test_build_appends_sentinel_and_caps_predefined_options() -> None:
    question = Question.build("q", "Pick", ["a", "b", "c", "d", "e", SENTINEL_TITLE])

    titles = [option.title for option in question.options]
    assert titles == ["a", "b", "c", "d", SENTINEL_TITLE]
    assert question.options[-1].is_free_text
    assert question.sentinel_index == 5


def test_select_question_requires_sentinel_last() -> None:
    with pytest.raises(ValidationError):
        Question(id="q", prompt="Pick", options=[Option(title="a"), Option(title="b")])


def test_free_text_question_rejects_options() -> None:
    with pytest.raises(ValidationError):
        Question(
            id="q",
            prompt="Say",
            type=QuestionType.FREE_TEXT,
            options=[Option(title=SENTINEL_TITLE, is_free_text=True)],
        )


def test_single_select_index_in_range() -> None:
    assert parse_answer(_single(), " 2 ") == Answer.selected(2)


def test_single_select_rejects_out_of_range_index() -> None:
    with pytest.raises(AnswerValidationError) as excinfo:
        parse_answer(_single(), "7")
    assert excinfo.value.question_id == "q"


def test_single_select_rejects_index_list() -> None:
    with pytest.raises(AnswerValidationError):
        parse_answer(_single(), "1,2")


def test_non_numeric_answer_is_free_text_for_select_questions() -> None:
    answer = parse_answer(_single(["a", "b", "c"]), "xyz")

    assert answer.kind is AnswerKind.FREE_TEXT
    assert answer.text == "xyz"


def test_multi_select_collapses_duplicates_and_sorts() -> None:
    question = _multi()  # three options plus the sentinel

    answer = parse_answer(question, "1,1,3")

    assert answer == Answer.selected(1, 3)


def test_multi_select_rejects_sentinel_mixed_with_options() -> None:
    with pytest.raises(AnswerValidationError):
        parse_answer(_multi(), "1,4")


def test_sentinel_uses_next_line_verbatim() -> None:
    answer = parse_answer(_single(), "4\n  keep   spacing ")

    assert answer == Answer.free_text("  keep   spacing ")


def test_sentinel_without_text_asks_for_free_text() -> None:
    with pytest.raises(AnswerValidationError) as excinfo:
        parse_answer(_single(), "4")
    assert excinfo.value.needs_free_text


def test_empty_answer_required_vs_optional() -> None:
    with pytest.raises(AnswerValidationError):
        parse_answer(_single(), "   ")

    optional = Question.build("o", "Optional", ["a"], required=False)
    assert parse_answer(optional, "").kind is AnswerKind.EMPTY


def test_free_text_question_keeps_input(free_text_question) -> None:
    assert parse_answer(free_text_question, "use httpx") == Answer.free_text("use httpx")


def test_parse_answer_is_pure() -> None:
    question = _multi()
    first = parse_answer(question, "3,1")
    second = parse_answer(question, "3,1")

    assert first == second
    assert question.answer is None


def test_round_manager_enforces_question_cardinality() -> None:
    manager = RoundManager()
    with pytest.raises(RoundConstructionError):
        manager.start_round([])
    with pytest.raises(RoundConstructionError):
        manager.start_round([_single() for _ in range(6)])
    assert manager.rounds_started == 0


def test_round_manager_enforces_round_ceiling() -> None:
    manager = RoundManager(max_rounds=2)
    manager.start_round([_single()])
    second = manager.start_round([_single()])

    assert second.round_number == 2
    with pytest.raises(RoundLimitExceeded) as excinfo:
        manager.start_round([_single()], reason="step failed")
    assert excinfo.value.limit == 2
    assert excinfo.value.reason == "step failed"


def test_round_manager_rejects_max_rounds_above_five() -> None:
    with pytest.raises(ValueError):
        RoundManager(max_rounds=6)


def test_parse_answers_consumes_extra_line_for_sentinel() -> None:
    round_ = RoundManager().start_round([_single(), _multi()])

    answers = parse_answers(round_, "4\nsomething custom\n1,2")

    assert answers == [Answer.free_text("something custom"), Answer.selected(1, 2)]


def test_parse_answers_reports_question_position() -> None:
    round_ = RoundManager().start_round([_single(), _single(question_id="q2")])

    with pytest.raises(AnswerValidationError) as excinfo:
        parse_answers(round_, "1\n9")
    assert str(excinfo.value).startswith("Question 2:")


def test_parse_answers_rejects_missing_and_extra_lines() -> None:
    round_ = RoundManager().start_round([_single(), _single(question_id="q2")])

    with pytest.raises(AnswerValidationError):
        parse_answers(round_, "1")
    with pytest.raises(AnswerValidationError):
        parse_answers(round_, "1\n2\n3")


def test_resolve_round_builds_decisions_and_patches() -> None:
    patch = StepPatch(kind=DeltaKind.STEP_REMOVED, step_id="step-3", description="Skip docs")
    question = Question.build(
        "docs",
        "Update docs?",
        ["Yes", Option(title="No", patches=[patch])],
        key="docs",
    )
    round_ = RoundManager().start_round([question, _multi()])

    resolution = resolve_round(round_, [Answer.selected(2), Answer.selected(1, 3)])

    assert [(item.key, item.value, item.source_round) for item in resolution.decisions] == [
        ("docs", "No", 1),
        ("m", "alpha, gamma", 1),
    ]
    assert resolution.patches == [patch]


def test_collect_answer_block_reads_follow_up_for_sentinel() -> None:
    round_ = RoundManager().start_round([_single(), _single(question_id="q2")])
    lines = iter(["4", "my own idea", "2", "ignored"])

    block = collect_answer_block(round_, lambda: next(lines, None))

    assert block == "4\nmy own idea\n2"


def test_format_answers_round_trips_through_parser() -> None:
    round_ = RoundManager().start_round([_single(), _multi()])
    answers = [Answer.free_text("use   a\nqueue"), Answer.selected(1, 2)]

    block = format_answers(round_, answers)

    assert block == "use a queue\n1,2"
    assert parse_answers(round_, block) == [Answer.free_text("use a queue"), Answer.selected(1, 2)]


def test_normalize_free_text_collapses_whitespace() -> None:
    assert normalize_free_text("  a\n\tb   c ") == "a b c"


def test_parse_decision_points_reads_questions_and_options() -> None:
    text = "\n".join(
        [
            "Goal",
            "Add retries.",
            "",
            "Decision points",
            "1) **Backoff** (single-select): Which backoff strategy?",
            "  1. Exponential",
            "     Doubles the delay each attempt.",
            "  2. Fixed delay",
            "  3. (None) Type your answer",
            "2) **Targets** (multi-select): Which calls need retries?",
            "  1. GET",
            "  2. POST",
            "",
            "Checkpoints",
            "- tests pass",
        ]
    )

    questions = parse_decision_points(text)

    assert questions is not None
    backoff, targets = questions
    assert backoff.key == "backoff"
    assert backoff.type is QuestionType.SINGLE_SELECT
    assert [option.title for option in backoff.options] == ["Exponential", "Fixed delay", SENTINEL_TITLE]
    assert backoff.options[0].description == "Doubles the delay each attempt."
    assert targets.type is QuestionType.MULTI_SELECT
    assert [option.title for option in targets.options] == ["GET", "POST", SENTINEL_TITLE]


def test_parse_decision_points_without_section_returns_none() -> None:
    assert parse_decision_points("Goal\nNothing to decide.") is None


def test_parse_decision_points_without_options_becomes_free_text() -> None:
    questions = parse_decision_points("Decision points\n1) **Naming**: What should the module be called?")

    assert questions is not None
    assert questions[0].type is QuestionType.FREE_TEXT
    assert questions[0].options == []


def test_option_titles_mentioning_select_types_stay_options() -> None:
    text = "\n".join(
        [
            "Decision points",
            "1) **Inputs** (multi-select): Which inputs should the form offer?",
            "  1. A free-text notes field",
            "  2. Select all recipients",
            "  3. Single-select priority dropdown",
        ]
    )

    questions = parse_decision_points(text)

    assert questions is not None
    assert len(questions) == 1
    assert [option.title for option in questions[0].options] == [
        "A free-text notes field",
        "Select all recipients",
        "Single-select priority dropdown",
        SENTINEL_TITLE,
    ]
