from __future__ import annotations

import json
from typing import Any, Dict

import pytest
from pydantic import BaseModel

from planmode.models import OfflineLLMClient, ResponsesClient
from planmode.models.llm_client import (
    LLMClient,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
)
from planmode.planner import PlanContext, PlannerDraft, StructuredPlanner, build_planner_prompt
from planmode.graph import PlanGraph, StepStatus
from planmode.ledger import Decision


class Verdict(BaseModel):
    verdict: str
    score: int


class QueueClient(LLMClient):
    def __init__(self, responses: list[str]) -> None:
        super().__init__("stub", max_attempts=2, retry_delay=0)
        self.responses = responses
        self.payloads: list[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        return self.responses.pop(0)


def test_parse_json_repairs_fenced_payload_with_trailing_comma() -> None:
    raw = 'Here you go:\n```json\n{"verdict": "ok", "score": 3,}\n```'

    assert LLMClient._parse_json(raw) == {"verdict": "ok", "score": 3}


def test_parse_json_accepts_python_literals() -> None:
    assert LLMClient._parse_json("{'verdict': 'ok', 'score': 1}") == {"verdict": "ok", "score": 1}


def test_parse_json_rejects_empty_and_garbage() -> None:
    with pytest.raises(LLMResponseFormatError):
        LLMClient._parse_json("   ")
    with pytest.raises(LLMResponseFormatError):
        LLMClient._parse_json("no json here")


def test_invoke_retries_after_validation_error() -> None:
    client = QueueClient(['{"verdict": "ok"}', '{"verdict": "ok", "score": 2}'])

    result = client.invoke(LLMRequest(prompt="rate", response_model=Verdict))

    assert result == Verdict(verdict="ok", score=2)
    assert len(client.payloads) == 2


def test_invoke_raises_after_exhausting_attempts() -> None:
    client = QueueClient(["nope", "still nope"])

    with pytest.raises(LLMRetryError):
        client.invoke(LLMRequest(prompt="rate", response_model=Verdict))


def test_request_payload_closes_schema_and_stringifies_metadata() -> None:
    request = LLMRequest(
        prompt="rate",
        response_model=Verdict,
        system_prompt="be strict",
        metadata={"phase": "draft", "attempt": 2},
    )

    payload = request.to_payload("stub")

    assert [message["role"] for message in payload["input"]] == ["developer", "user"]
    schema = payload["text"]["format"]["schema"]
    assert schema["additionalProperties"] is False
    assert schema["required"] == ["verdict", "score"]
    assert payload["metadata"] == {"phase": "draft", "attempt": "2"}


def test_responses_client_reads_output_text_from_envelope() -> None:
    sent: list[Dict[str, Any]] = []

    def transport(payload: Dict[str, Any]) -> str:
        sent.append(payload)
        return json.dumps(
            {"output": [{"content": [{"type": "output_text", "text": '{"verdict": "fine", "score": 5}'}]}]}
        )

    client = ResponsesClient(model="planner-large", transport=transport)

    assert client.invoke(LLMRequest(prompt="rate", response_model=Verdict)).score == 5
    assert sent[0]["model"] == "planner-large"


def test_responses_client_wraps_transport_errors() -> None:
    def transport(payload: Dict[str, Any]) -> str:
        raise ConnectionError("reset by peer")

    client = ResponsesClient(model="m", transport=transport, max_attempts=1, retry_delay=0)

    with pytest.raises(LLMRetryError):
        client.invoke(LLMRequest(prompt="rate", response_model=Verdict))


def test_responses_client_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PLANMODE_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        ResponsesClient(model="m")


def test_offline_planner_drafts_questions_then_replans_without_them() -> None:
    planner = StructuredPlanner(OfflineLLMClient())

    first = planner.draft(PlanContext(goal="add caching"))
    assert [step.id for step in first.steps] == ["step-1", "step-2", "step-3"]
    assert [question.decision_key for question in first.round_questions()] == ["scope", "verification"]

    live = first.graph()
    live.require("step-1").status = StepStatus.DONE
    second = planner.draft(PlanContext(goal="add caching", live_graph=live, guidance="use an LRU"))

    assert second.questions == []
    assert second.steps[1].description == "Implement: add caching (use an LRU)"


def test_draft_falls_back_to_plan_text_decision_points() -> None:
    draft = PlannerDraft(
        goal="g",
        plan_text="Decision points\n1) **Store** (single-select): Where?\n  1. Redis\n  2. Memory",
    )

    questions = draft.round_questions()

    assert [question.key for question in questions] == ["store"]


def test_build_planner_prompt_lists_decisions_and_live_plan() -> None:
    live = PlanGraph(goal="g", version=3, steps=[])
    context = PlanContext(
        goal="add caching",
        files=("src", "tests"),
        decisions=(Decision(key="scope", value="Minimal change", source_round=1),),
        live_graph=live,
    )

    prompt = build_planner_prompt(context)

    assert prompt.startswith("Goal: add caching")
    assert "- scope: Minimal change" in prompt
    assert "Current plan (version 3):" in prompt
