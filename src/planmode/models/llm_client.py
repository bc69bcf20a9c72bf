"""Schema-validated planner calls on top of a raw text transport.

Subclasses only supply :meth:`LLMClient._raw_invoke`; this module owns the
request envelope, JSON salvage of chatty model output and the bounded retry
loop that re-asks the model when its answer does not validate.
"""

from __future__ import annotations

import ast
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterator, List, Optional, Tuple, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*\n(?P<body>.*?)```", re.DOTALL)
_DANGLING_COMMA_RE = re.compile(r",(\s*[}\]])")
_SMART_CHARS = str.maketrans(
    {
        "\u201c": "\"",
        "\u201d": "\"",
        "\u2018": "'",
        "\u2019": "'",
        "\u00a0": " ",
        "\ufeff": "",
    }
)


class LLMClientError(RuntimeError):
    """Root of every planner-call failure."""


class LLMTransportError(LLMClientError):
    """The transport could not deliver a reply."""


class LLMResponseFormatError(LLMClientError):
    """The reply could not be decoded into JSON."""


class LLMRetryError(LLMClientError):
    """Every attempt was spent without a schema-valid reply."""


def _closed(schema: Any) -> Any:
    # Strict structured output wants every object closed and fully required.
    if isinstance(schema, list):
        return [_closed(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    if schema.get("type") == "object" and isinstance(schema.get("properties"), dict):
        schema["additionalProperties"] = False
        schema["required"] = [name for name in schema["properties"]]
    elif schema.get("type") == "object":
        schema["additionalProperties"] = False
    return {key: _closed(value) for key, value in schema.items()}


def _text_part(text: str) -> Dict[str, str]:
    return {"type": "input_text", "text": text}


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """One structured question for the planner model."""

    prompt: str
    response_model: Type[T]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_attempts: Optional[int] = None

    @property
    def schema_name(self) -> str:
        return getattr(self.response_model, "__name__", "planmode_response")

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Build the responses-API envelope, falling back to ``default_model``."""
        turns: List[Dict[str, Any]] = []
        if self.system_prompt:
            turns.append({"role": "developer", "content": [_text_part(self.system_prompt)]})
        turns.append({"role": "user", "content": [_text_part(self.prompt)]})

        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": turns,
            "text": {"format": self._format()},
        }
        if self.temperature:
            payload["temperature"] = self.temperature
        tags = self._tags()
        if tags:
            payload["metadata"] = tags
        return payload

    def _format(self) -> Dict[str, Any]:
        return {
            "type": "json_schema",
            "name": self.schema_name,
            "schema": _closed(TypeAdapter(self.response_model).json_schema()),
            "strict": True,
        }

    def _tags(self) -> Dict[str, str]:
        # Transport metadata only carries strings.
        tags: Dict[str, str] = {}
        for key, value in self.metadata.items():
            tags[key] = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
        return tags


class LLMClient:
    """Base client: retries until the reply validates against the request model."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        return self._model

    def invoke(self, request: LLMRequest[T]) -> T:
        """Return only the validated object for ``request``."""
        return self.invoke_structured(request)[0]

    def invoke_structured(self, request: LLMRequest[T]) -> Tuple[T, Any]:
        """Return the validated object together with the decoded JSON it came from."""
        attempts = max(1, request.max_attempts or self._max_attempts)
        adapter = TypeAdapter(request.response_model)
        failures: List[Exception] = []

        while len(failures) < attempts:
            attempt = len(failures) + 1
            try:
                decoded = self._parse_json(self._raw_invoke(request.to_payload(self._model)))
                return adapter.validate_python(decoded), decoded
            except (LLMTransportError, LLMResponseFormatError, ValidationError) as error:
                failures.append(error)
                LOGGER.warning(
                    "Planner call %s/%s for %s failed: %s",
                    attempt,
                    attempts,
                    request.schema_name,
                    _summarise(error),
                )
            if len(failures) < attempts and self._retry_delay:
                time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"No schema-valid reply from model {request.model or self._model} "
            f"after {attempts} attempt(s)"
        ) from failures[-1]

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send ``payload`` and return the model's text reply."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Decode ``raw_response``, tolerating fences, prose and Python literals."""
        text = raw_response.translate(_SMART_CHARS).strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")
        for candidate in _candidates(text):
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pass
            literal = _as_literal(candidate)
            if literal is not None:
                return literal
        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


def _summarise(error: Exception) -> str:
    if isinstance(error, ValidationError):
        return f"{error.error_count()} validation error(s)"
    return str(error)


def _candidates(text: str) -> Iterator[str]:
    """Yield progressively more aggressive readings of ``text``."""
    seen = set()
    fenced = _FENCE_RE.search(text)
    readings = [text]
    if fenced:
        readings.append(fenced.group("body").strip())
    sliced = _first_balanced(readings[-1])
    if sliced:
        readings.append(_DANGLING_COMMA_RE.sub(r"\1", sliced))
    for reading in readings:
        if reading and reading not in seen:
            seen.add(reading)
            yield reading


def _first_balanced(text: str) -> Optional[str]:
    start = None
    closers: List[str] = []
    for index, char in enumerate(text):
        if char == "{" or char == "[":
            if start is None:
                start = index
            closers.append("}" if char == "{" else "]")
        elif closers and char == closers[-1]:
            closers.pop()
            if not closers:
                return text[start : index + 1]
    return None


def _as_literal(candidate: str) -> Any:
    try:
        value = ast.literal_eval(candidate)
    except (SyntaxError, ValueError):
        return None
    if not isinstance(value, (dict, list)):
        return None
    return json.loads(json.dumps(value, default=str))
