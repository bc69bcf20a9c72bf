"""Planner client for a JSON Responses endpoint reached over plain HTTP."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Iterator, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesClient"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]

DEFAULT_BASE_URL = "https://api.openai.com/v1/responses"
API_KEY_VARIABLES = ("PLANMODE_API_KEY", "OPENAI_API_KEY")


def _env_api_key() -> Optional[str]:
    for name in API_KEY_VARIABLES:
        value = os.getenv(name)
        if value:
            return value
    return None


class ResponsesClient(LLMClient):
    """Planner model behind a Responses-style endpoint.

    ``transport`` replaces the HTTP call entirely, which is how tests and
    embedding hosts route requests through their own connection handling.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or _env_api_key()
        if transport is None and not self._api_key:
            raise ValueError(
                "Set one of " + ", ".join(API_KEY_VARIABLES) + " or pass api_key to reach the planner endpoint."
            )
        self._endpoint = base_url
        self._timeout = timeout
        self._send = transport or self._post

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            body = self._send(payload)
        except LLMTransportError:
            raise
        except Exception as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = self._output_text(body)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return text

    def _post(self, payload: Dict[str, Any]) -> str:
        LOGGER.debug("POST %s model=%s", self._endpoint, payload.get("model"))
        request = urllib.request.Request(
            self._endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            excerpt = error.read().decode("utf-8", errors="replace")[:500]
            raise LLMTransportError(f"Planner endpoint answered HTTP {error.code}: {excerpt}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Planner endpoint unreachable: {error.reason}") from error
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Planner request exceeded {self._timeout:g}s.") from error

    @classmethod
    def _output_text(cls, body: str) -> Optional[str]:
        """Return the first text chunk of a Responses envelope, or ``body`` if it is not JSON."""
        try:
            envelope = json.loads(body)
        except json.JSONDecodeError:
            return body if body.strip() else None
        if not isinstance(envelope, dict):
            return None
        shortcut = envelope.get("output_text")
        if isinstance(shortcut, str):
            return shortcut
        return next(cls._text_chunks(envelope), None)

    @staticmethod
    def _text_chunks(envelope: Dict[str, Any]) -> Iterator[str]:
        for item in envelope.get("output") or []:
            if not isinstance(item, dict):
                continue
            for chunk in item.get("content") or []:
                if isinstance(chunk, dict) and chunk.get("type") == "output_text" and isinstance(chunk.get("text"), str):
                    yield chunk["text"]
