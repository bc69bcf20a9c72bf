"""Convenience exports for planner LLM client implementations."""

from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .offline import OfflineLLMClient
from .responses import ResponsesClient

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "OfflineLLMClient",
    "ResponsesClient",
]
