"""Convenience exports for LLM client implementations."""

from .gpt5 import GPT5Client
from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMRetryError,
    LLMTransportError,
)

__all__ = [
    "GPT5Client",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMRetryError",
    "LLMTransportError",
]
