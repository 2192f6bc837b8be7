"""Shared LLM client utilities."""

from rankscope.llm.client import (
    LLMCallResult,
    call_model,
    get_anthropic_client,
    parse_llm_json_response,
)

__all__ = [
    "LLMCallResult",
    "call_model",
    "get_anthropic_client",
    "parse_llm_json_response",
]
