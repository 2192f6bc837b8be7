"""Shared client for the Anthropic Claude API.

Used by the keyword generator collaborator. Kept separate so that other
AI-backed collaborators can share client construction, model fallback and
JSON response parsing.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from anthropic import Anthropic

from rankscope import config

logger = logging.getLogger(__name__)

# Default models
KEYWORD_MODEL_FALLBACK = "claude-sonnet-4-5-20250929"


@dataclass
class LLMCallResult:
    """Normalized response from a model call."""

    content: str
    model_id: str
    input_tokens: int
    output_tokens: int
    duration_ms: int


def get_anthropic_client(api_key: Optional[str] = None, timeout: float = 30.0) -> Optional[Anthropic]:
    """Get an Anthropic client if an API key is available.

    Returns None if no key is configured.
    """
    key = api_key if api_key is not None else config.ANTHROPIC_API_KEY
    if not key:
        return None
    return Anthropic(
        api_key=key,
        timeout=httpx.Timeout(
            connect=10.0,
            read=timeout,
            write=30.0,
            pool=10.0,
        ),
        max_retries=1,
    )


def parse_llm_json_response(raw_text: str) -> dict:
    """Parse JSON from an LLM response, handling markdown code fences.

    Raises:
        json.JSONDecodeError: If the text cannot be parsed as JSON
    """
    content = raw_text.strip()

    # Strip leading markdown fence (```json or ```)
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]

    # Strip trailing fence
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]

    content = content.strip()
    # Some replies wrap the object in prose; keep the outermost braces
    if not content.startswith("{"):
        start, end = content.find("{"), content.rfind("}")
        if start != -1 and end > start:
            content = content[start:end + 1]
    return json.loads(content)


def call_model(
    client: Anthropic,
    prompt: str,
    *,
    model: str,
    fallback_model: Optional[str] = KEYWORD_MODEL_FALLBACK,
    max_tokens: int = 8000,
    system_prompt: Optional[str] = None,
) -> LLMCallResult:
    """Call Claude, retrying once on the fallback model.

    Raises:
        RuntimeError: If every model attempt fails
    """
    kwargs = {
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system_prompt:
        kwargs["system"] = system_prompt

    models = [model] + ([fallback_model] if fallback_model and fallback_model != model else [])
    for attempt_model in models:
        start_time = time.time()
        try:
            response = client.messages.create(model=attempt_model, **kwargs)
        except Exception as e:
            if attempt_model == models[-1]:
                raise RuntimeError(f"All models failed ({', '.join(models)}): {e}") from e
            logger.warning(f"Model {attempt_model} failed, trying {models[-1]}: {e}")
            continue

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        result = LLMCallResult(
            content=text,
            model_id=attempt_model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        logger.info(
            f"{attempt_model} responded in {result.duration_ms:,}ms "
            f"({result.input_tokens:,} in / {result.output_tokens:,} out)"
        )
        return result

    raise RuntimeError("All model attempts exhausted")
