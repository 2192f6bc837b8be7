"""AI keyword generator backed by Anthropic Claude.

The prompt is a Jinja2 template rendered from the scraped content. The
reply must be a single JSON object; its keyword list is returned as-is and
validated by the orchestrator, never trusted verbatim.
"""

import json
import logging
from typing import Optional

from anthropic import Anthropic
from jinja2 import BaseLoader, Environment, TemplateError

from rankscope.collaborators.base import KeywordAnalysis, ScrapedContent
from rankscope.executor.errors import GenerationError
from rankscope.llm.client import call_model, get_anthropic_client, parse_llm_json_response

logger = logging.getLogger(__name__)

CONTENT_SAMPLE_CHARS = 1500
MAX_OUTPUT_TOKENS = 4096

SYSTEM_PROMPT = (
    "You are an SEO keyword researcher specialising in Korean search behaviour "
    "(Naver and Google Korea). You answer with a single JSON object and nothing else."
)

PROMPT_TEMPLATE = """\
Analyze this website and recommend the search keywords it should rank for.

## Website
- URL: {{ content.url }}
- Title: {{ content.title }}
- Description: {{ content.description }}
{% if content.business_category %}
- Business type: {{ content.business_category }}
{% endif %}

## Page structure
- H1: {{ content.headings.get("h1", []) | join(", ") }}
- H2: {{ content.headings.get("h2", [])[:5] | join(", ") }}
- Seed keywords: {{ content.keyword_seed[:30] | join(", ") }}
- Meta tags: {{ meta_tags }}

## Content sample
{{ sample }}

Recommend 40-50 keywords: 8-10 primary (high volume, core business),
15-20 secondary (supporting services and topics) and 15-20 long-tail
(specific phrases, local terms, questions). For each keyword give a
relevance score (0-100), estimated monthly search volume, competition
(low/medium/high), estimated CPC in Korean Won, search intent
(informational/navigational/transactional/commercial), seasonality
(stable/seasonal/trending) and 3-5 related keywords.

Respond with JSON only, in exactly this shape:
{
  "keywords": [
    {
      "keyword": "...",
      "relevance": 95,
      "category": "primary",
      "searchIntent": "transactional",
      "estimatedSearchVolume": 12000,
      "competitionLevel": "medium",
      "estimatedCPC": 850,
      "seasonality": "stable",
      "relatedKeywords": ["...", "..."]
    }
  ],
  "contentSummary": "one paragraph on what the business offers and to whom",
  "marketSummary": "one paragraph on market size and competition",
  "marketTrends": ["..."],
  "opportunities": ["..."]
}
"""

_env = Environment(loader=BaseLoader(), autoescape=False, trim_blocks=True, lstrip_blocks=True)


def build_prompt(content: ScrapedContent) -> str:
    """Render the keyword prompt for one scraped page."""
    try:
        template = _env.from_string(PROMPT_TEMPLATE)
        return template.render(
            content=content,
            meta_tags=json.dumps(content.meta_tags, ensure_ascii=False)[:1000],
            sample=content.content[:CONTENT_SAMPLE_CHARS],
        ).strip()
    except TemplateError as e:
        raise GenerationError(f"Prompt rendering failed: {e}") from e


def parse_analysis(raw_text: str, model_id: Optional[str] = None) -> KeywordAnalysis:
    """Turn the model reply into a KeywordAnalysis; raises GenerationError."""
    try:
        data = parse_llm_json_response(raw_text)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Invalid JSON response from AI: {e}") from e
    if not isinstance(data, dict):
        raise GenerationError("AI response is not a JSON object")

    keywords = data.get("keywords")
    if not isinstance(keywords, list):
        raise GenerationError("AI response has no keyword list")

    def text(key: str) -> str:
        value = data.get(key)
        return value.strip() if isinstance(value, str) else ""

    def strings(key: str) -> list[str]:
        value = data.get(key)
        return [v for v in value if isinstance(v, str)] if isinstance(value, list) else []

    return KeywordAnalysis(
        keywords=[k for k in keywords if isinstance(k, dict)],
        content_summary=text("contentSummary"),
        market_summary=text("marketSummary"),
        market_trends=strings("marketTrends"),
        opportunities=strings("opportunities"),
        model_id=model_id,
    )


class ClaudeKeywordGenerator:
    """KeywordGenerator that asks Claude for a keyword set."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[Anthropic] = None,
    ):
        self.model = model
        self._client = client or get_anthropic_client(api_key, timeout=timeout)

    def analyze(self, content: ScrapedContent) -> KeywordAnalysis:
        if self._client is None:
            raise GenerationError("AI keyword generation unavailable. Set ANTHROPIC_API_KEY.")

        prompt = build_prompt(content)
        logger.info(f"Requesting keywords for {content.url} from {self.model} ({len(prompt):,} chars)")
        try:
            result = call_model(
                self._client,
                prompt,
                model=self.model,
                max_tokens=MAX_OUTPUT_TOKENS,
                system_prompt=SYSTEM_PROMPT,
            )
        except RuntimeError as e:
            raise GenerationError(str(e)) from e

        analysis = parse_analysis(result.content, model_id=result.model_id)
        logger.info(f"{result.model_id} proposed {len(analysis.keywords)} keywords for {content.url}")
        return analysis
