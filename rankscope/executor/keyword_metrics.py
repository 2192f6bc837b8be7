"""Pure keyword functions: validation, fallback extraction, enrichment, statistics.

None of these touch the network or the job store. Estimates that the
generator leaves out are derived deterministically from the keyword text
(a CRC of the keyword stands in for market noise), so the same content
always produces the same keyword set.
"""

import logging
import math
import re
import zlib
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from rankscope.collaborators.base import KeywordAnalysis, ScrapedContent
from rankscope.executor.schemas import (
    CompetitionLevel,
    FinalStatistics,
    KeywordCategory,
    KeywordWorkItem,
    RankingStatus,
    SearchIntent,
    Seasonality,
)

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 50
MIN_KEYWORDS = 30
TOP_UP_TARGET = 45
MAX_TOP_UP = 20
MAX_RELATED = 5
MAX_INSIGHTS = 5
MAX_WORDS_PER_TEXT = 20
MAX_SEED_KEYWORDS = 30

_HANGUL_WORD = re.compile(r"[가-힣]{2,}")
_LATIN_WORD = re.compile(r"[a-zA-Z]{3,}")
_HANGUL_CHAR = re.compile(r"[가-힣]")
_DIGIT = re.compile(r"\d")

STOP_WORDS = frozenset({
    "and", "or", "but", "the", "a", "an", "is", "are", "was", "were",
    "have", "has", "had", "for", "with", "from", "this", "that", "you", "your",
    "그리고", "또는", "하지만", "그런데", "이것", "저것",
    "입니다", "있습니다", "없습니다", "통해", "위해",
})

INTENT_PATTERNS: list[tuple[SearchIntent, tuple[str, ...]]] = [
    (SearchIntent.TRANSACTIONAL, ("구매", "예약", "신청", "주문", "결제", "buy", "order", "book", "purchase")),
    (SearchIntent.COMMERCIAL, ("가격", "비용", "요금", "할인", "비교", "price", "cost", "cheap", "discount")),
    (SearchIntent.NAVIGATIONAL, ("사이트", "홈페이지", "로그인", "website", "site", "login", "official")),
]

RELATED_SUFFIXES = ("{} 가격", "{} 예약", "{} 후기", "최고의 {}", "{} 추천")


@dataclass
class KeywordSet:
    """Validated output of phase 2, ready for enrichment."""

    keywords: list[KeywordWorkItem] = field(default_factory=list)
    content_summary: str = ""
    market_summary: str = ""
    market_trends: list[str] = field(default_factory=list)
    opportunities: list[str] = field(default_factory=list)
    used_fallback: bool = False


# --- Text helpers ---


def extract_keywords_from_text(text: Optional[str]) -> list[str]:
    """Candidate keywords from free text: Hangul words first, then Latin words."""
    if not text:
        return []
    words = _HANGUL_WORD.findall(text) + _LATIN_WORD.findall(text)
    cleaned = [w.lower().strip() for w in words]
    return [w for w in cleaned if len(w) >= 2 and w not in STOP_WORDS][:MAX_WORDS_PER_TEXT]


def infer_search_intent(keyword: str) -> SearchIntent:
    lowered = keyword.lower()
    for intent, patterns in INTENT_PATTERNS:
        if any(p in lowered for p in patterns):
            return intent
    return SearchIntent.INFORMATIONAL


def _jitter(keyword: str, low: float, span: float) -> float:
    # Stable per-keyword factor in [low, low + span)
    bucket = zlib.crc32(keyword.lower().encode("utf-8")) % 1000
    return low + span * bucket / 1000.0


def estimate_search_volume(keyword: str) -> int:
    volume = 1000.0
    if _HANGUL_CHAR.search(keyword):
        volume *= 1.5
    if len(keyword) <= 5:
        volume *= 2
    if len(keyword) > 10:
        volume *= 0.5
    volume = math.floor(volume * _jitter(keyword, 0.5, 1.0))
    return int(max(100, min(50_000, volume)))


def estimate_competition(keyword: str) -> CompetitionLevel:
    if len(keyword) > 12 or _DIGIT.search(keyword):
        return CompetitionLevel.LOW
    if len(keyword) < 6:
        return CompetitionLevel.HIGH
    return CompetitionLevel.MEDIUM


def estimate_cpc(keyword: str) -> int:
    """Cost-per-click estimate in KRW."""
    intent = infer_search_intent(keyword)
    competition = estimate_competition(keyword)
    cpc = 500.0
    if intent == SearchIntent.TRANSACTIONAL:
        cpc *= 2
    if intent == SearchIntent.COMMERCIAL:
        cpc *= 1.5
    if competition == CompetitionLevel.HIGH:
        cpc *= 1.8
    if competition == CompetitionLevel.LOW:
        cpc *= 0.6
    return int(math.floor(cpc * _jitter(keyword, 0.7, 0.6)))


def generate_related_keywords(keyword: str) -> list[str]:
    related = []
    if "클리닉" in keyword:
        related += [keyword.replace("클리닉", "병원"), keyword.replace("클리닉", "의원")]
    if "beauty" in keyword:
        related += [keyword.replace("beauty", "뷰티"), f"{keyword} salon"]
    related += [template.format(keyword) for template in RELATED_SUFFIXES]
    return [r for r in related if r != keyword][:MAX_RELATED]


# --- Validation ---


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _choice(enum_cls, value: Any, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _string_list(value: Any, limit: int) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()][:limit]


def validate_keyword(raw: dict[str, Any]) -> Optional[KeywordWorkItem]:
    """Clamp one generator entry into a KeywordWorkItem; None if unusable."""
    if not isinstance(raw, dict):
        return None
    keyword = raw.get("keyword")
    if not isinstance(keyword, str) or not keyword.strip():
        return None
    keyword = keyword.strip()

    relevance = _number(raw.get("relevance")) or 50
    volume = _number(raw.get("estimatedSearchVolume", raw.get("estimated_search_volume")))
    cpc = _number(raw.get("estimatedCPC", raw.get("estimated_cpc")))
    related = _string_list(raw.get("relatedKeywords", raw.get("related_keywords")), MAX_RELATED)

    return KeywordWorkItem(
        keyword=keyword,
        relevance=int(round(max(0, min(100, relevance)))),
        category=_choice(KeywordCategory, raw.get("category"), KeywordCategory.SECONDARY),
        search_intent=_choice(
            SearchIntent,
            raw.get("searchIntent", raw.get("search_intent")),
            SearchIntent.INFORMATIONAL,
        ),
        estimated_search_volume=int(max(0, volume)) if volume else estimate_search_volume(keyword),
        competition_level=_choice(
            CompetitionLevel,
            raw.get("competitionLevel", raw.get("competition_level")),
            CompetitionLevel.MEDIUM,
        ),
        estimated_cpc=int(max(0, cpc)) if cpc else estimate_cpc(keyword),
        seasonality=_choice(Seasonality, raw.get("seasonality"), Seasonality.STABLE),
        related_keywords=related if related is not None else generate_related_keywords(keyword),
    )


def content_keywords(content: ScrapedContent) -> list[str]:
    """Unique candidate keywords from title, description, h1/h2 and the seed list."""
    candidates: list[str] = []
    candidates += extract_keywords_from_text(content.title)
    candidates += extract_keywords_from_text(content.description)
    for heading in content.headings.get("h1", []):
        candidates += extract_keywords_from_text(heading)
    for heading in content.headings.get("h2", []):
        candidates += extract_keywords_from_text(heading)
    candidates += [k.strip() for k in content.keyword_seed[:MAX_SEED_KEYWORDS] if k and k.strip()]
    return _unique(candidates)


def _unique(words: Iterable[str], seen: Optional[set[str]] = None) -> list[str]:
    seen = set() if seen is None else seen
    result = []
    for word in words:
        key = word.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(word)
    return result


def build_content_keywords(
    content: ScrapedContent,
    needed: int,
    exclude: Optional[set[str]] = None,
) -> list[KeywordWorkItem]:
    """Keyword items derived from scraped content, ranked by position."""
    words = _unique(content_keywords(content), seen=set(exclude or ()))[:max(0, needed)]
    items = []
    for index, word in enumerate(words):
        if index < 3:
            category = KeywordCategory.PRIMARY
        elif index < 10:
            category = KeywordCategory.SECONDARY
        else:
            category = KeywordCategory.LONG_TAIL
        items.append(KeywordWorkItem(
            keyword=word,
            relevance=max(30, 90 - index * 3),
            category=category,
            search_intent=infer_search_intent(word),
            estimated_search_volume=estimate_search_volume(word),
            competition_level=estimate_competition(word),
            estimated_cpc=estimate_cpc(word),
            seasonality=Seasonality.STABLE,
            related_keywords=generate_related_keywords(word),
        ))
    return items


def validate_analysis(analysis: KeywordAnalysis, content: ScrapedContent) -> KeywordSet:
    """Turn an untrusted generator payload into a clean KeywordSet.

    Drops unusable and duplicate entries, clamps scores and enumerations,
    caps the list at MAX_KEYWORDS, and tops it up from the page content
    when fewer than MIN_KEYWORDS survive.
    """
    raw_keywords = analysis.keywords if isinstance(analysis.keywords, list) else []
    keywords: list[KeywordWorkItem] = []
    seen: set[str] = set()
    dropped = 0
    for raw in raw_keywords:
        item = validate_keyword(raw)
        if item is None or item.keyword.lower() in seen:
            dropped += 1
            continue
        seen.add(item.keyword.lower())
        keywords.append(item)
        if len(keywords) >= MAX_KEYWORDS:
            break
    if dropped:
        logger.info(f"Dropped {dropped} invalid or duplicate keyword entries")

    if len(keywords) < MIN_KEYWORDS:
        needed = min(MAX_TOP_UP, TOP_UP_TARGET - len(keywords))
        extra = build_content_keywords(content, needed, exclude=seen)
        logger.info(f"Topping up {len(keywords)} generated keywords with {len(extra)} from content")
        keywords += extra

    return KeywordSet(
        keywords=keywords,
        content_summary=str(analysis.content_summary or content.title or "Website Content"),
        market_summary=str(analysis.market_summary or ""),
        market_trends=_string_list(analysis.market_trends, MAX_INSIGHTS) or [],
        opportunities=_string_list(analysis.opportunities, MAX_INSIGHTS) or [],
        used_fallback=False,
    )


def fallback_analysis(content: ScrapedContent) -> KeywordSet:
    """Deterministic keyword set used when the AI generator is unavailable."""
    keywords = build_content_keywords(content, TOP_UP_TARGET)
    return KeywordSet(
        keywords=keywords,
        content_summary=content.title or "Website Content",
        market_summary="",
        used_fallback=True,
    )


# --- Enrichment & statistics ---


def enrich_keyword(item: KeywordWorkItem) -> KeywordWorkItem:
    """Refine volume, competition and CPC from category and intent.

    Every rule reads the incoming values, so the result does not depend on
    the order the adjustments are applied in.
    """
    volume = float(item.estimated_search_volume)
    if item.category == KeywordCategory.PRIMARY:
        volume *= 1.5
    if item.search_intent == SearchIntent.TRANSACTIONAL:
        volume *= 0.8
    if item.competition_level == CompetitionLevel.HIGH:
        volume *= 1.3

    if item.search_intent == SearchIntent.TRANSACTIONAL and item.estimated_search_volume > 1000:
        competition = CompetitionLevel.HIGH
    elif item.category == KeywordCategory.PRIMARY and item.estimated_search_volume > 500:
        competition = CompetitionLevel.MEDIUM
    elif len(item.keyword) > 10:
        competition = CompetitionLevel.LOW
    else:
        competition = item.competition_level

    cpc = float(item.estimated_cpc)
    if item.search_intent == SearchIntent.TRANSACTIONAL:
        cpc *= 1.8
    if item.search_intent == SearchIntent.COMMERCIAL:
        cpc *= 1.4
    if item.competition_level == CompetitionLevel.HIGH:
        cpc *= 1.6
    if item.category == KeywordCategory.PRIMARY:
        cpc *= 1.3

    return item.model_copy(update={
        "estimated_search_volume": max(50, int(round(volume))),
        "competition_level": competition,
        "estimated_cpc": max(100, int(round(cpc))),
    })


def is_opportunity(item: KeywordWorkItem, volume_threshold: int) -> bool:
    return (
        item.competition_level == CompetitionLevel.LOW
        and item.estimated_search_volume > volume_threshold
    )


def compute_final_statistics(items: list[KeywordWorkItem], opportunity_volume: int = 500) -> FinalStatistics:
    """Aggregate metrics over the full keyword set (all zeros when empty)."""
    total = len(items)
    if total == 0:
        return FinalStatistics()

    def count(category: KeywordCategory) -> int:
        return sum(1 for k in items if k.category == category)

    high = sum(1 for k in items if k.competition_level == CompetitionLevel.HIGH)
    return FinalStatistics(
        total_keywords=total,
        primary_keywords=count(KeywordCategory.PRIMARY),
        secondary_keywords=count(KeywordCategory.SECONDARY),
        long_tail_keywords=count(KeywordCategory.LONG_TAIL),
        opportunity_keywords=sum(1 for k in items if is_opportunity(k, opportunity_volume)),
        ranked_keywords=sum(1 for k in items if k.ranking_status == RankingStatus.RANKED),
        avg_search_volume=int(round(sum(k.estimated_search_volume for k in items) / total)),
        avg_competition=round(high / total, 2),
        avg_cpc=int(round(sum(k.estimated_cpc for k in items) / total)),
    )
