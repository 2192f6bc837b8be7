"""Collaborator factory.

Builds the production collaborator set from environment configuration.
Rank checkers whose credentials are missing are left out; the orchestrator
then reports rankings as unknown for jobs that select that engine.
"""

import logging

from rankscope import config
from rankscope.collaborators.base import Collaborators, RankChecker
from rankscope.collaborators.competitor_finder import PlacesCompetitorFinder
from rankscope.collaborators.keyword_generator import ClaudeKeywordGenerator
from rankscope.collaborators.rank_checker import GoogleRankChecker, NaverRankChecker
from rankscope.collaborators.scraper import HttpScraper
from rankscope.executor.schemas import SearchEngine

logger = logging.getLogger(__name__)


def build_collaborators(timeout: float = 30.0) -> Collaborators:
    """Wire the concrete collaborators from config.

    Args:
        timeout: Transport timeout for each outbound call (seconds)
    """
    rank_checkers: dict[str, RankChecker] = {}
    if config.NAVER_CLIENT_ID and config.NAVER_CLIENT_SECRET:
        rank_checkers[SearchEngine.NAVER.value] = NaverRankChecker(
            config.NAVER_CLIENT_ID,
            config.NAVER_CLIENT_SECRET,
            timeout=min(timeout, 10.0),
        )
    if config.GOOGLE_SEARCH_API_KEY and config.GOOGLE_SEARCH_ENGINE_ID:
        rank_checkers[SearchEngine.GOOGLE.value] = GoogleRankChecker(
            config.GOOGLE_SEARCH_API_KEY,
            config.GOOGLE_SEARCH_ENGINE_ID,
            timeout=min(timeout, 10.0),
        )

    missing = [e.value for e in SearchEngine if e.value not in rank_checkers]
    if missing:
        logger.warning(f"Rank checking not configured for: {', '.join(missing)}")
    if not config.ANTHROPIC_API_KEY:
        logger.warning("ANTHROPIC_API_KEY not set; keyword generation will use the content fallback")

    return Collaborators(
        scraper=HttpScraper(timeout=timeout),
        keyword_generator=ClaudeKeywordGenerator(
            model=config.KEYWORD_MODEL,
            api_key=config.ANTHROPIC_API_KEY,
            timeout=timeout,
        ),
        rank_checkers=rank_checkers,
        competitor_finder=PlacesCompetitorFinder(
            config.GOOGLE_PLACES_API_KEY,
            timeout=min(timeout, 10.0),
        ),
    )
