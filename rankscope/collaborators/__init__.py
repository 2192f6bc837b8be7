"""External collaborators driven by the orchestrator.

- base: Protocols and data carriers (ScrapedContent, KeywordAnalysis, RankCheckResult)
- scraper: httpx fetch + BeautifulSoup extraction
- keyword_generator: Claude keyword generation
- rank_checker: Naver / Google Custom Search rank lookup
- competitor_finder: Google Places competitor discovery
- factory: build_collaborators() from environment config
"""
