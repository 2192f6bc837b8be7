"""Tests for the concrete collaborators, with HTTP stubbed by httpx.MockTransport."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest

from rankscope import config
from rankscope.collaborators.base import (
    CompetitorFinder,
    KeywordGenerator,
    RankChecker,
    ScrapedContent,
    Scraper,
)
from rankscope.collaborators.competitor_finder import PlacesCompetitorFinder, infer_business_type
from rankscope.collaborators.factory import build_collaborators
from rankscope.collaborators.keyword_generator import (
    CONTENT_SAMPLE_CHARS,
    ClaudeKeywordGenerator,
    build_prompt,
    parse_analysis,
)
from rankscope.collaborators.rank_checker import (
    GoogleRankChecker,
    NaverRankChecker,
    clean_html,
    clean_url,
    result_domain,
)
from rankscope.collaborators.scraper import HttpScraper, parse_html
from rankscope.executor.errors import (
    CompetitorLookupError,
    GenerationError,
    RankCheckError,
    ScrapeError,
)
from rankscope.llm.client import call_model, parse_llm_json_response

from conftest import make_content, make_raw_keywords

SAMPLE_HTML = """
<html>
<head>
  <title>Seoul Dental Clinic | 강남 치과</title>
  <meta name="description" content="Implants and whitening in Gangnam">
  <meta name="keywords" content="dental clinic, implant">
  <meta property="og:title" content="Seoul Dental">
  <script type="application/ld+json">{"@type": "MedicalBusiness", "name": "Seoul Dental"}</script>
  <style>.x { color: red }</style>
</head>
<body>
  <h1>Seoul Dental Clinic</h1>
  <h2>Dental Implants</h2>
  <h2>Teeth Whitening</h2>
  <p>Call 02-555-1234 or mail info@seoul-dental.example.com</p>
  <p>서울시 강남구 테헤란로 123</p>
  <img src="a.png" alt="smiling patient">
  <script>var tracking = "ignored";</script>
</body>
</html>
"""


def _transport(handler):
    return httpx.MockTransport(handler)


class TestParseHtml:
    """Extraction from a static page."""

    def test_extracts_page_fields(self):
        content = parse_html(SAMPLE_HTML, "https://seoul-dental.example.com/")

        assert content.title == "Seoul Dental Clinic | 강남 치과"
        assert content.description == "Implants and whitening in Gangnam"
        assert content.headings["h1"] == ["Seoul Dental Clinic"]
        assert content.headings["h2"] == ["Dental Implants", "Teeth Whitening"]
        assert content.meta_tags["og:title"] == "Seoul Dental"
        assert content.business_category == "MedicalBusiness"

    def test_seed_keywords(self):
        seed = parse_html(SAMPLE_HTML, "https://seoul-dental.example.com/").keyword_seed
        assert seed[:2] == ["dental clinic", "implant"]
        assert "강남" in seed
        assert "smiling" in seed
        assert len(seed) == len(set(seed))

    def test_scripts_and_styles_dropped(self):
        content = parse_html(SAMPLE_HTML, "https://seoul-dental.example.com/")
        assert "tracking" not in content.content
        assert "color" not in content.content
        assert content.word_count > 0

    def test_contact_info(self):
        contacts = parse_html(SAMPLE_HTML, "https://seoul-dental.example.com/").contact_info
        assert contacts["phones"] == ["02-555-1234"]
        assert contacts["emails"] == ["info@seoul-dental.example.com"]
        assert contacts["addresses"]


class TestHttpScraper:
    """Fetching and error mapping."""

    def test_scrape_success(self):
        def handler(request):
            assert "Mozilla" in request.headers["user-agent"]
            return httpx.Response(200, text=SAMPLE_HTML, headers={"content-type": "text/html; charset=utf-8"})

        content = HttpScraper(transport=_transport(handler)).scrape("https://seoul-dental.example.com/")
        assert content.title.startswith("Seoul Dental Clinic")
        assert content.url == "https://seoul-dental.example.com/"

    def test_http_error_status(self):
        scraper = HttpScraper(transport=_transport(lambda r: httpx.Response(404)))
        with pytest.raises(ScrapeError, match="HTTP 404 Not Found"):
            scraper.scrape("https://seoul-dental.example.com/")

    def test_non_html_rejected(self):
        scraper = HttpScraper(transport=_transport(
            lambda r: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})
        ))
        with pytest.raises(ScrapeError, match="unsupported content type"):
            scraper.scrape("https://seoul-dental.example.com/file.pdf")

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ScrapeError, match="connection refused"):
            HttpScraper(transport=_transport(handler)).scrape("https://seoul-dental.example.com/")

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ScrapeError, match="timed out"):
            HttpScraper(timeout=5, transport=_transport(handler)).scrape("https://seoul-dental.example.com/")


def _google_page(start, links):
    return {"items": [
        {"link": link, "title": f"Result {start + i}", "snippet": f"snippet {start + i}"}
        for i, link in enumerate(links)
    ]}


class TestRankCheckers:
    """Paging, matching and error mapping."""

    def test_google_finds_position(self):
        requests = []

        def handler(request):
            requests.append(request)
            links = [f"https://other{i}.example.org/" for i in range(10)]
            if request.url.params["start"] == "11":
                links[2] = "https://www.seoul-dental.example.com/implants?utm_source=google&id=5"
            return httpx.Response(200, json=_google_page(int(request.url.params["start"]), links))

        checker = GoogleRankChecker("key", "cx", transport=_transport(handler), page_delay=0)
        result = checker.check("dental implant", "seoul-dental.example.com", max_pages=3)

        assert result.position == 13
        assert result.source_url == "https://www.seoul-dental.example.com/implants?id=5"
        assert result.snippet == "snippet 13"
        assert not result.is_featured
        assert len(requests) == 2
        assert requests[0].url.params["cx"] == "cx"

    def test_featured_on_first_results(self):
        handler = lambda r: httpx.Response(200, json=_google_page(1, ["https://seoul-dental.example.com/"]))
        result = GoogleRankChecker("key", "cx", transport=_transport(handler)).check(
            "seoul dental", "seoul-dental.example.com"
        )
        assert result.position == 1
        assert result.is_featured

    def test_not_found_after_max_pages(self):
        requests = []
        sleeps = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=_google_page(1, [f"https://o{i}.example.org/" for i in range(10)]))

        checker = GoogleRankChecker("key", "cx", transport=_transport(handler), sleep=sleeps.append)
        result = checker.check("dental implant", "seoul-dental.example.com", max_pages=3)

        assert result.position is None
        assert len(requests) == 3
        assert sleeps == [1.0, 1.0]

    def test_short_page_stops_paging(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=_google_page(1, ["https://o.example.org/"]))

        result = GoogleRankChecker("key", "cx", transport=_transport(handler)).check(
            "dental implant", "seoul-dental.example.com", max_pages=5
        )
        assert result.position is None
        assert len(requests) == 1

    @pytest.mark.parametrize("status,message", [
        (429, "rate limit exceeded"),
        (403, "invalid credentials"),
        (500, "HTTP 500"),
    ])
    def test_error_statuses(self, status, message):
        checker = GoogleRankChecker("key", "cx", transport=_transport(lambda r: httpx.Response(status)))
        with pytest.raises(RankCheckError, match=message):
            checker.check("dental implant", "seoul-dental.example.com")

    def test_naver_headers_and_snippet_cleanup(self):
        def handler(request):
            assert request.headers["X-Naver-Client-Id"] == "id"
            assert request.headers["X-Naver-Client-Secret"] == "secret"
            return httpx.Response(200, json={"items": [{
                "link": "https://seoul-dental.example.com/",
                "title": "<b>Seoul</b> Dental",
                "description": "Best <b>implant</b>&amp;whitening",
            }]})

        result = NaverRankChecker("id", "secret", transport=_transport(handler)).check(
            "강남 임플란트", "seoul-dental.example.com"
        )
        assert result.position == 1
        assert result.snippet == "Best implant whitening"

    def test_missing_credentials(self):
        with pytest.raises(RankCheckError):
            NaverRankChecker("", "secret")
        with pytest.raises(RankCheckError):
            GoogleRankChecker("key", "")

    def test_helpers(self):
        assert clean_url("https://a.example.com/p?gclid=1&q=x") == "https://a.example.com/p?q=x"
        assert clean_html("<em>a</em>  &quot;b&quot;") == "a b"

    def test_unicode_result_host_matches_punycode_domain(self):
        handler = lambda r: httpx.Response(200, json={"items": [
            {"link": "https://other.example.org/", "title": "x", "description": ""},
            {"link": "https://www.한국.kr/implant", "title": "한국 치과", "description": ""},
        ]})
        result = NaverRankChecker("id", "secret", transport=_transport(handler)).check(
            "강남 임플란트", "xn--3e0b707e.kr"
        )
        assert result.position == 2
        assert result_domain("https://www.한국.kr/") == "xn--3e0b707e.kr"


class TestPlacesCompetitorFinder:
    """Competitor discovery."""

    def test_without_key_is_unavailable(self):
        assert PlacesCompetitorFinder("").find("https://seoul-dental.example.com/") is None

    def test_lists_competitors(self):
        def handler(request):
            assert request.url.params["query"] == "dental clinic"
            assert request.url.params["region"] == "kr"
            return httpx.Response(200, json={"status": "OK", "results": [
                {"name": "Gangnam Smile", "rating": 4.6, "user_ratings_total": 200,
                 "business_status": "OPERATIONAL", "types": ["dentist", "health"]},
                {"name": "Bright Teeth", "rating": 4.0, "user_ratings_total": 100,
                 "types": ["dentist"]},
                {"name": "Closed Dental", "rating": 1.0, "user_ratings_total": 5,
                 "business_status": "CLOSED_PERMANENTLY", "types": ["dentist"]},
                {"name": "Seoul Dental", "website": "https://seoul-dental.example.com/"},
            ]})

        analysis = PlacesCompetitorFinder("key", transport=_transport(handler)).find(
            "https://seoul-dental.example.com/"
        )

        assert analysis.available
        assert analysis.query == "dental clinic"
        assert [c.name for c in analysis.competitors] == ["Gangnam Smile", "Bright Teeth", "Closed Dental"]
        assert analysis.average_rating == 4.3
        assert analysis.average_review_count == 150.0
        assert analysis.common_types[0] == "dentist"

    def test_category_overrides_inferred_type(self):
        def handler(request):
            assert request.url.params["query"] == "MedicalBusiness"
            return httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})

        analysis = PlacesCompetitorFinder("key", transport=_transport(handler)).find(
            "https://seoul-dental.example.com/", "MedicalBusiness"
        )
        assert analysis.available
        assert analysis.competitors == []
        assert analysis.average_rating is None

    def test_denied_request_raises(self):
        handler = lambda r: httpx.Response(200, json={"status": "REQUEST_DENIED", "error_message": "bad key"})
        with pytest.raises(CompetitorLookupError, match="REQUEST_DENIED bad key"):
            PlacesCompetitorFinder("key", transport=_transport(handler)).find("https://x.example.com/")

    def test_infer_business_type(self):
        assert infer_business_type("https://seoul-dental.example.com/") == "dental clinic"
        assert infer_business_type("https://example.com/") == "business"


def _message(text):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=1200, output_tokens=900),
    )


class TestKeywordGenerator:
    """Prompt rendering, reply parsing and the Claude-backed generator."""

    def test_prompt_contains_page_facts(self):
        content = make_content()
        content.content = "x" * 5000
        prompt = build_prompt(content)

        assert "Seoul Dental Clinic - Implants and Whitening" in prompt
        assert "Business type: MedicalBusiness" in prompt
        assert "Dental Implants, Teeth Whitening" in prompt
        assert "x" * CONTENT_SAMPLE_CHARS in prompt
        assert "x" * (CONTENT_SAMPLE_CHARS + 1) not in prompt

    def test_parse_fenced_reply(self):
        reply = "```json\n" + json.dumps({
            "keywords": make_raw_keywords(3) + ["junk"],
            "contentSummary": " A clinic ",
            "marketTrends": ["implants", 5],
        }) + "\n```"
        analysis = parse_analysis(reply, model_id="claude-test")

        assert len(analysis.keywords) == 3
        assert analysis.content_summary == "A clinic"
        assert analysis.market_trends == ["implants"]
        assert analysis.model_id == "claude-test"

    @pytest.mark.parametrize("reply", ["not json", "[1, 2]", '{"contentSummary": "no keywords"}'])
    def test_parse_rejects_unusable_replies(self, reply):
        with pytest.raises(GenerationError):
            parse_analysis(reply)

    def test_generator_without_client(self):
        generator = ClaudeKeywordGenerator(model="claude-test", api_key="")
        with pytest.raises(GenerationError, match="ANTHROPIC_API_KEY"):
            generator.analyze(make_content())

    def test_generator_calls_model(self):
        client = MagicMock()
        client.messages.create.return_value = _message(json.dumps({"keywords": make_raw_keywords(5)}))

        analysis = ClaudeKeywordGenerator(model="claude-test", client=client).analyze(make_content())

        assert len(analysis.keywords) == 5
        assert analysis.model_id == "claude-test"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert "SEO keyword researcher" in kwargs["system"]

    def test_generator_wraps_api_failure(self):
        client = MagicMock()
        client.messages.create.side_effect = RuntimeError("overloaded")
        with pytest.raises(GenerationError, match="All models failed"):
            ClaudeKeywordGenerator(model="claude-test", client=client).analyze(make_content())
        assert client.messages.create.call_count == 2


class TestLlmClient:
    def test_parse_json_variants(self):
        assert parse_llm_json_response('```\n{"a": 1}\n```') == {"a": 1}
        assert parse_llm_json_response('Here you go: {"a": 2} thanks') == {"a": 2}

    def test_fallback_model_used(self):
        client = MagicMock()
        client.messages.create.side_effect = [Exception("overloaded"), _message("{}")]
        result = call_model(client, "prompt", model="primary", fallback_model="backup")
        assert result.model_id == "backup"
        assert result.input_tokens == 1200


def test_scraped_content_defaults():
    content = ScrapedContent(url="https://example.com/")
    assert content.headings == {"h1": [], "h2": [], "h3": []}
    assert content.word_count == 0


class TestFactory:
    """Wiring from environment configuration."""

    def test_rank_checkers_need_credentials(self, monkeypatch):
        monkeypatch.setattr(config, "NAVER_CLIENT_ID", "id")
        monkeypatch.setattr(config, "NAVER_CLIENT_SECRET", "secret")
        monkeypatch.setattr(config, "GOOGLE_SEARCH_API_KEY", "")
        monkeypatch.setattr(config, "ANTHROPIC_API_KEY", "")
        monkeypatch.setattr(config, "GOOGLE_PLACES_API_KEY", "")

        collaborators = build_collaborators(timeout=5)

        assert set(collaborators.rank_checkers) == {"naver"}
        assert isinstance(collaborators.scraper, Scraper)
        assert isinstance(collaborators.keyword_generator, KeywordGenerator)
        assert isinstance(collaborators.rank_checkers["naver"], RankChecker)
        assert isinstance(collaborators.competitor_finder, CompetitorFinder)
        assert collaborators.competitor_finder.find("https://seoul-dental.example.com/") is None
