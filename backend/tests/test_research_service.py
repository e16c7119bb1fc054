"""Tests for the research orchestrator: search, then scrape, then store."""

import asyncio

import httpx
import pytest

from seo_pipeline.errors import ExternalServiceError, NotFoundError, ResearchFailedError, ValidationError
from seo_pipeline.models import ResearchResult, count_words
from seo_pipeline.services.limiter import ConcurrencyLimiter
from seo_pipeline.services.repository import InMemoryRepository
from seo_pipeline.services.research_service import ResearchService
from seo_pipeline.services.scraper_service import ScrapeClient
from seo_pipeline.services.serp_service import SearchClient

from conftest import firecrawl_page, request_json, serper_payload


def backend(serp_status: int = 200, result_count: int = 5):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "google.serper.dev":
            if serp_status != 200:
                return httpx.Response(serp_status, json={"message": "boom"})
            return httpx.Response(200, json=serper_payload(result_count, request_json(request)["q"]))
        return httpx.Response(200, json=firecrawl_page(request_json(request)["url"], words=60))

    return handler


@pytest.fixture
def build_service(cache, retry_policy, sleep, make_transport):
    def factory(handler) -> ResearchService:
        transport = make_transport(handler)
        search = SearchClient("serper-key", cache, retry_policy, transport=transport, sleep=sleep)
        scrape = ScrapeClient(
            "fc-key", cache, ConcurrencyLimiter("scraping", 3), retry_policy, transport=transport, sleep=sleep
        )
        return ResearchService(search, scrape, InMemoryRepository[ResearchResult]())

    return factory


@pytest.mark.asyncio
async def test_research_combines_serp_and_scraped_pages(build_service) -> None:
    service = build_service(backend())

    result = await service.conduct_research("best running shoes", geo="us", num_results=5)

    assert result.keyword == "best running shoes"
    assert result.geo == "us"
    assert len(result.serp_results) == 5
    assert 0 < len(result.scraped_content) <= 5
    for page in result.scraped_content:
        assert page.word_count == count_words(page.content)
    assert result.people_also_ask[0].question == "What is best running shoes?"
    assert service.get_research(result.research_id) == result


@pytest.mark.asyncio
async def test_defaults_apply_when_geo_and_count_are_missing(build_service, make_transport) -> None:
    service = build_service(backend(result_count=10))

    result = await service.conduct_research("  trail shoes ")

    assert result.keyword == "trail shoes"
    assert result.geo == "us"
    serp_request = make_transport.requests[0]
    assert request_json(serp_request) == {"q": "trail shoes", "gl": "us", "num": 10}


@pytest.mark.asyncio
async def test_search_failure_fails_research_without_scraping(build_service, make_transport) -> None:
    service = build_service(backend(serp_status=500))

    with pytest.raises(ExternalServiceError):
        await service.conduct_research("kw")

    assert all(r.url.host == "google.serper.dev" for r in make_transport.requests)
    assert len(service.repository) == 0


@pytest.mark.asyncio
async def test_empty_keyword_is_rejected(build_service, make_transport) -> None:
    service = build_service(backend())

    with pytest.raises(ValidationError):
        await service.conduct_research("   ")
    with pytest.raises(ValidationError):
        service.start_research("")

    assert make_transport.requests == []


@pytest.mark.asyncio
async def test_background_research_is_readable_once_stored(build_service) -> None:
    service = build_service(backend(result_count=2))

    research_id = service.start_research("kw", "gb", 2)

    with pytest.raises(NotFoundError):
        service.get_research(research_id)
    await asyncio.gather(*service._tasks)

    stored = service.get_research(research_id)
    assert stored.research_id == research_id
    assert stored.geo == "gb"


@pytest.mark.asyncio
async def test_background_failure_is_reported_by_get_research(build_service) -> None:
    service = build_service(backend(serp_status=401))

    research_id = service.start_research("kw")

    with pytest.raises(NotFoundError):
        service.get_research(research_id)
    await asyncio.gather(*service._tasks)

    with pytest.raises(ResearchFailedError, match="HTTP 401") as exc_info:
        service.get_research(research_id)
    assert exc_info.value.research_id == research_id
    assert exc_info.value.status_code == 502
    assert research_id in exc_info.value.message
