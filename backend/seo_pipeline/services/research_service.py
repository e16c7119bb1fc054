import asyncio
import uuid
from typing import Dict, Optional, Set

import structlog

from ..errors import AppError, NotFoundError, ResearchFailedError, ValidationError
from ..models import ResearchResult
from .repository import Repository
from .scraper_service import ScrapeClient
from .serp_service import SearchClient

logger = structlog.get_logger(__name__)


class ResearchService:
    """Search, then scrape the ranked URLs, then store the combined result."""

    def __init__(
        self,
        search_client: SearchClient,
        scrape_client: ScrapeClient,
        repository: Repository[ResearchResult],
        default_geo: str = "us",
        default_num_results: int = 10,
    ):
        self.search_client = search_client
        self.scrape_client = scrape_client
        self.repository = repository
        self.default_geo = default_geo
        self.default_num_results = default_num_results
        self._tasks: Set[asyncio.Task] = set()
        # research_id -> (message, status code) of a failed background run
        self._failures: Dict[str, tuple] = {}

    async def conduct_research(
        self,
        keyword: str,
        geo: Optional[str] = None,
        num_results: Optional[int] = None,
        research_id: Optional[str] = None,
    ) -> ResearchResult:
        keyword = keyword.strip()
        if not keyword:
            raise ValidationError("keyword is required")
        geo = geo or self.default_geo
        num_results = num_results or self.default_num_results
        logger.info("research.started", keyword=keyword, geo=geo, num_results=num_results)

        # A search failure fails the whole attempt; scraping never runs without results.
        serp = await self.search_client.search(keyword, geo=geo, num_results=num_results)

        urls = [result.link for result in serp.results]
        pages = await self.scrape_client.scrape_urls(urls)

        result = ResearchResult(
            research_id=research_id or str(uuid.uuid4()),
            keyword=keyword,
            geo=geo,
            serp_results=serp.results,
            scraped_content=pages,
            people_also_ask=serp.people_also_ask,
        )
        self.repository.put(result.research_id, result)
        logger.info(
            "research.completed",
            research_id=result.research_id,
            serp_count=len(result.serp_results),
            scraped_count=len(result.scraped_content),
        )
        return result

    def start_research(self, keyword: str, geo: Optional[str] = None, num_results: Optional[int] = None) -> str:
        """
        Runs research in the background and returns its id immediately.

        The result becomes readable through ``get_research`` once stored. If
        the run fails, ``get_research`` raises ``ResearchFailedError`` instead.
        """
        if not keyword.strip():
            raise ValidationError("keyword is required")
        research_id = str(uuid.uuid4())

        async def run() -> None:
            try:
                await self.conduct_research(keyword, geo, num_results, research_id=research_id)
            except Exception as e:
                message = str(e) or e.__class__.__name__
                status_code = e.status_code if isinstance(e, AppError) else None
                self._failures[research_id] = (message, status_code)
                logger.error("research.failed", research_id=research_id, keyword=keyword, error=message)

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return research_id

    def get_research(self, research_id: str) -> ResearchResult:
        result = self.repository.get(research_id)
        if result is None:
            if research_id in self._failures:
                message, status_code = self._failures[research_id]
                raise ResearchFailedError(research_id, message, status_code)
            raise NotFoundError(f"Research {research_id}")
        return result
