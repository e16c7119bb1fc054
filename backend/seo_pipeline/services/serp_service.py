import asyncio
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from ..config import SERPER_BASE_URL
from ..errors import ExternalServiceError, ValidationError
from ..models import PeopleAlsoAskItem, SearchResponse, SearchResult
from .cache_service import CacheService
from .http_client import post_json
from .retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)

SERVICE_NAME = "SERPER"


class SearchClient:
    """Google SERP lookups through the Serper API, cache-first."""

    def __init__(
        self,
        api_key: Optional[str],
        cache: CacheService,
        retry_policy: RetryPolicy,
        default_geo: str = "us",
        default_num_results: int = 10,
        base_url: str = SERPER_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.cache = cache
        self.retry_policy = retry_policy
        self.default_geo = default_geo
        self.default_num_results = default_num_results
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"X-API-KEY": api_key or "", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def search(
        self, keyword: str, geo: Optional[str] = None, num_results: Optional[int] = None
    ) -> SearchResponse:
        """
        Returns the organic results for ``keyword`` in engine rank order.

        A cache hit returns without any network call. Errors are never cached.
        """
        geo = geo or self.default_geo
        num_results = num_results or self.default_num_results

        cached = self.cache.get_serp_results(keyword, geo)
        if cached is not None:
            logger.info("serp.cached", keyword=keyword, geo=geo, result_count=len(cached.results))
            return cached

        if not self.api_key:
            raise ValidationError("SERPER_API_KEY is not configured")

        logger.info("serp.search", keyword=keyword, geo=geo, num_results=num_results)
        payload = {"q": keyword, "gl": geo, "num": num_results}
        data = await with_retry(
            lambda: post_json(self._client, "/search", payload, SERVICE_NAME),
            "SERPER search",
            self.retry_policy,
            sleep=self._sleep,
        )

        response = self._parse(data)
        logger.info(
            "serp.completed",
            result_count=len(response.results),
            has_paa=response.people_also_ask is not None,
        )
        self.cache.set_serp_results(keyword, geo, response)
        return response

    @staticmethod
    def _parse(data: dict) -> SearchResponse:
        if not isinstance(data, dict) or not isinstance(data.get("organic"), list):
            raise ExternalServiceError(SERVICE_NAME, "response has no organic results")

        results = [
            SearchResult(
                title=item.get("title") or "",
                link=item["link"],
                snippet=item.get("snippet") or "",
                position=item.get("position", index + 1),
            )
            for index, item in enumerate(data["organic"])
            if item.get("link")
        ]
        paa = data.get("peopleAlsoAsk")
        people_also_ask = (
            [
                PeopleAlsoAskItem(
                    question=item["question"],
                    snippet=item.get("snippet"),
                    link=item.get("link"),
                )
                for item in paa
                if item.get("question")
            ]
            if paa is not None
            else None
        )
        return SearchResponse(results=results, people_also_ask=people_also_ask)

    async def aclose(self) -> None:
        await self._client.aclose()
