import asyncio
import re
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

import httpx
import structlog
from bs4 import BeautifulSoup, Comment

from ..config import FIRECRAWL_BASE_URL
from ..errors import ExternalServiceError, ValidationError
from ..models import ScrapedPage
from .cache_service import CacheService, normalize_url
from .http_client import get_text, post_json
from .limiter import ConcurrencyLimiter
from .retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)

SERVICE_NAME = "Firecrawl"
DIRECT_SERVICE_NAME = "HTTP"

DEFAULT_SCRAPE_OPTIONS: Dict = {"onlyMainContent": True, "formats": ["markdown"]}

SKIPPED_EXTENSIONS = (".pdf", ".jpg", ".png", ".zip", ".mp4")
SKIPPED_DOMAINS = ("youtube.com", "vimeo.com")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

NOISE_TAGS = ["script", "style", "nav", "footer", "header", "aside", "form", "button", "noscript", "svg"]
HEADING_PREFIX = {"h1": "# ", "h2": "## ", "h3": "### ", "h4": "#### "}


class PageIndexer(Protocol):
    async def index_page(self, page: ScrapedPage) -> None: ...


def is_valid_scraping_url(url: str) -> bool:
    """Checks if a URL is a standard HTML page and not a direct link to a file or video platform."""
    lowered = url.lower()
    if any(lowered.split("?")[0].endswith(ext) for ext in SKIPPED_EXTENSIONS):
        logger.info("scrape.skipped_file_url", url=url)
        return False
    if any(domain in lowered for domain in SKIPPED_DOMAINS):
        logger.info("scrape.skipped_video_url", url=url)
        return False
    return True


def extract_main_text(html: str) -> Tuple[Optional[str], str]:
    """Returns ``(title, markdown-ish text)`` for an HTML document."""
    soup = BeautifulSoup(html, "lxml")
    title = soup.title.get_text(strip=True) if soup.title else None

    for tag in soup.find_all(NOISE_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    root = soup.find("main") or soup.find("article") or soup.body or soup
    lines: List[str] = []
    for tag in root.find_all(["h1", "h2", "h3", "h4", "p", "li"]):
        text = re.sub(r"\s+", " ", tag.get_text(separator=" ", strip=True))
        if not text:
            continue
        lines.append(HEADING_PREFIX.get(tag.name, "- " if tag.name == "li" else "") + text)

    if not lines:
        text = re.sub(r"\s+", " ", root.get_text(separator=" ", strip=True))
        if text:
            lines.append(text)
    return title or None, "\n\n".join(lines)


class ScrapeClient:
    """
    Turns URLs into clean text through Firecrawl.

    Without a Firecrawl key pages are fetched directly and reduced to text
    with BeautifulSoup.
    """

    def __init__(
        self,
        api_key: Optional[str],
        cache: CacheService,
        limiter: ConcurrencyLimiter,
        retry_policy: RetryPolicy,
        indexer: Optional[PageIndexer] = None,
        base_url: str = FIRECRAWL_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.cache = cache
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.indexer = indexer
        self._sleep = sleep
        self._background: Set[asyncio.Task] = set()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key or ''}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self._direct_client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def scrape_url(self, url: str, options: Optional[Dict] = None) -> ScrapedPage:
        cached = self.cache.get_page(url)
        if cached is not None:
            logger.info("scrape.cached", url=url, word_count=cached.word_count)
            return cached
        return await self.limiter.limit(lambda: self._scrape_and_store(url, options))

    async def scrape_urls(self, urls: List[str], options: Optional[Dict] = None) -> List[ScrapedPage]:
        """
        Scrapes many URLs; returns only the pages that succeeded.

        Cached pages are returned without network calls. The rest run under
        the scraping limiter and fail independently of each other.
        """
        candidates = [url for url in dict.fromkeys(urls) if is_valid_scraping_url(url)]
        logger.info("scrape.batch_started", url_count=len(candidates))

        cached = self.cache.get_pages(candidates)
        uncached = [url for url in candidates if normalize_url(url) not in cached]
        logger.info("scrape.batch_cache_checked", cached=len(cached), to_scrape=len(uncached))

        pages = list(cached.values())
        if uncached:
            results = await asyncio.gather(
                *(self.limiter.limit(lambda url=url: self._scrape_and_store(url, options)) for url in uncached),
                return_exceptions=True,
            )
            failures = 0
            for url, result in zip(uncached, results):
                if isinstance(result, Exception):
                    failures += 1
                    logger.warning("scrape.url_failed", url=url, error=str(result))
                elif isinstance(result, BaseException):
                    raise result
                else:
                    pages.append(result)
            if failures:
                logger.info("scrape.batch_partial", failure_count=failures)

        logger.info(
            "scrape.batch_completed",
            success_count=len(pages),
            from_cache=len(cached),
            freshly_scraped=len(pages) - len(cached),
        )
        return pages

    async def search(
        self,
        query: str,
        limit: int = 5,
        scrape_options: Optional[Dict] = None,
        location: Optional[str] = None,
        tbs: Optional[str] = None,
    ) -> List[ScrapedPage]:
        """Search and scrape in one provider call. Results are not cached."""
        self._require_key()
        payload: Dict = {
            "query": query,
            "limit": limit,
            "scrapeOptions": scrape_options or DEFAULT_SCRAPE_OPTIONS,
        }
        if location:
            payload["location"] = location
        if tbs:
            payload["tbs"] = tbs

        logger.info("scrape.search", query=query, limit=limit)
        data = await with_retry(
            lambda: post_json(self._client, "/search", payload, SERVICE_NAME),
            f"Firecrawl search: {query}",
            self.retry_policy,
            sleep=self._sleep,
        )
        if not data.get("success"):
            raise ExternalServiceError(SERVICE_NAME, f"Search failed for: {query}")

        pages = [
            ScrapedPage.from_content(
                url=item.get("url", ""),
                title=item.get("title"),
                content=item.get("markdown") or item.get("content") or item.get("description") or "",
            )
            for item in data.get("data") or []
        ]
        logger.info("scrape.search_completed", query=query, result_count=len(pages))
        return pages

    async def _scrape_and_store(self, url: str, options: Optional[Dict]) -> ScrapedPage:
        if self.api_key:
            page = await with_retry(
                lambda: self._firecrawl_scrape(url, options),
                f"Firecrawl scrape {url}",
                self.retry_policy,
                sleep=self._sleep,
            )
        else:
            page = await with_retry(
                lambda: self._direct_scrape(url),
                f"Direct scrape {url}",
                self.retry_policy,
                sleep=self._sleep,
            )
        logger.debug("scrape.url_scraped", url=url, word_count=page.word_count)

        self.cache.set_page(url, page)
        self._index_detached(page)
        return page

    async def _firecrawl_scrape(self, url: str, options: Optional[Dict]) -> ScrapedPage:
        data = await post_json(
            self._client, "/scrape", {"url": url, **(options or DEFAULT_SCRAPE_OPTIONS)}, SERVICE_NAME
        )
        if not data.get("success"):
            raise ExternalServiceError(SERVICE_NAME, f"Failed to scrape {url}")
        body = data.get("data") or {}
        content = body.get("markdown") or body.get("content") or ""
        title = (body.get("metadata") or {}).get("title")
        return ScrapedPage.from_content(url=url, content=content, title=title)

    async def _direct_scrape(self, url: str) -> ScrapedPage:
        html = await get_text(self._direct_client, url, DIRECT_SERVICE_NAME)
        title, content = extract_main_text(html)
        return ScrapedPage.from_content(url=url, content=content, title=title)

    def _index_detached(self, page: ScrapedPage) -> None:
        """Best-effort indexing: at most once, never awaited by the caller."""
        if self.indexer is None:
            return
        try:
            task = asyncio.create_task(self.indexer.index_page(page))
        except Exception as e:
            logger.warning("scrape.index_failed", url=page.url, error=str(e))
            return
        self._background.add(task)
        task.add_done_callback(lambda t, url=page.url: self._on_index_done(t, url))

    def _on_index_done(self, task: asyncio.Task, url: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("scrape.index_failed", url=url, error=str(error))

    def _require_key(self) -> None:
        if not self.api_key:
            raise ValidationError("FIRECRAWL_API_KEY is not configured")

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._direct_client.aclose()
