import hashlib
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .. import crud
from ..models import CacheStats, PeopleAlsoAskItem, ScrapedPage, SearchResponse, SearchResult

logger = structlog.get_logger(__name__)


def normalize_url(url: str) -> str:
    """Lowercases the host and strips a trailing slash."""
    try:
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise ValueError(url)
        normalized = urlunsplit(parts._replace(netloc=parts.netloc.lower()))
    except ValueError:
        return url.lower()
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def serp_cache_key(keyword: str, geo: str) -> str:
    raw = f"{keyword.strip().lower()}:{geo.lower()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


class CacheService:
    """
    TTL cache for search-result sets and scraped pages.

    Expiry is lazy: entries past their TTL are reported as misses at read
    time. ``clear_expired`` is an optional sweep. Storage failures are
    logged and behave like a miss (reads) or a skipped write.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker],
        ttl_seconds: float,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.enabled = enabled and session_factory is not None
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        if not self.enabled:
            logger.info("cache.disabled")

    # --- Search results ---

    def get_serp_results(self, keyword: str, geo: str) -> Optional[SearchResponse]:
        if not self.enabled:
            return None
        try:
            with self._session_factory() as db:
                entry = crud.get_serp_entry(db, serp_cache_key(keyword, geo), self._clock())
                if entry is None:
                    logger.debug("cache.serp_miss", keyword=keyword, geo=geo)
                    return None
                payload = entry.results
        except SQLAlchemyError as e:
            logger.error("cache.serp_read_failed", keyword=keyword, geo=geo, error=str(e))
            return None

        logger.info("cache.serp_hit", keyword=keyword, geo=geo)
        paa = payload.get("people_also_ask")
        return SearchResponse(
            results=[SearchResult(**item) for item in payload.get("results", [])],
            people_also_ask=[PeopleAlsoAskItem(**item) for item in paa] if paa is not None else None,
        )

    def set_serp_results(self, keyword: str, geo: str, response: SearchResponse) -> None:
        if not self.enabled:
            return
        now = self._clock()
        try:
            with self._session_factory() as db:
                crud.upsert_serp_entry(
                    db,
                    serp_cache_key(keyword, geo),
                    keyword=keyword.strip().lower(),
                    geo=geo.lower(),
                    results=response.model_dump(mode="json"),
                    now=now,
                    expires_at=now + self.ttl_seconds,
                )
            logger.debug("cache.serp_write", keyword=keyword, geo=geo)
        except SQLAlchemyError as e:
            logger.error("cache.serp_write_failed", keyword=keyword, geo=geo, error=str(e))

    # --- Scraped pages ---

    def get_page(self, url: str) -> Optional[ScrapedPage]:
        if not self.enabled:
            return None
        key = normalize_url(url)
        try:
            with self._session_factory() as db:
                entry = crud.get_page_entry(db, key, self._clock())
                page = self._entry_to_page(entry) if entry is not None else None
        except SQLAlchemyError as e:
            logger.error("cache.page_read_failed", url=key, error=str(e))
            return None

        if page is None:
            logger.debug("cache.page_miss", url=key)
        else:
            logger.info("cache.page_hit", url=key)
        return page

    def get_pages(self, urls: Iterable[str]) -> Dict[str, ScrapedPage]:
        """Batched lookup; the result holds hits only, keyed by normalized URL."""
        if not self.enabled:
            return {}
        keys = list(dict.fromkeys(normalize_url(url) for url in urls))
        try:
            with self._session_factory() as db:
                entries = crud.get_page_entries(db, keys, self._clock())
                return {key: self._entry_to_page(entry) for key, entry in entries.items()}
        except SQLAlchemyError as e:
            logger.error("cache.page_batch_read_failed", count=len(keys), error=str(e))
            return {}

    def set_page(self, url: str, page: ScrapedPage) -> None:
        if not self.enabled:
            return
        key = normalize_url(url)
        now = self._clock()
        try:
            with self._session_factory() as db:
                crud.upsert_page_entry(
                    db,
                    key,
                    title=page.title,
                    content=page.content,
                    word_count=page.word_count,
                    now=now,
                    expires_at=now + self.ttl_seconds,
                )
            logger.debug("cache.page_write", url=key, word_count=page.word_count)
        except SQLAlchemyError as e:
            logger.error("cache.page_write_failed", url=key, error=str(e))

    # --- Maintenance ---

    def clear_expired(self) -> int:
        if not self.enabled:
            return 0
        try:
            with self._session_factory() as db:
                deleted = crud.delete_expired(db, self._clock())
        except SQLAlchemyError as e:
            logger.error("cache.clear_expired_failed", error=str(e))
            return 0
        total = deleted["serp"] + deleted["pages"]
        if total:
            logger.info("cache.cleared_expired", serp_deleted=deleted["serp"], page_deleted=deleted["pages"])
        return total

    def clear_all(self) -> None:
        if not self.enabled:
            return
        with self._session_factory() as db:
            crud.delete_all(db)
        logger.info("cache.cleared_all")

    def get_stats(self) -> CacheStats:
        if not self.enabled:
            return CacheStats(serp_entries=0, page_entries=0, db_size="0 B")
        try:
            with self._session_factory() as db:
                counts = crud.count_entries(db)
                page_size = db.execute(text("PRAGMA page_size")).scalar() or 0
                page_count = db.execute(text("PRAGMA page_count")).scalar() or 0
        except SQLAlchemyError as e:
            logger.error("cache.stats_failed", error=str(e))
            return CacheStats(serp_entries=0, page_entries=0, db_size="unknown")
        return CacheStats(
            serp_entries=counts["serp"],
            page_entries=counts["pages"],
            db_size=_format_bytes(page_size * page_count),
        )

    @staticmethod
    def _entry_to_page(entry) -> ScrapedPage:
        return ScrapedPage(
            url=entry.url,
            title=entry.title,
            content=entry.content,
            word_count=entry.word_count,
            scraped_at=datetime.fromtimestamp(entry.scraped_at, tz=timezone.utc),
        )
