import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import httpx
import structlog

from .agents.writer_editor_agent import ArticleEditor, SectionWriter
from .config import Settings
from .database import create_cache_engine, create_session_factory
from .models import Outline, ResearchResult, WorkflowState
from .services.cache_service import CacheService
from .services.content_plan_service import ContentPlanRepository, ContentPlanService
from .services.limiter import ConcurrencyLimiter
from .services.llm import LLMProviderFactory
from .services.llm.base import ChatModelFactory
from .services.outline_service import OutlineService
from .services.repository import InMemoryRepository
from .services.research_service import ResearchService
from .services.retry import RetryPolicy
from .services.scraper_service import PageIndexer, ScrapeClient
from .services.serp_service import SearchClient
from .services.workflow_service import WorkflowEngine

logger = structlog.get_logger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


@dataclass
class Container:
    """Every long-lived service, built once per process."""

    settings: Settings
    cache: CacheService
    search_client: SearchClient
    scrape_client: ScrapeClient
    llm_factory: LLMProviderFactory
    research_service: ResearchService
    outline_service: OutlineService
    workflow_engine: WorkflowEngine
    content_plan_service: ContentPlanService

    async def aclose(self) -> None:
        await self.search_client.aclose()
        await self.scrape_client.aclose()


def build_container(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    chat_model_factories: Optional[Dict[str, ChatModelFactory]] = None,
    indexer: Optional[PageIndexer] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Container:
    settings = settings or Settings.from_env()

    retry_policy = RetryPolicy(
        max_retries=settings.max_retries,
        initial_delay_ms=settings.retry_initial_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
    )
    scrape_limiter = ConcurrencyLimiter("scraping", settings.scraping_concurrency)
    llm_limiter = ConcurrencyLimiter("llm", settings.llm_concurrency)

    session_factory = None
    if settings.cache_enabled:
        session_factory = create_session_factory(create_cache_engine(settings.cache_db_path))
    cache = CacheService(session_factory, settings.cache_ttl_seconds, enabled=settings.cache_enabled)
    cache.clear_expired()

    search_client = SearchClient(
        settings.serper_api_key,
        cache,
        retry_policy,
        default_geo=settings.default_geo,
        default_num_results=settings.search_num_results,
        transport=transport,
        sleep=sleep,
    )
    scrape_client = ScrapeClient(
        settings.firecrawl_api_key,
        cache,
        scrape_limiter,
        retry_policy,
        indexer=indexer,
        transport=transport,
        sleep=sleep,
    )
    llm_factory = LLMProviderFactory(
        settings, retry_policy, llm_limiter, chat_model_factories=chat_model_factories, sleep=sleep
    )

    research_repository: InMemoryRepository[ResearchResult] = InMemoryRepository()
    research_service = ResearchService(
        search_client,
        scrape_client,
        research_repository,
        default_geo=settings.default_geo,
        default_num_results=settings.search_num_results,
    )
    outline_service = OutlineService(
        llm_factory, research_repository, InMemoryRepository[Outline](), settings
    )
    workflow_engine = WorkflowEngine(
        research_service,
        outline_service,
        SectionWriter(llm_factory),
        ArticleEditor(llm_factory),
        InMemoryRepository[WorkflowState](),
        settings,
        sleep=sleep,
    )
    content_plan_service = ContentPlanService(ContentPlanRepository(), workflow_engine)

    logger.info(
        "container.ready",
        llm_provider=settings.default_llm_provider,
        cache_enabled=cache.enabled,
        scraping_concurrency=settings.scraping_concurrency,
        llm_concurrency=settings.llm_concurrency,
    )
    return Container(
        settings=settings,
        cache=cache,
        search_client=search_client,
        scrape_client=scrape_client,
        llm_factory=llm_factory,
        research_service=research_service,
        outline_service=outline_service,
        workflow_engine=workflow_engine,
        content_plan_service=content_plan_service,
    )
