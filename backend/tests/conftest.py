"""Shared fixtures: settings, an in-memory cache with a controllable clock, fake HTTP and LLM backends."""

import json
import re
from typing import Callable, Dict, List, Optional

import httpx
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from seo_pipeline.config import Settings
from seo_pipeline.database import create_cache_engine, create_session_factory
from seo_pipeline.services.cache_service import CacheService
from seo_pipeline.services.limiter import ConcurrencyLimiter
from seo_pipeline.services.llm import LLMProviderFactory
from seo_pipeline.services.retry import RetryPolicy


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def serper_payload(count: int, keyword: str = "best running shoes") -> Dict:
    return {
        "organic": [
            {
                "title": f"{keyword} #{i}",
                "link": f"https://site{i}.example.com/page",
                "snippet": f"Snippet {i}",
                "position": i,
            }
            for i in range(1, count + 1)
        ],
        "peopleAlsoAsk": [{"question": f"What is {keyword}?", "snippet": "An answer."}],
    }


def firecrawl_page(url: str, words: int = 40) -> Dict:
    content = " ".join(f"word{i}" for i in range(words))
    return {"success": True, "data": {"markdown": content, "metadata": {"title": f"Title for {url}"}}}


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        serper_api_key="test-serper-key",
        firecrawl_api_key="test-firecrawl-key",
        openai_api_key="test-openai-key",
        anthropic_api_key="test-anthropic-key",
        max_retries=2,
        retry_initial_delay_ms=10,
        retry_max_delay_ms=40,
        cache_db_path=":memory:",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def cache(clock: FakeClock) -> CacheService:
    engine = create_cache_engine(":memory:")
    return CacheService(create_session_factory(engine), ttl_seconds=3600, clock=clock)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, initial_delay_ms=10, max_delay_ms=40)


@pytest.fixture
def scrape_limiter() -> ConcurrencyLimiter:
    return ConcurrencyLimiter("scraping", 3)


@pytest.fixture
def make_transport() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.MockTransport]:
    """Wraps a handler in a MockTransport and records every request it sees."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
        def recording(request: httpx.Request) -> httpx.Response:
            factory.requests.append(request)
            return handler(request)

        return httpx.MockTransport(recording)

    factory.requests = []
    return factory


def request_json(request: httpx.Request) -> Dict:
    return json.loads(request.content)


# -----------------------------------------------------------------------------
# Fake LLM backend
# -----------------------------------------------------------------------------

OUTLINE_RESPONSE = {
    "title": "The Best Running Shoes of the Year",
    "sections": [
        {"heading": "Introduction", "level": 2, "description": "Why shoes matter", "suggested_word_count": 150},
        {
            "heading": "Choosing the Right Fit",
            "level": 2,
            "description": "Fit and support",
            "suggested_word_count": 300,
            "subsections": [
                {"heading": "Measuring Your Foot", "level": 3, "description": "At home", "suggested_word_count": 120}
            ],
        },
        {"heading": "Conclusion", "level": 2, "description": "Wrap up", "suggested_word_count": 100},
    ],
    "metadata": {"estimated_word_count": 670, "suggested_keywords": ["running shoes"], "target_audience": "runners"},
}

SECTION_TEXT = "Good running shoes balance cushioning with support. Try several pairs before you decide."

_ARTICLE_RE = re.compile(r"<article>\n(.*)\n</article>", re.DOTALL)


class PipelineChatModel(FakeListChatModel):
    """
    Answers like a real model would at each pipeline stage.

    The stage is recognised from the system prompt. ``fail_stage`` makes
    that stage raise.
    """

    responses: List[str] = ["unused"]
    outline: str = json.dumps(OUTLINE_RESPONSE)
    section_text: str = SECTION_TEXT
    fail_stage: Optional[str] = None
    stages: List[str] = []
    user_prompts: List[str] = []

    def _call(self, messages, stop=None, run_manager=None, **kwargs) -> str:
        system, user = messages[0].content, messages[-1].content
        if "Content Strategist" in system:
            stage = "outline"
        elif "world-class editor" in system:
            stage = "editor"
        else:
            stage = "writer"
        self.stages.append(stage)
        self.user_prompts.append(user)
        if stage == self.fail_stage:
            raise RuntimeError(f"{stage} backend unavailable")
        if stage == "outline":
            return self.outline
        if stage == "editor":
            return _ARTICLE_RE.search(user).group(1).strip()
        return self.section_text


def chat_factories(model: FakeListChatModel) -> Dict[str, Callable[..., FakeListChatModel]]:
    return {"openai": lambda **kwargs: model, "anthropic": lambda **kwargs: model}


@pytest.fixture
def chat_model() -> PipelineChatModel:
    return PipelineChatModel()


@pytest.fixture
def llm_factory(settings: Settings, retry_policy: RetryPolicy, chat_model, sleep) -> LLMProviderFactory:
    return LLMProviderFactory(settings, retry_policy, chat_model_factories=chat_factories(chat_model), sleep=sleep)
