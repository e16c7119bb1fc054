import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables from .env file
load_dotenv()

# --- API endpoints ---
SERPER_BASE_URL = "https://google.serper.dev"
FIRECRAWL_BASE_URL = "https://api.firecrawl.dev/v1"

# --- Default models per provider ---
DEFAULT_OPENAI_MODEL = "gpt-5-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-haiku-20241022"

# --- Article defaults ---
READING_TIME_WPM = 200
DEFAULT_SECTION_WORDS = 200
DEFAULT_POINT_OF_VIEW = "second-person"
DEFAULT_FORMALITY = "informal"

# Size preset -> target article length in words
ARTICLE_SIZE_WORDS = {
    "shorter": 800,
    "short": 1200,
    "medium": 2000,
    "long": 3000,
    "longer": 4000,
    "custom": 2000,
}


def _env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() == "true"


class Settings(BaseModel):
    """Runtime configuration for the generation pipeline."""

    serper_api_key: Optional[str] = None
    firecrawl_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    # LLM
    default_llm_provider: str = "openai"
    openai_model: str = DEFAULT_OPENAI_MODEL
    anthropic_model: str = DEFAULT_ANTHROPIC_MODEL
    llm_max_tokens: int = 4096
    llm_temperature: float = 0.7

    # Search
    search_num_results: int = 10
    default_geo: str = "us"

    # Content defaults
    default_language: str = "en-US"
    default_tone: str = "seo-optimized"
    default_article_size: str = "medium"

    # Concurrency
    scraping_concurrency: int = 5
    llm_concurrency: int = 3

    # Retry, in milliseconds
    max_retries: int = 3
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000

    # Cache
    cache_enabled: bool = True
    cache_ttl_days: float = 7
    cache_db_path: str = "./data/cache.db"

    workflow_poll_interval_ms: int = 2000

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_days * 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            serper_api_key=_env_str("SERPER_API_KEY"),
            firecrawl_api_key=_env_str("FIRECRAWL_API_KEY"),
            openai_api_key=_env_str("OPENAI_API_KEY"),
            anthropic_api_key=_env_str("ANTHROPIC_API_KEY"),
            default_llm_provider=_env_str("DEFAULT_LLM_PROVIDER", "openai"),
            openai_model=_env_str("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
            anthropic_model=_env_str("ANTHROPIC_MODEL", DEFAULT_ANTHROPIC_MODEL),
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", 4096),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.7),
            search_num_results=_env_int("SEARCH_NUM_RESULTS", 10),
            default_geo=_env_str("DEFAULT_GEO", "us"),
            default_language=_env_str("DEFAULT_LANGUAGE", "en-US"),
            default_tone=_env_str("DEFAULT_TONE", "seo-optimized"),
            default_article_size=_env_str("DEFAULT_ARTICLE_SIZE", "medium"),
            scraping_concurrency=_env_int("SCRAPING_CONCURRENCY", 5),
            llm_concurrency=_env_int("LLM_CONCURRENCY", 3),
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_initial_delay_ms=_env_int("RETRY_INITIAL_DELAY_MS", 1000),
            retry_max_delay_ms=_env_int("RETRY_MAX_DELAY_MS", 10000),
            cache_enabled=_env_bool("CACHE_ENABLED", True),
            cache_ttl_days=_env_float("CACHE_TTL_DAYS", 7),
            cache_db_path=_env_str("CACHE_DB_PATH", "./data/cache.db"),
            workflow_poll_interval_ms=_env_int("WORKFLOW_POLL_INTERVAL_MS", 2000),
        )
