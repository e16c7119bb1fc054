from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .schemas import GenerationStatus, WorkflowStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def count_words(text: str) -> int:
    """Whitespace-token count."""
    return len(text.split())


# --- Research Models ---

class SearchResult(BaseModel):
    title: str
    link: str
    snippet: str = ""
    position: int


class PeopleAlsoAskItem(BaseModel):
    question: str
    snippet: Optional[str] = None
    link: Optional[str] = None


class SearchResponse(BaseModel):
    results: List[SearchResult]
    people_also_ask: Optional[List[PeopleAlsoAskItem]] = None


class ScrapedPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    title: Optional[str] = None
    content: str
    word_count: int
    scraped_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_content(
        cls,
        url: str,
        content: str,
        title: Optional[str] = None,
        scraped_at: Optional[datetime] = None,
    ) -> "ScrapedPage":
        return cls(
            url=url,
            title=title,
            content=content,
            word_count=count_words(content),
            scraped_at=scraped_at or utcnow(),
        )


class ResearchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    research_id: str
    keyword: str
    geo: str
    serp_results: List[SearchResult]
    scraped_content: List[ScrapedPage]
    people_also_ask: Optional[List[PeopleAlsoAskItem]] = None
    created_at: datetime = Field(default_factory=utcnow)


# --- Outline & Article Models ---

class OutlineSection(BaseModel):
    id: Optional[str] = None
    heading: str
    level: int = 2
    description: str = ""
    suggested_word_count: Optional[int] = None
    subsections: Optional[List["OutlineSection"]] = None


OutlineSection.model_rebuild()


class OutlineMetadata(BaseModel):
    estimated_word_count: int = 0
    suggested_keywords: List[str] = Field(default_factory=list)
    target_audience: Optional[str] = None
    tone: Optional[str] = None


class OutlineDraft(BaseModel):
    """Shape the LLM must return when asked for an outline."""

    title: Optional[str] = None
    sections: List[OutlineSection]
    metadata: OutlineMetadata = Field(default_factory=OutlineMetadata)


class Outline(BaseModel):
    outline_id: str
    research_id: str
    keyword: str
    title: str
    sections: List[OutlineSection]
    metadata: OutlineMetadata
    created_at: datetime = Field(default_factory=utcnow)


class GeneratedSection(BaseModel):
    id: str
    heading: str
    content: str
    word_count: int


class GenerationStats(BaseModel):
    sections_generated: int
    total_llm_calls: int
    generation_time_ms: int


class ArticleMetadata(BaseModel):
    word_count: int
    reading_time_minutes: int
    generation_stats: Optional[GenerationStats] = None


class Article(BaseModel):
    article_id: str
    outline_id: str
    keyword: str
    title: str
    content: str
    sections: List[GeneratedSection]
    metadata: ArticleMetadata
    project_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# --- Generation Options ---

class ArticleSize(BaseModel):
    preset: Optional[str] = None
    target_word_count: Optional[int] = None


class GenerationOptions(BaseModel):
    """Every field is optional so option layers can be merged."""

    language: Optional[str] = None
    target_country: Optional[str] = None
    tone: Optional[str] = None
    point_of_view: Optional[str] = None
    formality: Optional[str] = None
    article_size: Optional[ArticleSize] = None
    template_id: Optional[str] = None
    title: Optional[str] = None
    include_keywords: Optional[List[str]] = None
    project_id: Optional[str] = None


# --- Workflow Models ---

class WorkflowState(BaseModel):
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    keyword: str
    geo: str
    research_id: Optional[str] = None
    outline: Optional[Outline] = None
    article: Optional[Article] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


# --- Content Plan Models ---

class ContentPlanPage(BaseModel):
    page_id: str
    project_id: str
    url: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    keywords: Optional[str] = None
    page_type: Optional[str] = None
    position: int = 0
    generation_status: GenerationStatus = GenerationStatus.PENDING
    article_id: Optional[str] = None
    template_id: Optional[str] = None
    tone: Optional[str] = None
    point_of_view: Optional[str] = None
    formality: Optional[str] = None
    article_size_preset: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class ImportPageInput(BaseModel):
    url: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    keywords: Optional[str] = None
    page_type: Optional[str] = None
    template_id: Optional[str] = None
    tone: Optional[str] = None
    article_size_preset: Optional[str] = None


class ContentPlanStats(BaseModel):
    total: int = 0
    pending: int = 0
    generating: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class BatchStatus(BaseModel):
    running: bool
    current_index: int
    total: int
    stats: ContentPlanStats
    cancelled: bool = False


# --- LLM Models ---

class LLMUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMResponse(BaseModel):
    content: str
    usage: Optional[LLMUsage] = None


# --- API Request/Response Models ---

class WorkflowStartRequest(BaseModel):
    keyword: str = Field(min_length=1)
    geo: Optional[str] = None
    options: Optional[GenerationOptions] = None
    outline_id: Optional[str] = None


class WorkflowStartResponse(BaseModel):
    workflow_id: str


class ResearchRequest(BaseModel):
    keyword: str = Field(min_length=1)
    geo: Optional[str] = None
    num_results: Optional[int] = Field(default=None, ge=1, le=100)


class ResearchStartResponse(BaseModel):
    research_id: str


class BatchStartRequest(BaseModel):
    page_ids: Optional[List[str]] = None
    options: Optional[GenerationOptions] = None


class CancelResponse(BaseModel):
    cancelled: bool


class CacheStats(BaseModel):
    serp_entries: int
    page_entries: int
    db_size: str
