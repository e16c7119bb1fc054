import re
import uuid
from typing import List, Optional

import structlog
from langchain_core.prompts import ChatPromptTemplate

from ..config import DEFAULT_SECTION_WORDS, Settings
from ..errors import NotFoundError
from ..models import GenerationOptions, Outline, OutlineDraft, OutlineMetadata, OutlineSection, ResearchResult
from ..prompts import OUTLINE_SYSTEM_PROMPT, OUTLINE_USER_PROMPT
from .llm import LLMProviderFactory
from .options import target_word_count, with_defaults
from .repository import Repository

logger = structlog.get_logger(__name__)

OUTLINE_MAX_TOKENS = 8192
MAX_CONTEXT_PAGES = 5
MAX_PAGE_CHARS = 3000

INTRO_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"^introduction$", r"^what is", r"^overview$", r"^understanding", r"^getting started")
]
CONCLUSION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"^conclusion$", r"^summary$", r"^final thoughts$", r"^wrapping up$", r"^in summary$", r"^closing")
]

outline_prompt = ChatPromptTemplate.from_messages(
    [
        ("system", OUTLINE_SYSTEM_PROMPT),
        ("user", OUTLINE_USER_PROMPT),
    ]
)


def assign_section_ids(sections: List[OutlineSection], prefix: str = "section") -> List[OutlineSection]:
    """Gives every section without an id a positional one (``section-2-1``)."""
    result = []
    for index, section in enumerate(sections, start=1):
        section_id = section.id or f"{prefix}-{index}"
        subsections = assign_section_ids(section.subsections, section_id) if section.subsections else None
        result.append(section.model_copy(update={"id": section_id, "subsections": subsections}))
    return result


def _matches(heading: str, patterns) -> bool:
    return any(pattern.search(heading.strip()) for pattern in patterns)


def order_sections(sections: List[OutlineSection]) -> List[OutlineSection]:
    """Moves the introduction to the front and the conclusion to the end."""
    intro = next((i for i, s in enumerate(sections) if _matches(s.heading, INTRO_PATTERNS)), None)
    conclusion = next(
        (
            i
            for i in reversed(range(len(sections)))
            if i != intro and _matches(sections[i].heading, CONCLUSION_PATTERNS)
        ),
        None,
    )
    order = [i for i in (intro,) if i is not None]
    order += [i for i in range(len(sections)) if i not in (intro, conclusion)]
    order += [i for i in (conclusion,) if i is not None]
    if order != list(range(len(sections))):
        logger.warning("outline.sections_reordered", section_count=len(sections))
    return [sections[i] for i in order]


def estimate_word_count(sections: List[OutlineSection]) -> int:
    total = 0
    for section in sections:
        total += section.suggested_word_count or DEFAULT_SECTION_WORDS
        if section.subsections:
            total += estimate_word_count(section.subsections)
    return total


def _serp_summary(research: ResearchResult) -> str:
    return "\n".join(f"{r.position}. {r.title} - {r.snippet}" for r in research.serp_results) or "None"


def _scraped_summary(research: ResearchResult) -> str:
    pages = sorted(research.scraped_content, key=lambda p: p.word_count, reverse=True)[:MAX_CONTEXT_PAGES]
    blocks = [f"### {page.title or page.url}\n{page.content[:MAX_PAGE_CHARS]}" for page in pages]
    return "\n\n".join(blocks) or "None"


class OutlineService:
    """Turns a stored research result into a section plan."""

    def __init__(
        self,
        llm_factory: LLMProviderFactory,
        research_repository: Repository[ResearchResult],
        repository: Repository[Outline],
        settings: Settings,
    ):
        self.llm_factory = llm_factory
        self.research_repository = research_repository
        self.repository = repository
        self.settings = settings

    async def generate_outline(self, research_id: str, options: Optional[GenerationOptions] = None) -> Outline:
        research = self.research_repository.get(research_id)
        if research is None:
            raise NotFoundError(f"Research {research_id}")

        resolved = with_defaults(options, self.settings)
        logger.info("outline.started", research_id=research_id, keyword=research.keyword)

        messages = outline_prompt.format_messages(
            language=resolved.language,
            tone=resolved.tone,
            point_of_view=resolved.point_of_view,
            formality=resolved.formality,
            keyword=research.keyword,
            geo=research.geo,
            target_word_count=target_word_count(resolved),
            title_instruction=f'**Use this exact title:** "{resolved.title}"' if resolved.title else "",
            include_keywords=", ".join(resolved.include_keywords or []) or "None",
            serp_summary=_serp_summary(research),
            scraped_content=_scraped_summary(research),
            people_also_ask="\n".join(f"- {q.question}" for q in research.people_also_ask or []) or "None",
        )
        draft: OutlineDraft = await self.llm_factory.get().complete_with_json(
            messages, schema=OutlineDraft, max_tokens=OUTLINE_MAX_TOKENS
        )

        sections = order_sections(assign_section_ids(draft.sections))
        metadata = draft.metadata
        outline = Outline(
            outline_id=str(uuid.uuid4()),
            research_id=research_id,
            keyword=research.keyword,
            title=resolved.title or draft.title or research.keyword,
            sections=sections,
            metadata=OutlineMetadata(
                estimated_word_count=metadata.estimated_word_count or estimate_word_count(sections),
                suggested_keywords=metadata.suggested_keywords or [research.keyword],
                target_audience=metadata.target_audience,
                tone=metadata.tone or resolved.tone,
            ),
        )
        self.repository.put(outline.outline_id, outline)
        logger.info("outline.completed", outline_id=outline.outline_id, section_count=len(sections))
        return outline

    def get_outline(self, outline_id: str) -> Outline:
        outline = self.repository.get(outline_id)
        if outline is None:
            raise NotFoundError(f"Outline {outline_id}")
        return outline
