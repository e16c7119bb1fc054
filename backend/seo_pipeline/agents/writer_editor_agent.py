# backend/seo_pipeline/agents/writer_editor_agent.py
# The writer and editor stages of article generation.

import math
import re
import time
import uuid
from typing import Dict, List, Optional

import structlog
from langchain_core.prompts import ChatPromptTemplate

from ..config import READING_TIME_WPM
from ..models import (
    Article,
    ArticleMetadata,
    GeneratedSection,
    GenerationOptions,
    GenerationStats,
    Outline,
    OutlineSection,
    ScrapedPage,
    count_words,
)
from ..prompts import (
    ARTICLE_EDITOR_SYSTEM_PROMPT,
    ARTICLE_EDITOR_USER_PROMPT,
    SECTION_WRITER_SYSTEM_PROMPT,
    SECTION_WRITER_USER_PROMPT,
)
from ..services.llm import LLMProviderFactory

logger = structlog.get_logger(__name__)

# --- Configuration ---
DEFAULT_SECTION_TARGET_WORDS = 500
RESEARCH_CONTEXT_PAGES = 3
RESEARCH_CONTEXT_CHARS = 1500
EDITOR_MAX_TOKENS = 65536
# The edit must keep at least this share of the draft's words.
MIN_EDIT_RATIO = 0.85

_SENTENCE_END_RE = re.compile(r"[.!?]\s*$")


writer_prompt_template = ChatPromptTemplate.from_messages(
    [
        ("system", SECTION_WRITER_SYSTEM_PROMPT),
        ("user", SECTION_WRITER_USER_PROMPT),
    ]
)

editor_prompt_template = ChatPromptTemplate.from_messages(
    [
        ("system", ARTICLE_EDITOR_SYSTEM_PROMPT),
        ("user", ARTICLE_EDITOR_USER_PROMPT),
    ]
)


def build_research_context(pages: List[ScrapedPage]) -> str:
    """The first few scraped pages, truncated, as grounding for the writer."""
    return "\n\n---\n\n".join(
        f"[{page.title or 'Source'}]\n{page.content[:RESEARCH_CONTEXT_CHARS]}"
        for page in pages[:RESEARCH_CONTEXT_PAGES]
    )


def section_levels(sections: List[OutlineSection], parent_level: int = 2) -> Dict[str, int]:
    levels: Dict[str, int] = {}
    for section in sections:
        level = section.level or parent_level
        levels[section.id] = level
        if section.subsections:
            levels.update(section_levels(section.subsections, level + 1))
    return levels


def combine_sections(outline: Outline, sections: List[GeneratedSection]) -> str:
    """Joins written sections under the outline title as Markdown."""
    levels = section_levels(outline.sections)
    lines = [f"# {outline.title}", ""]
    for section in sections:
        lines.append(f"{'#' * levels.get(section.id, 2)} {section.heading}")
        lines.append("")
        lines.append(section.content)
        lines.append("")
    return "\n".join(lines)


class SectionWriter:
    """
    The "Writer". Writes outline sections one at a time, in outline order.

    Every subsection follows its parent, and each call sees the headings
    written so far so sections do not repeat each other.
    """

    def __init__(self, llm_factory: LLMProviderFactory):
        self.llm_factory = llm_factory

    async def write_section(
        self,
        section: OutlineSection,
        outline: Outline,
        previous: List[GeneratedSection],
        research_context: str,
        options: GenerationOptions,
    ) -> GeneratedSection:
        logger.debug("writer.section_started", section_id=section.id, heading=section.heading)
        target_words = section.suggested_word_count or DEFAULT_SECTION_TARGET_WORDS

        messages = writer_prompt_template.format_messages(
            language=options.language,
            tone=options.tone,
            point_of_view=options.point_of_view,
            formality=options.formality,
            title=outline.title,
            heading=section.heading,
            description=section.description or "No extra guidance.",
            target_words=target_words,
            keywords=", ".join([outline.keyword, *(options.include_keywords or [])]),
            previous_sections="\n".join(f"- {s.heading}" for s in previous) or "None yet.",
            research_context=research_context or "None",
        )
        response = await self.llm_factory.get().complete(
            messages, max_tokens=math.ceil(target_words * 2.5) + 1000
        )

        content = response.content.strip()
        written = GeneratedSection(
            id=section.id,
            heading=section.heading,
            content=content,
            word_count=count_words(content),
        )
        logger.debug("writer.section_completed", section_id=section.id, word_count=written.word_count)
        return written

    async def write_sections(
        self, outline: Outline, research_context: str, options: GenerationOptions
    ) -> List[GeneratedSection]:
        written: List[GeneratedSection] = []
        for section in outline.sections:
            written.append(await self.write_section(section, outline, written, research_context, options))
            for subsection in section.subsections or []:
                written.append(await self.write_section(subsection, outline, written, research_context, options))
        return written


class ArticleEditor:
    """
    The "Editor". One editorial pass over the combined draft.

    When the edit comes back truncated (no closing punctuation) or noticeably
    shorter than the draft, the unedited draft is kept instead.
    """

    def __init__(self, llm_factory: LLMProviderFactory):
        self.llm_factory = llm_factory

    async def edit_article(
        self, outline: Outline, sections: List[GeneratedSection], options: GenerationOptions
    ) -> str:
        draft = combine_sections(outline, sections)
        draft_words = count_words(draft)
        logger.info("editor.started", section_count=len(sections), word_count=draft_words)

        messages = editor_prompt_template.format_messages(
            language=options.language,
            keyword=outline.keyword,
            article=draft,
        )
        response = await self.llm_factory.get().complete(
            messages, max_tokens=min(EDITOR_MAX_TOKENS, draft_words * 2 + 4000)
        )

        edited = response.content.strip()
        edited_words = count_words(edited)
        looks_incomplete = not _SENTENCE_END_RE.search(edited)
        shortened = edited_words < draft_words * MIN_EDIT_RATIO
        if looks_incomplete or shortened:
            logger.warning(
                "editor.fallback_to_draft",
                edited_word_count=edited_words,
                draft_word_count=draft_words,
                looks_incomplete=looks_incomplete,
                shortened=shortened,
            )
            return draft

        logger.info("editor.completed", edited_word_count=edited_words, draft_word_count=draft_words)
        return edited


def assemble_article(
    outline: Outline,
    sections: List[GeneratedSection],
    content: str,
    started_at: float,
    project_id: Optional[str] = None,
) -> Article:
    word_count = count_words(content)
    return Article(
        article_id=str(uuid.uuid4()),
        outline_id=outline.outline_id,
        keyword=outline.keyword,
        title=outline.title,
        content=content,
        sections=sections,
        metadata=ArticleMetadata(
            word_count=word_count,
            reading_time_minutes=math.ceil(word_count / READING_TIME_WPM),
            generation_stats=GenerationStats(
                sections_generated=len(sections),
                total_llm_calls=len(sections) + 1,
                generation_time_ms=int((time.monotonic() - started_at) * 1000),
            ),
        ),
        project_id=project_id,
    )
