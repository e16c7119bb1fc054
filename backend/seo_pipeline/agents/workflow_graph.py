# backend/seo_pipeline/agents/workflow_graph.py
# The research -> outline -> write -> edit pipeline as a LangGraph state graph.

import time
from typing import Any, Callable, List, Optional, TypedDict

import structlog
from langgraph.graph import END, StateGraph

from ..models import Article, GeneratedSection, GenerationOptions, Outline, ResearchResult
from ..schemas import WorkflowStatus
from ..services.outline_service import OutlineService
from ..services.research_service import ResearchService
from .writer_editor_agent import ArticleEditor, SectionWriter, assemble_article, build_research_context

logger = structlog.get_logger(__name__)

# Called as on_stage(workflow_id, status, **snapshot_updates) when a stage begins.
StageCallback = Callable[..., None]


class GraphState(TypedDict, total=False):
    """Represents the state of one pipeline run as it moves through the graph."""
    workflow_id: str
    keyword: str
    geo: str
    options: GenerationOptions
    outline_id: Optional[str]
    started_at: float
    research: ResearchResult
    outline: Outline
    sections: List[GeneratedSection]
    article: Article


class ArticlePipeline:
    """
    Wires the four stages into a linear graph.

    Each node reports the stage it is entering through ``on_stage`` before
    doing any work, so whoever owns the workflow record can publish it.
    """

    def __init__(
        self,
        research_service: ResearchService,
        outline_service: OutlineService,
        writer: SectionWriter,
        editor: ArticleEditor,
        on_stage: StageCallback,
    ):
        self.research_service = research_service
        self.outline_service = outline_service
        self.writer = writer
        self.editor = editor
        self.on_stage = on_stage
        self.app = self._build()

    async def researcher_node(self, state: GraphState) -> dict:
        self.on_stage(state["workflow_id"], WorkflowStatus.RESEARCHING)
        research = await self.research_service.conduct_research(state["keyword"], geo=state["geo"])
        return {"research": research}

    async def outliner_node(self, state: GraphState) -> dict:
        research = state["research"]
        self.on_stage(state["workflow_id"], WorkflowStatus.OUTLINING, research_id=research.research_id)
        outline_id = state.get("outline_id")
        if outline_id:
            outline = self.outline_service.get_outline(outline_id)
            logger.info("workflow.outline_reused", workflow_id=state["workflow_id"], outline_id=outline_id)
        else:
            outline = await self.outline_service.generate_outline(research.research_id, state["options"])
        return {"outline": outline}

    async def writer_node(self, state: GraphState) -> dict:
        outline = state["outline"]
        self.on_stage(state["workflow_id"], WorkflowStatus.WRITING, outline=outline)
        context = build_research_context(state["research"].scraped_content)
        sections = await self.writer.write_sections(outline, context, state["options"])
        return {"sections": sections}

    async def editor_node(self, state: GraphState) -> dict:
        self.on_stage(state["workflow_id"], WorkflowStatus.EDITING)
        content = await self.editor.edit_article(state["outline"], state["sections"], state["options"])
        article = assemble_article(
            state["outline"],
            state["sections"],
            content,
            started_at=state["started_at"],
            project_id=state["options"].project_id,
        )
        return {"article": article}

    def _build(self) -> Any:
        workflow = StateGraph(GraphState)

        workflow.add_node("researcher", self.researcher_node)
        workflow.add_node("outliner", self.outliner_node)
        workflow.add_node("writer", self.writer_node)
        workflow.add_node("editor", self.editor_node)

        workflow.set_entry_point("researcher")
        workflow.add_edge("researcher", "outliner")
        workflow.add_edge("outliner", "writer")
        workflow.add_edge("writer", "editor")
        workflow.add_edge("editor", END)

        return workflow.compile()

    async def run(
        self,
        workflow_id: str,
        keyword: str,
        geo: str,
        options: GenerationOptions,
        outline_id: Optional[str] = None,
    ) -> Article:
        final_state = await self.app.ainvoke(
            {
                "workflow_id": workflow_id,
                "keyword": keyword,
                "geo": geo,
                "options": options,
                "outline_id": outline_id,
                "started_at": time.monotonic(),
            }
        )
        return final_state["article"]
