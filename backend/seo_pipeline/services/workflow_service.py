import asyncio
import uuid
from typing import Awaitable, Callable, Dict, Optional, Set

import structlog

from ..agents.workflow_graph import ArticlePipeline
from ..agents.writer_editor_agent import ArticleEditor, SectionWriter
from ..config import Settings
from ..errors import ConflictError, NotFoundError, ValidationError, WorkflowFailedError
from ..models import GenerationOptions, WorkflowState, utcnow
from ..schemas import WorkflowStatus
from .options import with_defaults
from .outline_service import OutlineService
from .repository import Repository
from .research_service import ResearchService

logger = structlog.get_logger(__name__)

# Forward order of the non-failure states.
STATUS_ORDER: Dict[WorkflowStatus, int] = {
    WorkflowStatus.PENDING: 0,
    WorkflowStatus.RESEARCHING: 1,
    WorkflowStatus.OUTLINING: 2,
    WorkflowStatus.WRITING: 3,
    WorkflowStatus.EDITING: 4,
    WorkflowStatus.COMPLETED: 5,
}


def can_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    if current in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED):
        return False
    if target == WorkflowStatus.FAILED:
        return True
    return STATUS_ORDER[target] > STATUS_ORDER[current]


class WorkflowEngine:
    """
    Owns every WorkflowState and the only code that changes one.

    Each transition replaces the stored snapshot with a new one, so a
    reader always sees a complete state and statuses only move forward.
    Any error raised by a stage ends the run in ``failed``.
    """

    def __init__(
        self,
        research_service: ResearchService,
        outline_service: OutlineService,
        writer: SectionWriter,
        editor: ArticleEditor,
        repository: Repository[WorkflowState],
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repository = repository
        self.settings = settings
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        self.pipeline = ArticlePipeline(
            research_service, outline_service, writer, editor, on_stage=self._advance
        )

    def _create(self, keyword: str, geo: Optional[str], options: Optional[GenerationOptions]) -> WorkflowState:
        keyword = keyword.strip()
        if not keyword:
            raise ValidationError("keyword is required")
        geo = geo or (options.target_country if options else None) or self.settings.default_geo
        state = WorkflowState(workflow_id=str(uuid.uuid4()), keyword=keyword, geo=geo)
        self.repository.put(state.workflow_id, state)
        logger.info("workflow.created", workflow_id=state.workflow_id, keyword=keyword, geo=geo)
        return state

    def _advance(self, workflow_id: str, status: WorkflowStatus, **updates) -> WorkflowState:
        current = self.get_workflow(workflow_id)
        if not can_transition(current.status, status):
            raise ConflictError(
                f"Workflow {workflow_id} cannot move from {current.status.value} to {status.value}"
            )
        if status in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED):
            updates["completed_at"] = utcnow()
        state = current.model_copy(update={"status": status, **updates})
        self.repository.put(workflow_id, state)
        logger.info("workflow.status_changed", workflow_id=workflow_id, status=status.value)
        return state

    async def _execute(
        self, state: WorkflowState, options: Optional[GenerationOptions], outline_id: Optional[str]
    ) -> WorkflowState:
        try:
            article = await self.pipeline.run(
                state.workflow_id,
                state.keyword,
                state.geo,
                with_defaults(options, self.settings),
                outline_id=outline_id,
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error("workflow.failed", workflow_id=state.workflow_id, error=message)
            return self._advance(state.workflow_id, WorkflowStatus.FAILED, error=message)

        final = self._advance(state.workflow_id, WorkflowStatus.COMPLETED, article=article)
        logger.info(
            "workflow.completed",
            workflow_id=state.workflow_id,
            article_id=article.article_id,
            word_count=article.metadata.word_count,
        )
        return final

    async def run_workflow(
        self,
        keyword: str,
        geo: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        outline_id: Optional[str] = None,
    ) -> WorkflowState:
        """Runs a whole workflow in the caller's task and returns its terminal state."""
        state = self._create(keyword, geo, options)
        return await self._execute(state, options, outline_id)

    def start_workflow(
        self,
        keyword: str,
        geo: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        outline_id: Optional[str] = None,
    ) -> str:
        """Registers a pending workflow, runs it in the background and returns its id."""
        state = self._create(keyword, geo, options)
        task = asyncio.create_task(self._execute(state, options, outline_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return state.workflow_id

    def get_workflow(self, workflow_id: str) -> WorkflowState:
        state = self.repository.get(workflow_id)
        if state is None:
            raise NotFoundError(f"Workflow {workflow_id}")
        return state

    async def poll_until_terminal(self, workflow_id: str, interval: Optional[float] = None) -> WorkflowState:
        """
        Re-reads the workflow every ``interval`` seconds until it finishes.

        Returns the completed state, or raises ``WorkflowFailedError`` with the
        recorded error message.
        """
        if interval is None:
            interval = self.settings.workflow_poll_interval_ms / 1000
        while True:
            state = self.get_workflow(workflow_id)
            if state.status == WorkflowStatus.COMPLETED:
                return state
            if state.status == WorkflowStatus.FAILED:
                raise WorkflowFailedError(workflow_id, state.error or "Workflow failed")
            await self._sleep(interval)
