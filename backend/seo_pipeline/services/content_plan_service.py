import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

from ..errors import ConflictError, NotFoundError, ValidationError, WorkflowFailedError
from ..models import (
    ArticleSize,
    BatchStatus,
    ContentPlanPage,
    ContentPlanStats,
    GenerationOptions,
    ImportPageInput,
    utcnow,
)
from ..schemas import GenerationStatus, WorkflowStatus
from .options import merge_options
from .workflow_service import WorkflowEngine

logger = structlog.get_logger(__name__)

# Checked in order; the first fragment found in the page type wins.
PAGE_TYPE_PRESETS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("pillar", "guide", "ultimate"), "longer"),
    (("blog", "article"), "long"),
    (("landing", "home"), "short"),
    (("category", "hub"), "long"),
)

# Statuses a batch never (re)generates.
FINISHED_STATUSES = (GenerationStatus.COMPLETED, GenerationStatus.SKIPPED)


def map_page_type_to_size_preset(page_type: Optional[str]) -> Optional[str]:
    if not page_type:
        return None
    lowered = page_type.lower()
    for fragments, preset in PAGE_TYPE_PRESETS:
        if any(fragment in lowered for fragment in fragments):
            return preset
    return "medium"


def split_keywords(keywords: Optional[str]) -> List[str]:
    return [k.strip() for k in (keywords or "").split(",") if k.strip()]


class ContentPlanRepository:
    """In-memory store for planned pages and per-project generation defaults."""

    def __init__(self):
        self._pages: Dict[str, ContentPlanPage] = {}
        self._project_defaults: Dict[str, GenerationOptions] = {}

    def import_pages(self, project_id: str, pages: List[ImportPageInput]) -> List[ContentPlanPage]:
        if not pages:
            raise ValidationError("No pages to import")
        start = len(self.pages_by_project(project_id))
        created = []
        for offset, item in enumerate(pages):
            page = ContentPlanPage(
                page_id=str(uuid.uuid4()),
                project_id=project_id,
                position=start + offset,
                **item.model_dump(),
            )
            self._pages[page.page_id] = page
            created.append(page)
        logger.info("content_plan.pages_imported", project_id=project_id, count=len(created))
        return created

    def get_page(self, page_id: str) -> Optional[ContentPlanPage]:
        return self._pages.get(page_id)

    def pages_by_project(self, project_id: str) -> List[ContentPlanPage]:
        pages = [p for p in self._pages.values() if p.project_id == project_id]
        return sorted(pages, key=lambda p: p.position)

    def update_page(self, page_id: str, **updates) -> ContentPlanPage:
        page = self._pages.get(page_id)
        if page is None:
            raise NotFoundError(f"Page {page_id}")
        updated = page.model_copy(update={**updates, "updated_at": utcnow()})
        self._pages[page_id] = updated
        return updated

    def update_status(
        self,
        page_id: str,
        status: GenerationStatus,
        article_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ContentPlanPage:
        return self.update_page(
            page_id, generation_status=status, article_id=article_id, error_message=error_message
        )

    def delete_page(self, page_id: str) -> bool:
        return self._pages.pop(page_id, None) is not None

    def stats(self, project_id: str) -> ContentPlanStats:
        stats = ContentPlanStats()
        for page in self.pages_by_project(project_id):
            stats.total += 1
            name = page.generation_status.value
            setattr(stats, name, getattr(stats, name) + 1)
        return stats

    def set_project_defaults(self, project_id: str, options: GenerationOptions) -> None:
        self._project_defaults[project_id] = options

    def get_project_defaults(self, project_id: str) -> Optional[GenerationOptions]:
        return self._project_defaults.get(project_id)


class CancellationToken:
    """A flag the batch loop checks before starting each page."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class BatchRun:
    project_id: str
    page_ids: List[str]
    token: CancellationToken = field(default_factory=CancellationToken)
    current_index: int = 0
    running: bool = True
    task: Optional[asyncio.Task] = None


class ContentPlanService:
    """
    Generates articles for the planned pages of a project.

    Pages of one project are processed one at a time, in plan order, and at
    most one batch runs per project. A failed page is recorded and the batch
    moves on. Cancellation takes effect between pages.
    """

    def __init__(self, repository: ContentPlanRepository, workflow_engine: WorkflowEngine):
        self.repository = repository
        self.workflow_engine = workflow_engine
        self._runs: Dict[str, BatchRun] = {}

    # --- Pages ---

    def import_pages(self, project_id: str, pages: List[ImportPageInput]) -> List[ContentPlanPage]:
        return self.repository.import_pages(project_id, pages)

    def get_pages(self, project_id: str) -> List[ContentPlanPage]:
        return self.repository.pages_by_project(project_id)

    def get_stats(self, project_id: str) -> ContentPlanStats:
        return self.repository.stats(project_id)

    def build_workflow_request(
        self, page: ContentPlanPage, batch_options: Optional[GenerationOptions] = None
    ) -> Tuple[str, GenerationOptions]:
        """
        Returns the focus keyword and layered options for one page.

        Precedence from lowest to highest: project defaults, the size implied
        by the page type, batch options, then settings stored on the page.
        """
        keywords = split_keywords(page.keywords)
        focus_keyword = keywords[0] if keywords else (page.meta_title or "")

        preset = map_page_type_to_size_preset(page.page_type)
        page_type_layer = GenerationOptions(article_size=ArticleSize(preset=preset)) if preset else None
        page_layer = GenerationOptions(
            tone=page.tone,
            point_of_view=page.point_of_view,
            formality=page.formality,
            template_id=page.template_id,
            article_size=ArticleSize(preset=page.article_size_preset) if page.article_size_preset else None,
            title=page.meta_title,
            include_keywords=keywords[1:] or None,
            project_id=page.project_id,
        )
        options = merge_options(
            self.repository.get_project_defaults(page.project_id),
            page_type_layer,
            batch_options,
            page_layer,
        )
        return focus_keyword, options

    async def generate_single(
        self, page_id: str, options: Optional[GenerationOptions] = None
    ) -> ContentPlanPage:
        """
        Runs one full workflow for a page and records the outcome on it.

        The page is marked failed before any error is re-raised.
        """
        page = self.repository.get_page(page_id)
        if page is None:
            raise NotFoundError(f"Page {page_id}")
        if not page.keywords and not page.meta_title:
            raise ValidationError("Page must have keywords or a meta title to generate an article")
        if page.generation_status == GenerationStatus.GENERATING:
            raise ConflictError(f"Page {page_id} is already being generated")

        self.repository.update_status(page_id, GenerationStatus.GENERATING)
        try:
            keyword, merged = self.build_workflow_request(page, options)
            logger.info("content_plan.page_started", page_id=page_id, keyword=keyword)
            state = await self.workflow_engine.run_workflow(keyword, options=merged)
            if state.status != WorkflowStatus.COMPLETED or state.article is None:
                raise WorkflowFailedError(state.workflow_id, state.error or "Workflow completed without an article")
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self.repository.update_status(page_id, GenerationStatus.FAILED, error_message=message)
            logger.error("content_plan.page_failed", page_id=page_id, error=message)
            raise

        updated = self.repository.update_status(
            page_id, GenerationStatus.COMPLETED, article_id=state.article.article_id
        )
        logger.info("content_plan.page_completed", page_id=page_id, article_id=state.article.article_id)
        return updated

    # --- Batches ---

    def _select_pages(self, project_id: str, page_ids: Optional[List[str]]) -> List[str]:
        if page_ids:
            selected = []
            for page_id in page_ids:
                page = self.repository.get_page(page_id)
                if page and page.project_id == project_id and page.generation_status not in FINISHED_STATUSES:
                    selected.append(page_id)
        else:
            selected = [
                p.page_id
                for p in self.repository.pages_by_project(project_id)
                if p.generation_status in (GenerationStatus.PENDING, GenerationStatus.FAILED)
            ]
        if not selected:
            raise ValidationError("No pages to generate")
        return selected

    def start_batch(
        self,
        project_id: str,
        page_ids: Optional[List[str]] = None,
        options: Optional[GenerationOptions] = None,
    ) -> BatchStatus:
        """
        Starts a background batch for a project and returns its first status.

        The running check and the registration happen without yielding to
        the event loop, so two callers can never both start a batch for the
        same project. The loser gets a ConflictError.
        """
        current = self._runs.get(project_id)
        if current is not None and current.running:
            raise ConflictError(f"A batch is already running for project {project_id}")

        run = BatchRun(project_id=project_id, page_ids=self._select_pages(project_id, page_ids))
        self._runs[project_id] = run
        run.task = asyncio.create_task(self._process_batch(run, options))
        logger.info("batch.started", project_id=project_id, page_count=len(run.page_ids))
        return self.get_batch_status(project_id)

    async def _process_batch(self, run: BatchRun, options: Optional[GenerationOptions]) -> None:
        try:
            for index, page_id in enumerate(run.page_ids):
                if run.token.cancelled:
                    logger.info("batch.cancelled", project_id=run.project_id, processed_count=index)
                    return
                run.current_index = index

                page = self.repository.get_page(page_id)
                if page is None or page.generation_status in FINISHED_STATUSES:
                    continue
                try:
                    await self.generate_single(page_id, options)
                except Exception as e:
                    # Already recorded on the page by generate_single.
                    logger.warning("batch.page_failed", project_id=run.project_id, page_id=page_id, error=str(e))
            logger.info("batch.completed", project_id=run.project_id, stats=self.repository.stats(run.project_id).model_dump())
        except Exception as e:
            logger.error("batch.aborted", project_id=run.project_id, error=str(e))
        finally:
            run.running = False

    def get_batch_status(self, project_id: str) -> BatchStatus:
        run = self._runs.get(project_id)
        stats = self.repository.stats(project_id)
        if run is None or not run.running:
            return BatchStatus(
                running=False,
                current_index=0,
                total=0,
                stats=stats,
                cancelled=run.token.cancelled if run else False,
            )
        return BatchStatus(
            running=True,
            current_index=run.current_index,
            total=len(run.page_ids),
            stats=stats,
            cancelled=run.token.cancelled,
        )

    def cancel_batch(self, project_id: str) -> bool:
        """Requests cancellation; returns False when no batch is running."""
        run = self._runs.get(project_id)
        if run is None or not run.running:
            return False
        run.token.cancel()
        logger.info("batch.cancel_requested", project_id=project_id, current_index=run.current_index)
        return True

    async def wait_for_batch(self, project_id: str) -> BatchStatus:
        run = self._runs.get(project_id)
        if run is not None and run.task is not None:
            await asyncio.shield(run.task)
        return self.get_batch_status(project_id)
