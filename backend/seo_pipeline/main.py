# main.py

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models
from .container import Container, build_container, configure_logging
from .errors import AppError

logger = structlog.get_logger(__name__)


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Builds the API. A prebuilt container is used as-is and not closed."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is None:
            configure_logging()
            app.state.container = build_container()
        else:
            app.state.container = container
        yield
        if container is None:
            await app.state.container.aclose()

    app = FastAPI(title="SEO ARTICLE PIPELINE", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("api.error", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    _register_routes(app)
    return app


def get_container(request: Request) -> Container:
    return request.app.state.container


def _register_routes(app: FastAPI) -> None:
    @app.get("/", tags=["Root"])
    async def read_root():
        return {"status": "ok", "message": "Welcome to the SEO Article Pipeline API"}

    @app.post("/workflows", response_model=models.WorkflowStartResponse, status_code=202, tags=["Workflows"])
    async def start_workflow(body: models.WorkflowStartRequest, container: Container = Depends(get_container)):
        workflow_id = container.workflow_engine.start_workflow(
            body.keyword, geo=body.geo, options=body.options, outline_id=body.outline_id
        )
        return {"workflow_id": workflow_id}

    @app.get("/workflows/{workflow_id}", response_model=models.WorkflowState, tags=["Workflows"])
    async def get_workflow(workflow_id: str, container: Container = Depends(get_container)):
        """Polls the current state of a workflow."""
        return container.workflow_engine.get_workflow(workflow_id)

    @app.post("/research", response_model=models.ResearchStartResponse, status_code=202, tags=["Research"])
    async def start_research(body: models.ResearchRequest, container: Container = Depends(get_container)):
        research_id = container.research_service.start_research(body.keyword, body.geo, body.num_results)
        return {"research_id": research_id}

    @app.get("/research/{research_id}", response_model=models.ResearchResult, tags=["Research"])
    async def get_research(research_id: str, container: Container = Depends(get_container)):
        return container.research_service.get_research(research_id)

    @app.post("/content-plan/{project_id}/generate", response_model=models.BatchStatus, tags=["Content Plan"])
    async def start_batch(
        project_id: str, body: models.BatchStartRequest, container: Container = Depends(get_container)
    ):
        return container.content_plan_service.start_batch(project_id, body.page_ids, body.options)

    @app.get("/content-plan/{project_id}/status", response_model=models.BatchStatus, tags=["Content Plan"])
    async def get_batch_status(project_id: str, container: Container = Depends(get_container)):
        return container.content_plan_service.get_batch_status(project_id)

    @app.post("/content-plan/{project_id}/cancel", response_model=models.CancelResponse, tags=["Content Plan"])
    async def cancel_batch(project_id: str, container: Container = Depends(get_container)):
        return {"cancelled": container.content_plan_service.cancel_batch(project_id)}

    @app.get("/cache/stats", response_model=models.CacheStats, tags=["Cache"])
    async def get_cache_stats(container: Container = Depends(get_container)):
        return container.cache.get_stats()


app = create_app()
