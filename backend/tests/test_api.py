"""End-to-end tests through the HTTP API with fake search, scrape and LLM backends."""

import time
from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from seo_pipeline.container import build_container
from seo_pipeline.main import create_app
from seo_pipeline.models import ImportPageInput

from conftest import chat_factories, firecrawl_page, request_json, serper_payload


def backend(request: httpx.Request) -> httpx.Response:
    if request.url.host == "google.serper.dev":
        return httpx.Response(200, json=serper_payload(3, request_json(request)["q"]))
    return httpx.Response(200, json=firecrawl_page(request_json(request)["url"]))


def wait_for(client: TestClient, url: str, done: Callable[[httpx.Response], bool]) -> httpx.Response:
    for _ in range(500):
        response = client.get(url)
        if done(response):
            return response
        time.sleep(0.01)
    raise AssertionError(f"{url} never reached the expected state: {response.json()}")


@pytest.fixture
def container(settings, make_transport, chat_model):
    return build_container(
        settings, transport=make_transport(backend), chat_model_factories=chat_factories(chat_model)
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container=container)) as test_client:
        yield test_client


def test_root(client) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# -----------------------------------------------------------------------------
# Workflows
# -----------------------------------------------------------------------------

def test_workflow_runs_to_completion(client) -> None:
    response = client.post("/workflows", json={"keyword": "best running shoes", "geo": "us"})

    assert response.status_code == 202
    workflow_id = response.json()["workflow_id"]

    final = wait_for(
        client, f"/workflows/{workflow_id}", lambda r: r.json()["status"] in ("completed", "failed")
    ).json()
    assert final["status"] == "completed"
    assert final["error"] is None
    assert final["research_id"]
    assert final["article"]["keyword"] == "best running shoes"
    assert final["article"]["metadata"]["generation_stats"]["sections_generated"] == 4


def test_failed_workflow_reports_its_error(client, chat_model) -> None:
    chat_model.fail_stage = "outline"

    workflow_id = client.post("/workflows", json={"keyword": "kw"}).json()["workflow_id"]

    final = wait_for(client, f"/workflows/{workflow_id}", lambda r: r.json()["status"] == "failed").json()
    assert "outline backend unavailable" in final["error"]
    assert final["completed_at"] is not None


def test_unknown_workflow_is_404(client) -> None:
    response = client.get("/workflows/nope")

    assert response.status_code == 404
    assert response.json() == {"detail": "Workflow nope not found"}


def test_empty_keyword_is_rejected(client) -> None:
    response = client.post("/workflows", json={"keyword": ""})

    assert response.status_code == 422


# -----------------------------------------------------------------------------
# Research and cache
# -----------------------------------------------------------------------------

def test_research_is_readable_once_done_and_fills_the_cache(client) -> None:
    assert client.get("/cache/stats").json()["serp_entries"] == 0

    response = client.post("/research", json={"keyword": "trail shoes", "num_results": 3})
    assert response.status_code == 202
    research_id = response.json()["research_id"]

    research = wait_for(client, f"/research/{research_id}", lambda r: r.status_code == 200).json()
    assert research["keyword"] == "trail shoes"
    assert len(research["serp_results"]) == 3
    assert len(research["scraped_content"]) == 3

    stats = client.get("/cache/stats").json()
    assert stats["serp_entries"] == 1
    assert stats["page_entries"] == 3
    assert stats["db_size"]


def test_unknown_research_is_404(client) -> None:
    assert client.get("/research/missing").status_code == 404


# -----------------------------------------------------------------------------
# Content plan
# -----------------------------------------------------------------------------

def test_batch_generation_and_status(client, container) -> None:
    container.content_plan_service.import_pages(
        "p1", [ImportPageInput(keywords="running shoes"), ImportPageInput(keywords="trail shoes")]
    )

    started = client.post("/content-plan/p1/generate", json={"options": {"tone": "friendly"}})

    assert started.status_code == 200
    assert started.json()["running"] is True
    assert started.json()["total"] == 2

    final = wait_for(client, "/content-plan/p1/status", lambda r: not r.json()["running"]).json()
    assert final["stats"]["completed"] == 2
    assert final["stats"]["failed"] == 0
    assert all(p.article_id for p in container.content_plan_service.get_pages("p1"))


def test_batch_without_pages_is_400(client) -> None:
    response = client.post("/content-plan/empty/generate", json={})

    assert response.status_code == 400
    assert response.json() == {"detail": "No pages to generate"}


def test_cancel_without_a_batch(client) -> None:
    response = client.post("/content-plan/p1/cancel")

    assert response.status_code == 200
    assert response.json() == {"cancelled": False}
    status = client.get("/content-plan/p1/status").json()
    assert status["running"] is False
    assert status["total"] == 0
