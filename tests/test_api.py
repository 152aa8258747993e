import json
import time

import pytest
from fastapi.testclient import TestClient

from blog_pipeline.api.main import create_app

from fakes import ScriptedBackend, happy_script


@pytest.fixture
def backend():
    return ScriptedBackend(happy_script(85))


@pytest.fixture
def client(settings, backend):
    app = create_app(settings, backend_factory=lambda model_id: backend)
    with TestClient(app) as test_client:
        yield test_client


def _create(client, topic="Python asyncio in practice") -> str:
    response = client.post("/v1/tasks", json={
        "topic": topic,
        "reference_content": "asyncio docs excerpt",
        "requirements": {"target_word_count": 900},
    })
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "created"
    return body["task_id"]


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/").json()["endpoints"]["tasks"] == "/v1/tasks"


def test_create_and_list(client):
    task_id = _create(client)

    listing = client.get("/v1/tasks").json()
    assert listing["count"] == 1
    assert listing["tasks"][0]["task_id"] == task_id
    assert listing["tasks"][0]["requirements"]["target_word_count"] == 900

    detail = client.get(f"/v1/tasks/{task_id}").json()
    assert detail["task"]["topic"] == "Python asyncio in practice"
    assert detail["draft"] is None


def test_create_rejects_empty_topic(client):
    assert client.post("/v1/tasks", json={"topic": ""}).status_code == 422


def test_event_stream_runs_to_publish(client):
    task_id = _create(client)

    with client.stream("GET", f"/v1/tasks/{task_id}/events") as response:
        assert response.status_code == 200
        events = [json.loads(line) for line in response.iter_lines() if line]

    assert events[0]["kind"] == "stage_started"
    assert events[0]["stage"] == "research"
    assert events[-1]["kind"] == "workflow_finished"
    assert events[-1]["status"] == "published"

    detail = client.get(f"/v1/tasks/{task_id}").json()
    assert detail["task"]["status"] == "published"
    assert detail["review"]["overall_score"] == 85
    assert detail["draft"]["title"] == "Understanding asyncio"

    state = client.get(f"/v1/tasks/{task_id}/state").json()
    assert state["is_published"] is True

    audit = client.get(f"/v1/tasks/{task_id}/invocations").json()
    assert [r["stage"] for r in audit["invocations"]] == ["research", "draft", "review"]
    assert audit["total_cost_units"] > 0

    progress = client.get(f"/v1/tasks/{task_id}/progress").json()
    assert progress["status"] == "completed"

    # A finished task cannot run again.
    assert client.post(f"/v1/tasks/{task_id}/run").status_code == 409
    assert client.get(f"/v1/tasks/{task_id}/events").status_code == 409


def test_background_run_and_progress(client):
    task_id = _create(client)

    response = client.post(f"/v1/tasks/{task_id}/run")
    assert response.status_code == 202
    assert response.json()["status"] == "running"

    deadline = time.monotonic() + 10
    status = None
    while time.monotonic() < deadline:
        status = client.get(f"/v1/tasks/{task_id}").json()["task"]["status"]
        if status in ("published", "failed"):
            break
        time.sleep(0.02)

    assert status == "published"


def test_cancel_when_not_running(client):
    task_id = _create(client)
    assert client.post(f"/v1/tasks/{task_id}/cancel").status_code == 409


def test_unknown_task_returns_404(client):
    assert client.get("/v1/tasks/task-nope").status_code == 404
    assert client.post("/v1/tasks/task-nope/run").status_code == 404
    assert client.get("/v1/tasks/task-nope/events").status_code == 404
    assert client.post("/v1/tasks/task-nope/cancel").status_code == 404
    assert client.get("/v1/tasks/task-nope/progress").status_code == 404
    assert client.get("/v1/tasks/task-nope/state").status_code == 404
    assert client.get("/v1/tasks/task-nope/invocations").status_code == 404


def test_progress_missing_before_first_run(client):
    task_id = _create(client)
    assert client.get(f"/v1/tasks/{task_id}/progress").status_code == 404


# --- Manual handling ---


def _events(client, task_id, **params):
    with client.stream("GET", f"/v1/tasks/{task_id}/events", params=params) as response:
        assert response.status_code == 200
        return [json.loads(line) for line in response.iter_lines() if line]


def test_run_without_auto_publish_then_publish(client):
    task_id = _create(client)

    events = _events(client, task_id, auto_publish="false")
    assert events[-1]["kind"] == "workflow_finished"
    assert events[-1]["status"] == "review_completed"
    assert "publish" not in [e.get("stage") for e in events]

    response = client.post(f"/v1/tasks/{task_id}/publish")
    assert response.status_code == 200
    assert response.json()["status"] == "published"
    assert client.post(f"/v1/tasks/{task_id}/publish").status_code == 409


def test_stages_step_by_step(client):
    task_id = _create(client)

    assert client.post(f"/v1/tasks/{task_id}/stages/draft").status_code == 409

    for stage, status in (
        ("research", "research_completed"),
        ("draft", "writing_completed"),
        ("review", "review_completed"),
    ):
        response = client.post(f"/v1/tasks/{task_id}/stages/{stage}")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == status

    assert body["score"] == 85
    assert client.post(f"/v1/tasks/{task_id}/publish").json()["status"] == "published"


def test_stage_path_is_validated(client):
    task_id = _create(client)
    assert client.post(f"/v1/tasks/{task_id}/stages/publish").status_code == 422
    assert client.post(f"/v1/tasks/{task_id}/stages/bogus").status_code == 422
    assert client.post("/v1/tasks/task-nope/stages/research").status_code == 404


def test_edit_artifacts(client):
    task_id = _create(client)
    assert client.put(f"/v1/tasks/{task_id}/draft", json={"title": "T", "content": "# T\nbody"}).status_code == 404
    _events(client, task_id)

    research = client.put(f"/v1/tasks/{task_id}/research", json={"summary": "Edited summary"})
    assert research.status_code == 200
    assert research.json()["summary"] == "Edited summary"

    draft = client.put(f"/v1/tasks/{task_id}/draft", json={
        "title": "Edited title",
        "content": "# Edited title\n\nShorter body by an editor.",
    })
    assert draft.status_code == 200
    assert draft.json()["title"] == "Edited title"

    review = client.put(f"/v1/tasks/{task_id}/review", json={"formatting_score": 0})
    assert review.status_code == 200
    before = client.get(f"/v1/tasks/{task_id}").json()["review"]
    assert review.json()["overall_score"] == before["overall_score"]
    assert review.json()["overall_score"] < 85

    assert client.put(f"/v1/tasks/{task_id}/review", json={"formatting_score": 11}).status_code == 422
    assert client.put(f"/v1/tasks/{task_id}/draft", json={"title": "", "content": "x"}).status_code == 422

    detail = client.get(f"/v1/tasks/{task_id}").json()
    assert detail["research"]["summary"] == "Edited summary"
    assert detail["draft"]["title"] == "Edited title"


def test_export_download(client):
    task_id = _create(client)
    assert client.get(f"/v1/tasks/{task_id}/export").status_code == 404
    _events(client, task_id)

    response = client.get(f"/v1/tasks/{task_id}/export")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/markdown")
    assert "attachment; filename*=UTF-8''Understanding_asyncio_" in response.headers["content-disposition"]
    assert response.text.startswith("# Understanding asyncio")


def test_delete_task(client):
    task_id = _create(client)
    _events(client, task_id)

    response = client.delete(f"/v1/tasks/{task_id}")
    assert response.status_code == 200
    assert response.json()["deleted"] is True

    assert client.get(f"/v1/tasks/{task_id}").status_code == 404
    assert client.get(f"/v1/tasks/{task_id}/progress").status_code == 404
    assert client.delete(f"/v1/tasks/{task_id}").status_code == 404
