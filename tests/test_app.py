# tests/test_app.py
import pytest

import app as app_module
from canvas.client import CanvasClient
from jobs.context import PlacementContext
from jobs.events import JobFailed
from jobs.worker import PlacementWorker


@pytest.fixture
def context(monkeypatch, fake_client_cls, make_canvas):
    fake = fake_client_cls(canvas=make_canvas())
    context = PlacementContext(
        client=CanvasClient("http://canvas.test"),
        client_factory=lambda channel: fake,
        sleep=lambda seconds: None,
    )
    monkeypatch.setattr(app_module, "context", context)
    return context


@pytest.fixture
def client(context):
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


def add(client, name="art", priority=3):
    body = {
        "pattern": {"name": name, "board_x": 1, "board_y": 1, "pixels": [{"x": 0, "y": 0, "color": 2}]},
        "priority": priority,
    }
    return client.post("/api/queue", json=body)


def test_status(client):
    response = client.get("/api/status")
    assert response.status_code == 200
    assert response.get_json()["run_active"] is False


def test_remote_clients_are_rejected(client):
    response = client.get("/api/status", environ_base={"REMOTE_ADDR": "10.1.2.3"})
    assert response.status_code == 403


def test_add_and_list_jobs(client):
    created = add(client)
    assert created.status_code == 201
    assert created.get_json()["status"] == "pending"

    jobs = client.get("/api/queue").get_json()["jobs"]
    assert [j["pattern"]["name"] for j in jobs] == ["art"]


def test_add_rejects_bad_input(client):
    assert client.post("/api/queue", json={}).status_code == 400
    assert client.post("/api/queue", json={"pattern": {"pixels": []}}).status_code == 400
    assert add(client, priority=9).status_code == 400


def test_priority_and_move(client):
    first = add(client, "first").get_json()["id"]
    second = add(client, "second").get_json()["id"]

    response = client.post(f"/api/queue/{second}/priority", json={"priority": 1})
    assert response.status_code == 200
    assert [j["id"] for j in client.get("/api/queue").get_json()["jobs"]] == [second, first]

    # different priorities cannot be reordered by hand
    assert client.post(f"/api/queue/{first}/move", json={"direction": "up"}).get_json()["moved"] is False
    assert client.post(f"/api/queue/{first}/move", json={"direction": "sideways"}).status_code == 400
    assert client.post(f"/api/queue/{first}/priority", json={"priority": "x"}).status_code == 400


def test_move_reorders_queue(client, context):
    first = add(client, "first").get_json()["id"]
    second = add(client, "second").get_json()["id"]
    third = add(client, "third").get_json()["id"]

    response = client.post(f"/api/queue/{second}/move", json={"direction": "up"})
    assert response.get_json()["moved"] is True
    assert [j["id"] for j in client.get("/api/queue").get_json()["jobs"]] == [second, first, third]

    # each request ticks the context, which re-sorts after status changes
    client.post(f"/api/queue/{first}/pause")
    context.worker_events.send(JobFailed(job_id=third, name="third", message="boom"))
    assert [j["id"] for j in client.get("/api/queue").get_json()["jobs"]] == [second, first, third]

    assert client.post(f"/api/queue/{second}/move", json={"direction": "down"}).get_json()["moved"] is True
    assert [j["id"] for j in client.get("/api/queue").get_json()["jobs"]] == [first, second, third]


def test_unknown_job_is_404(client):
    assert client.post("/api/queue/nope/priority", json={"priority": 1}).status_code == 404
    assert client.post("/api/queue/nope/pause").status_code == 404
    assert client.delete("/api/queue/nope").status_code == 404


def test_pause_retry_remove_and_clear(client):
    job_id = add(client).get_json()["id"]

    assert client.post(f"/api/queue/{job_id}/pause").get_json()["paused"] is True
    assert client.post(f"/api/queue/{job_id}/retry").status_code == 400
    assert client.delete(f"/api/queue/{job_id}").status_code == 200

    add(client)
    assert client.delete("/api/queue").status_code == 200
    assert client.get("/api/queue").get_json()["jobs"] == []


def test_run_start_requires_canvas(client):
    add(client)
    response = client.post("/api/run/start")
    assert response.status_code == 409
    assert "canvas" in response.get_json()["error"]
    assert client.post("/api/run/cancel").status_code == 409


def test_tokens_and_run(client, context, make_canvas):
    assert client.post("/api/config/tokens", json={}).status_code == 400
    response = client.post("/api/config/tokens", json={"access_token": "abc ", "refresh_token": "def"})
    assert response.status_code == 200
    assert context.client.access_token == "abc"

    context.canvas = make_canvas()
    add(client)
    assert client.post("/api/run/start").status_code == 200
    context.worker.join(timeout=5)

    status = client.get("/api/status").get_json()
    assert status["run_active"] is False
    assert status["jobs"]["complete"] == 1

    messages = client.get("/api/messages").get_json()["messages"]
    assert messages[-1]["message"].startswith("Run complete")


def test_run_pause_and_resume(client, context, fake_client_cls, make_canvas):
    assert client.post("/api/run/pause").status_code == 409
    assert client.post("/api/run/resume").status_code == 409

    context.worker = PlacementWorker(
        client=fake_client_cls(), jobs=[], canvas=make_canvas(), events=context.worker_events
    )
    assert client.post("/api/run/pause").status_code == 200
    assert client.post("/api/run/pause").status_code == 409
    assert client.post("/api/run/resume").status_code == 200
    assert context.worker.paused is False


def test_canvas_refresh_is_accepted(client, context):
    assert client.post("/api/canvas/refresh").status_code == 202
