# tests/test_context.py
import json

import pytest

from canvas.client import CanvasClient
from canvas.errors import AuthError
from canvas.models import Profile, UserQuota
from canvas.tokens import TokenStore

from jobs.context import PlacementContext
from jobs.events import (
    CanvasFetched,
    CredentialsChanged,
    ItemValidated,
    JobFailed,
    JobStarted,
    RunCancelled,
    RunCompleted,
    RunFailed,
    RunPaused,
    RunResumed,
)
from jobs.models import JobStatus, Pattern, PatternPixel
from jobs.store import QueueStore
from jobs.worker import PlacementWorker


def pattern(name="art", pixels=((0, 0, 2),), board_x=1, board_y=1):
    return Pattern(name, [PatternPixel(x, y, c) for x, y, c in pixels], board_x, board_y)


@pytest.fixture
def fake(fake_client_cls, make_canvas):
    return fake_client_cls(canvas=make_canvas(), profile=Profile(quota=UserQuota(pixel_buffer=2)))


@pytest.fixture
def ctx(tmp_path, fake):
    context = PlacementContext(
        client=CanvasClient("http://canvas.test", "tok", "ref"),
        token_store=TokenStore(tmp_path / "tokens.json"),
        queue_store=QueueStore(str(tmp_path / "queue.json")),
        client_factory=lambda channel: fake,
        sleep=lambda seconds: None,
    )
    context.token_store.update(access_token="tok", refresh_token="ref")
    return context


def test_run_places_pending_jobs_and_reconciles(ctx, fake, make_canvas, tmp_path):
    ctx.canvas = make_canvas()
    job = ctx.add_pattern(pattern())

    assert ctx.start_run() is True
    ctx.worker.join(timeout=5)
    ctx.tick()

    assert fake.attempts == [(1, 1, 2)]
    assert job.status == JobStatus.COMPLETE
    assert job.pixels_placed == 1
    assert ctx.run_active is False
    assert isinstance(ctx.last_run, RunCompleted)
    assert ctx.quota.pixel_buffer == 1

    saved = json.loads((tmp_path / "queue.json").read_text())
    assert saved[0]["status"] == "complete"


def test_run_is_single_flight(ctx, make_canvas):
    ctx.canvas = make_canvas()
    ctx.add_pattern(pattern())

    assert ctx.start_run() is True
    assert ctx.start_run() is False
    ctx.worker.join(timeout=5)


def test_run_needs_canvas_tokens_and_pending_jobs(ctx, make_canvas):
    ctx.add_pattern(pattern())
    assert ctx.start_run() is False

    ctx.canvas = make_canvas()
    ctx.client.clear_tokens()
    assert ctx.start_run() is False

    ctx.client.set_tokens("tok", "ref")
    ctx.clear()
    assert ctx.start_run() is False
    assert ctx.messages[-1]["message"] == "No pending jobs to run"


def test_paused_jobs_are_not_dispatched(ctx, fake, make_canvas):
    ctx.canvas = make_canvas()
    job = ctx.add_pattern(pattern())
    ctx.toggle_pause(job.id)

    assert ctx.start_run() is False
    assert fake.attempts == []


def test_unauthorized_run_clears_tokens(ctx, tmp_path):
    job = ctx.add_pattern(pattern())
    ctx.apply(JobStarted(job_id=job.id, name=job.name, position=1, total_jobs=1))
    ctx.apply(JobFailed(job_id=job.id, name=job.name, message="Unauthorized - check tokens"))
    ctx.apply(RunFailed(message="Unauthorized - check tokens", jobs_processed=0, pixels_placed=0, unauthorized=True))

    assert job.status == JobStatus.FAILED
    assert job.error == "Unauthorized - check tokens"
    assert ctx.client.has_tokens() is False
    assert json.loads((tmp_path / "tokens.json").read_text())["access_token"] is None


def test_cancelled_run_returns_jobs_to_pending(ctx):
    job = ctx.add_pattern(pattern())
    ctx.apply(JobStarted(job_id=job.id, name=job.name, position=1, total_jobs=1))
    assert job.status == JobStatus.IN_PROGRESS

    assert ctx.apply(RunCancelled(jobs_processed=0, pixels_placed=0)) is True
    assert job.status == JobStatus.PENDING


def test_move_keeps_order_through_ticks_and_status_changes(ctx, tmp_path):
    a = ctx.add_pattern(pattern("a"))
    b = ctx.add_pattern(pattern("b", board_x=4))
    c = ctx.add_pattern(pattern("c", board_x=7))

    assert ctx.move(b.id, "up") is True
    assert [j["pattern"]["name"] for j in ctx.jobs()] == ["b", "a", "c"]

    ctx.worker_events.send(JobStarted(job_id=c.id, name=c.name, position=1, total_jobs=1))
    ctx.worker_events.send(JobFailed(job_id=c.id, name=c.name, message="boom"))
    ctx.tick()
    assert [j["pattern"]["name"] for j in ctx.jobs()] == ["b", "a", "c"]

    reloaded = [job.name for job in QueueStore(str(tmp_path / "queue.json")).load()]
    assert reloaded == ["b", "a", "c"]

    with pytest.raises(ValueError):
        ctx.move(a.id, "sideways")
    with pytest.raises(KeyError):
        ctx.move("nope", "up")


def test_pause_and_resume_run(ctx, fake, make_canvas):
    assert ctx.pause_run() is False
    assert ctx.resume_run() is False

    ctx.worker = PlacementWorker(client=fake, jobs=[], canvas=make_canvas(), events=ctx.worker_events)
    assert ctx.pause_run() is True
    assert ctx.worker.paused is True
    assert ctx.pause_run() is False

    ctx.worker_events.send(RunPaused(jobs_processed=1, pixels_placed=4))
    ctx.tick()
    assert ctx.status()["run_paused"] is True

    assert ctx.resume_run() is True
    assert ctx.resume_run() is False
    ctx.worker_events.send(RunResumed())
    ctx.tick()
    assert ctx.run_paused is False

    ctx.apply(RunPaused(jobs_processed=1, pixels_placed=4))
    ctx.apply(RunCancelled(jobs_processed=1, pixels_placed=4))
    assert ctx.run_paused is False
    assert ctx.run_active is False


def test_retry_only_failed_jobs(ctx):
    job = ctx.add_pattern(pattern())
    with pytest.raises(ValueError):
        ctx.retry(job.id)

    ctx.apply(JobFailed(job_id=job.id, name=job.name, message="boom"))
    ctx.retry(job.id)
    assert job.status == JobStatus.PENDING
    assert job.error is None


def test_drift_requeues_completed_job(ctx):
    job = ctx.add_pattern(pattern())
    ctx.queue.set_status(job.id, JobStatus.COMPLETE)
    job.set_progress(1)

    event = ItemValidated(job_id=job.id, name=job.name, correct=0, total=1, needs_requeue=True)
    assert ctx.apply(event) is True
    assert job.status == JobStatus.PENDING
    assert job.pixels_placed == 0

    # a job no longer complete is left alone
    assert ctx.apply(event) is False


def test_rotated_credentials_reach_the_session(ctx):
    ctx.worker_events.send(CredentialsChanged(access_token="NEW", refresh_token="ref"))
    assert ctx.tick() == 1
    assert ctx.client.access_token == "NEW"


def test_canvas_refresh_recalculates_pending_totals(ctx, make_canvas):
    # without a palette the transparent pixel still counts
    job = ctx.add_pattern(pattern(pixels=((0, 0, 2), (1, 0, 0))))
    assert job.pixels_total == 2

    ctx.apply(CanvasFetched(canvas=make_canvas()))
    assert job.pixels_total == 1


def test_refresh_tasks_post_results(ctx, fake):
    ctx.refresh_canvas().join(timeout=5)
    ctx.refresh_profile().join(timeout=5)
    ctx.tick()

    assert ctx.canvas is not None
    assert ctx.profile.quota.pixel_buffer == 2
    assert ctx.quota.pixel_buffer == 2


def test_unauthorized_refresh_clears_tokens(ctx, fake):
    fake.profile = AuthError(status=401)
    ctx.refresh_profile().join(timeout=5)
    ctx.tick()

    assert ctx.client.has_tokens() is False
    assert "Failed to fetch profile" in ctx.messages[-2]["message"]


def test_auto_resume_starts_run_until_blocked(ctx, make_canvas):
    ctx.auto_resume = True
    ctx.canvas = make_canvas()
    first = ctx.add_pattern(pattern())

    ctx.tick()
    assert ctx.run_active is True
    ctx.worker.join(timeout=5)
    ctx.tick()
    assert first.status == JobStatus.COMPLETE

    ctx.apply(RunFailed(message="boom", jobs_processed=0, pixels_placed=0))
    ctx.add_pattern(pattern("second", board_x=4))
    ctx.tick()
    assert ctx.run_active is False


def test_validator_start_and_stop(fake):
    context = PlacementContext(
        client=CanvasClient("http://canvas.test", "tok"),
        client_factory=lambda channel: fake,
    )

    assert context.start_validation() is True
    assert context.start_validation() is False
    validator = context.validator

    assert context.stop_validation() is True
    validator.join(timeout=5)
    assert not validator.thread.is_alive()
    assert context.stop_validation() is False


def test_status_summary(ctx):
    ctx.add_pattern(pattern())
    status = ctx.status()

    assert status["has_tokens"] is True
    assert status["jobs"]["pending"] == 1
    assert status["cooldown"].startswith("No user info")
