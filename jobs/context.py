#!/usr/bin/env python3
"""Consumer-owned placement state.

The context is the only writer of the queue, quota, canvas and tokens.
Background tasks get deep copies when they are spawned and report back
through event channels that `tick()` drains.
"""

import copy
import logging
import threading
import time
from collections import deque
from typing import Callable, List, Optional

from canvas.client import CanvasClient
from canvas.cooldown import describe_cooldown, format_duration
from canvas.errors import AuthError, CanvasError
from canvas.models import CanvasSnapshot, Profile, UserQuota
from canvas.tokens import TokenStore, token_preview

from .events import (
    CanvasFetched,
    ChannelCredentialSink,
    CredentialsChanged,
    CycleSummary,
    Event,
    EventChannel,
    FetchFailed,
    ItemValidated,
    JobCompleted,
    JobFailed,
    JobProgress,
    JobSkipped,
    JobStarted,
    ProfileFetched,
    QuotaUpdated,
    RUN_TERMINAL_EVENTS,
    RunCancelled,
    RunCompleted,
    RunPaused,
    RunResumed,
    ValidationError,
)
from .models import DEFAULT_PRIORITY, Job, JobStatus, Pattern
from .pixels import meaningful_pixels
from .queue import JobQueue
from .store import QueueStore
from .validator import VALIDATION_INTERVAL_SECONDS, DriftValidator
from .worker import PlacementWorker

logger = logging.getLogger(__name__)

MESSAGE_LOG_SIZE = 100


class PlacementContext:
    """Queue, session and background tasks of one canvas identity."""

    def __init__(
        self,
        client: CanvasClient,
        token_store: Optional[TokenStore] = None,
        queue_store: Optional[QueueStore] = None,
        validation_interval: int = VALIDATION_INTERVAL_SECONDS,
        auto_resume: bool = False,
        client_factory: Optional[Callable[[EventChannel], CanvasClient]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.time
    ):
        """Initialize placement context.

        Args:
            client: Client used for the consumer's own session
            token_store: Token persistence (None = tokens live in memory only)
            queue_store: Queue persistence (None = queue lives in memory only)
            validation_interval: Seconds between validator cycles
            auto_resume: Start a run on tick whenever one could start
            client_factory: Builds the private client of a background task
            sleep: Sleep function handed to background tasks
            clock: Returns the current time in seconds
        """
        self.client = client
        self.token_store = token_store
        self.queue_store = queue_store
        self.validation_interval = validation_interval
        self.auto_resume = auto_resume
        self._client_factory = client_factory or self._build_client
        self._sleep = sleep
        self._clock = clock

        self.queue = JobQueue()
        self.canvas: Optional[CanvasSnapshot] = None
        self.profile: Optional[Profile] = None
        self.quota: Optional[UserQuota] = None
        self.messages = deque(maxlen=MESSAGE_LOG_SIZE)
        self.last_run: Optional[Event] = None
        self.run_paused = False

        self.worker_events = EventChannel()
        self.validator_events = EventChannel()
        self.refresh_events = EventChannel()

        self.worker: Optional[PlacementWorker] = None
        self.validator: Optional[DriftValidator] = None

        # set by an explicit cancel or a failed run, cleared by start_run()
        self._resume_blocked = False

        # Flask serves requests from several threads
        self._lock = threading.RLock()

    # ----- lifecycle -----

    def load(self) -> None:
        """Restore tokens and queue from disk."""
        with self._lock:
            if self.token_store is not None:
                data = self.token_store.load()
                if data.base_url:
                    self.client.base_url = data.base_url.rstrip('/')
                if data.access_token:
                    self.client.set_tokens(data.access_token, data.refresh_token)
                    self.log(f"Loaded tokens (access={token_preview(data.access_token)})")

            if self.queue_store is not None and self.queue_store.exists():
                self.queue = JobQueue(self.queue_store.load())
                self.log(f"Loaded {len(self.queue)} queued jobs")

    @property
    def run_active(self) -> bool:
        return self.worker is not None

    @property
    def validation_active(self) -> bool:
        return self.validator is not None

    def log(self, message: str) -> None:
        """Append to the status log."""
        self.messages.append({"ts": self._clock(), "message": message})
        logger.info(message)

    # ----- queue operations -----

    def add_pattern(self, pattern: Pattern, priority: int = DEFAULT_PRIORITY) -> Job:
        """Anchor a pattern and queue it.

        Raises:
            ValueError: If priority is outside 1..5
        """
        with self._lock:
            colors = self.canvas.colors if self.canvas else []
            job = self.queue.enqueue(pattern, colors, priority)
            if job.status == JobStatus.SKIPPED:
                self.log(f"Added '{job.name}' with no meaningful pixels (skipped)")
            else:
                self.log(f"Added '{job.name}' ({job.pixels_total} pixels, priority {priority})")
            self._queue_changed()
            return job

    def move(self, job_id: str, direction: str) -> bool:
        """Swap a job with its neighbour.

        Raises:
            ValueError: If direction is not "up" or "down"
            KeyError: If the job is unknown
        """
        with self._lock:
            self._require(job_id)
            if direction == "up":
                moved = self.queue.move_up(job_id)
            elif direction == "down":
                moved = self.queue.move_down(job_id)
            else:
                raise ValueError(f"Direction must be 'up' or 'down', got {direction!r}")
            if moved:
                self._queue_changed()
            return moved

    def set_priority(self, job_id: str, priority: int) -> Job:
        with self._lock:
            job = self.queue.set_priority(job_id, priority)
            self.log(f"Priority of '{job.name}' set to {priority}")
            self._queue_changed()
            return job

    def toggle_pause(self, job_id: str) -> Job:
        with self._lock:
            job = self.queue.toggle_paused(job_id)
            self.log(f"{'Paused' if job.paused else 'Unpaused'} '{job.name}'")
            self._queue_changed()
            return job

    def retry(self, job_id: str) -> Job:
        """Put a failed job back to Pending.

        Raises:
            KeyError: If the job is unknown
            ValueError: If the job has not failed
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.FAILED:
                raise ValueError(f"Only failed jobs can be retried ('{job.name}' is {job.status.value})")
            self.queue.set_status(job_id, JobStatus.PENDING)
            self.log(f"Retrying '{job.name}'")
            self._queue_changed()
            return job

    def remove(self, job_id: str) -> Job:
        with self._lock:
            job = self._require(job_id)
            self.queue.remove(job_id)
            self.log(f"Removed '{job.name}'")
            self._queue_changed()
            return job

    def clear(self) -> None:
        with self._lock:
            count = len(self.queue)
            self.queue.clear()
            self.log(f"Cleared {count} jobs")
            self._queue_changed()

    # ----- session -----

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None,
                   base_url: Optional[str] = None) -> None:
        """Configure credentials and persist them."""
        with self._lock:
            if base_url:
                self.client.base_url = base_url.rstrip('/')
            self.client.set_tokens(access_token, refresh_token)
            if self.token_store is not None:
                self.token_store.update(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    base_url=self.client.base_url
                )
            self._resume_blocked = False
            self.log(f"Tokens configured (access={token_preview(access_token)})")

    def clear_tokens(self) -> None:
        with self._lock:
            self.client.clear_tokens()
            if self.token_store is not None:
                self.token_store.update(access_token=None, refresh_token=None)
            self.log("Tokens cleared - configure new tokens to continue")

    # ----- background tasks -----

    def start_run(self) -> bool:
        """Spawn a placement run over the pending jobs.

        Returns:
            True if a run was started
        """
        with self._lock:
            if self.worker is not None:
                self.log("A placement run is already active")
                return False
            if self.canvas is None:
                self.log("Load the canvas before starting a run")
                return False
            if not self.client.has_tokens():
                self.log("Configure tokens before starting a run")
                return False

            pending = self.queue.pending()
            if not pending:
                self.log("No pending jobs to run")
                return False

            self.worker = PlacementWorker(
                client=self._client_factory(self.worker_events),
                jobs=self.queue.snapshot(pending),
                canvas=copy.deepcopy(self.canvas),
                events=self.worker_events,
                quota=copy.deepcopy(self.quota),
                sleep=self._sleep,
                clock=self._clock
            )
            self._resume_blocked = False
            self.log(f"Starting run over {len(pending)} pending jobs")
            self.worker.start()
            return True

    def cancel_run(self) -> bool:
        """Request cancellation; the run stops before its next pixel."""
        with self._lock:
            if self.worker is None:
                return False
            self.worker.cancel()
            self._resume_blocked = True
            self.log("Cancelling run after the current pixel")
            return True

    def pause_run(self) -> bool:
        """Hold the active run before its next pixel."""
        with self._lock:
            if self.worker is None or self.worker.paused:
                return False
            self.worker.pause()
            self.log("Pausing run before the next pixel")
            return True

    def resume_run(self) -> bool:
        with self._lock:
            if self.worker is None or not self.worker.paused:
                return False
            self.worker.resume()
            self.log("Resuming run")
            return True

    def start_validation(self) -> bool:
        with self._lock:
            if self.validator is not None:
                return False
            if not self.client.has_tokens():
                self.log("Configure tokens before starting validation")
                return False
            self.validator = DriftValidator(
                client=self._client_factory(self.validator_events),
                jobs=self.queue.snapshot(),
                events=self.validator_events,
                interval=self.validation_interval,
                sleep=self._sleep
            )
            self.validator.start()
            self.log(f"Validation started (every {format_duration(self.validation_interval)})")
            return True

    def stop_validation(self) -> bool:
        with self._lock:
            if self.validator is None:
                return False
            self.validator.stop()
            self.validator = None
            self.log("Validation stopped")
            return True

    def toggle_validation(self) -> bool:
        """Start or stop the validator.

        Returns:
            True if the validator is now active
        """
        if self.validation_active:
            self.stop_validation()
            return False
        return self.start_validation()

    def refresh_canvas(self) -> threading.Thread:
        return self._spawn_fetch("canvas")

    def refresh_profile(self) -> threading.Thread:
        return self._spawn_fetch("profile")

    def _spawn_fetch(self, what: str) -> threading.Thread:
        client = self._client_factory(self.refresh_events)
        thread = threading.Thread(
            target=self._fetch, args=(client, what), daemon=True, name=f"refresh-{what}"
        )
        thread.start()
        return thread

    def _fetch(self, client: CanvasClient, what: str) -> None:
        """One-shot fetch; the result always arrives as an event."""
        try:
            if what == "canvas":
                self.refresh_events.send(CanvasFetched(canvas=client.get_canvas()))
            else:
                self.refresh_events.send(ProfileFetched(profile=client.get_profile()))
        except AuthError as e:
            self.refresh_events.send(FetchFailed(what=what, message=e.message, unauthorized=True))
        except CanvasError as e:
            self.refresh_events.send(FetchFailed(what=what, message=str(e)))

    def _build_client(self, channel: EventChannel) -> CanvasClient:
        base_url, access_token, refresh_token = self.client.credentials()
        return CanvasClient(
            base_url=base_url,
            access_token=access_token,
            refresh_token=refresh_token,
            credential_sink=ChannelCredentialSink(channel, persist=self.token_store),
            timeout=self.client.timeout
        )

    # ----- event reconciliation -----

    def tick(self) -> int:
        """Apply every queued event from all channels.

        Returns:
            Number of events applied
        """
        with self._lock:
            events = (
                self.worker_events.drain()
                + self.validator_events.drain()
                + self.refresh_events.drain()
            )
            queue_changed = False
            for event in events:
                if self.apply(event):
                    queue_changed = True

            if queue_changed:
                self._queue_changed()

            if (self.auto_resume and not self._resume_blocked and self.worker is None
                    and self.canvas is not None and self.client.has_tokens() and self.queue.pending()):
                self.start_run()

            return len(events)

    def apply(self, event: Event) -> bool:
        """Apply one event.

        Returns:
            True if the queue changed
        """
        if isinstance(event, JobStarted):
            job = self.queue.set_status(event.job_id, JobStatus.IN_PROGRESS)
            if job:
                self.log(f"Placing '{event.name}' ({event.position}/{event.total_jobs})")
            return job is not None

        if isinstance(event, JobProgress):
            job = self.queue.get(event.job_id)
            if job:
                job.set_progress(event.placed, event.total)
            if event.cooldown_seconds:
                self.log(f"'{event.name}': {event.placed}/{event.total} - waiting {format_duration(event.cooldown_seconds)}")
            return False

        if isinstance(event, JobCompleted):
            job = self.queue.get(event.job_id)
            if job:
                job.set_progress(event.placed, event.total)
                self.queue.set_status(event.job_id, JobStatus.COMPLETE)
            self.log(f"Completed '{event.name}' ({event.placed}/{event.total} pixels)")
            return job is not None

        if isinstance(event, JobFailed):
            job = self.queue.set_status(event.job_id, JobStatus.FAILED)
            if job:
                job.error = event.message
            self.log(f"Failed '{event.name}': {event.message}")
            return job is not None

        if isinstance(event, JobSkipped):
            job = self.queue.set_status(event.job_id, JobStatus.SKIPPED)
            self.log(f"Skipped '{event.name}': {event.reason}")
            return job is not None

        if isinstance(event, RUN_TERMINAL_EVENTS):
            return self._finish_run(event)

        if isinstance(event, RunPaused):
            self.run_paused = True
            self.log(f"Run paused: {event.jobs_processed} jobs, {event.pixels_placed} pixels placed")
            return False

        if isinstance(event, RunResumed):
            self.run_paused = False
            self.log("Run resumed")
            return False

        if isinstance(event, QuotaUpdated):
            self.quota = event.quota
            return False

        if isinstance(event, CredentialsChanged):
            self.client.set_tokens(event.access_token, event.refresh_token)
            self.log(f"Tokens rotated (access={token_preview(event.access_token)})")
            return False

        if isinstance(event, ItemValidated):
            if not event.needs_requeue:
                return False
            job = self.queue.get(event.job_id)
            if job is None or job.status != JobStatus.COMPLETE:
                return False
            self.queue.requeue(event.job_id)
            self.log(f"'{event.name}' drifted ({event.correct}/{event.total} correct), re-queued")
            return True

        if isinstance(event, CycleSummary):
            self.log(
                f"Validation: {event.items_checked} checked, {event.items_requeued} re-queued, "
                f"next in {format_duration(event.next_check_seconds)}"
            )
            return False

        if isinstance(event, ValidationError):
            self.log(f"Validation error: {event.message}")
            return False

        if isinstance(event, CanvasFetched):
            self.canvas = event.canvas
            self._recalculate_totals()
            self.log(f"Canvas loaded ({event.canvas.width}x{event.canvas.height}, {len(event.canvas.colors)} colours)")
            return True

        if isinstance(event, ProfileFetched):
            self.profile = event.profile
            self.quota = event.profile.quota
            self.log(f"Profile loaded ({event.profile.username or 'unknown user'})")
            return False

        if isinstance(event, FetchFailed):
            self.log(f"Failed to fetch {event.what}: {event.message}")
            if event.unauthorized:
                self.clear_tokens()
            return False

        raise TypeError(f"Unhandled event type {type(event).__name__}")

    def _finish_run(self, event: Event) -> bool:
        self.worker = None
        self.run_paused = False
        self.last_run = event

        # jobs interrupted mid-run go back to the queue
        interrupted = self.queue.with_status(JobStatus.IN_PROGRESS)
        for job in interrupted:
            self.queue.set_status(job.id, JobStatus.PENDING)

        if isinstance(event, RunCompleted):
            self.log(
                f"Run complete: {event.jobs_processed} jobs, {event.pixels_placed} pixels "
                f"in {format_duration(int(event.duration_seconds))}"
            )
        elif isinstance(event, RunCancelled):
            self.log(f"Run cancelled: {event.jobs_processed} jobs, {event.pixels_placed} pixels placed")
        else:
            self._resume_blocked = True
            self.log(f"Run failed: {event.message}")
            if event.unauthorized:
                self.clear_tokens()

        return bool(interrupted)

    def _recalculate_totals(self) -> None:
        for job in self.queue.with_status(JobStatus.PENDING):
            total = len(meaningful_pixels(job.pattern, self.canvas.colors))
            job.set_progress(job.pixels_placed, total)
            if total == 0:
                self.queue.set_status(job.id, JobStatus.SKIPPED)

    def _queue_changed(self) -> None:
        self.queue.sort()
        if self.queue_store is not None:
            self.queue_store.save(self.queue)
        if self.validator is not None:
            self.validator.sync_jobs(self.queue.snapshot())

    def _require(self, job_id: str) -> Job:
        job = self.queue.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job

    # ----- views -----

    def status(self) -> dict:
        """Summary for display."""
        with self._lock:
            now_ms = int(self._clock() * 1000)
            counts = {status.value: 0 for status in JobStatus}
            for job in self.queue:
                counts[job.status.value] += 1
            return {
                "run_active": self.run_active,
                "run_paused": self.run_paused,
                "validation_active": self.validation_active,
                "has_tokens": self.client.has_tokens(),
                "base_url": self.client.base_url,
                "canvas_loaded": self.canvas is not None,
                "username": self.profile.username if self.profile else None,
                "quota": self.quota.to_dict() if self.quota else None,
                "available_pixels": self.quota.available if self.quota else None,
                "cooldown": describe_cooldown(self.quota, now_ms),
                "jobs": counts,
                "last_message": self.messages[-1]["message"] if self.messages else None,
            }

    def jobs(self) -> List[dict]:
        with self._lock:
            return [job.to_dict() for job in self.queue]
