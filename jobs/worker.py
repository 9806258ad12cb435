#!/usr/bin/env python3
"""Background placement worker thread."""

import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

from canvas.client import CanvasClient
from canvas.cooldown import should_pause, wait_time, format_duration
from canvas.errors import AuthError, CanvasError, RateLimitError, describe_error
from canvas.models import CanvasSnapshot, PlaceResult, UserQuota

from .events import (
    EventChannel,
    Event,
    JobCompleted,
    JobFailed,
    JobProgress,
    JobSkipped,
    JobStarted,
    QuotaUpdated,
    RunCancelled,
    RunCompleted,
    RunFailed,
    RunPaused,
    RunResumed,
)
from .models import Job, JobStatus, PatternPixel
from .pixels import meaningful_pixels, pixels_to_place

logger = logging.getLogger(__name__)


class RunCancelledError(Exception):
    """Raised inside a run once cancellation was requested."""


class PlacementWorker:
    """Places the pixels of queued jobs one at a time.

    The worker owns private copies of the jobs, canvas and quota it was
    spawned with and reports everything through `events`; it never touches
    the consumer's state.
    """

    INTER_PIXEL_DELAY = 0.1
    WAIT_SLICE_SECONDS = 60
    PAUSE_POLL_SECONDS = 1

    def __init__(
        self,
        client: CanvasClient,
        jobs: List[Job],
        canvas: CanvasSnapshot,
        events: EventChannel,
        quota: Optional[UserQuota] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.time
    ):
        """Initialize placement worker.

        Args:
            client: Canvas client owned by this worker
            jobs: Pending jobs in queue order (copies)
            canvas: Canvas snapshot taken at dispatch start
            events: Channel to the consumer
            quota: Last known quota, None if unknown
            sleep: Sleep function (defaults to a cancellable wait)
            clock: Returns the current time in seconds
        """
        self.client = client
        self.jobs = jobs
        self.canvas = canvas
        self.events = events
        self.quota = quota
        self._sleep_func = sleep
        self._clock = clock
        self._cancel = threading.Event()
        # cleared while the run is paused
        self._resumed = threading.Event()
        self._resumed.set()
        self.running = False
        self.thread: Optional[threading.Thread] = None

        # Stats
        self.stats = {
            "jobs_processed": 0,
            "pixels_placed": 0,
            "pixels_abandoned": 0
        }

    def start(self):
        """Start worker thread."""
        if self.running:
            return

        self.running = True
        self.thread = threading.Thread(target=self.run, daemon=True, name="placement-worker")
        self.thread.start()
        logger.info("Worker thread started with %d jobs", len(self.jobs))

    def cancel(self):
        """Request cooperative cancellation; takes effect between pixels."""
        self._cancel.set()
        self._resumed.set()

    def pause(self):
        """Hold the run before its next pixel until `resume()` or `cancel()`."""
        self._resumed.clear()

    def resume(self):
        self._resumed.set()

    def join(self, timeout: Optional[float] = None):
        """Wait for the worker thread to finish."""
        if self.thread:
            self.thread.join(timeout=timeout)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def run(self):
        """Process every job, then post exactly one terminal run event."""
        self.running = True
        start_time = self._clock()

        try:
            finished = self._run_jobs()
            if finished:
                duration = self._clock() - start_time
                logger.info(
                    "Run completed: %d jobs, %d pixels in %.1fs",
                    self.stats["jobs_processed"], self.stats["pixels_placed"], duration
                )
                self._emit(RunCompleted(
                    jobs_processed=self.stats["jobs_processed"],
                    pixels_placed=self.stats["pixels_placed"],
                    duration_seconds=duration
                ))
        except RunCancelledError:
            logger.info(
                "Run cancelled: %d jobs, %d pixels placed",
                self.stats["jobs_processed"], self.stats["pixels_placed"]
            )
            self._emit(RunCancelled(
                jobs_processed=self.stats["jobs_processed"],
                pixels_placed=self.stats["pixels_placed"]
            ))
        finally:
            self.running = False

    def _run_jobs(self) -> bool:
        """Run jobs in order.

        Returns:
            True if every job was handled, False if the run was aborted
        """
        total_jobs = len(self.jobs)

        for position, job in enumerate(self.jobs, start=1):
            self._checkpoint()

            logger.info("Processing job %s '%s' (%d/%d)", job.id, job.name, position, total_jobs)
            job.status = JobStatus.IN_PROGRESS
            self._emit(JobStarted(job_id=job.id, name=job.name, position=position, total_jobs=total_jobs))

            try:
                self._process_job(job)
            except RunCancelledError:
                raise
            except AuthError as e:
                self._fail(job, e.message, unauthorized=True)
                return False
            except CanvasError as e:
                self._fail(job, describe_error(e, self._now_ms()))
                return False
            except Exception as e:
                logger.exception("Unexpected error processing job %s", job.id)
                self._fail(job, f"Unexpected error: {e}")
                return False

            self.stats["jobs_processed"] += 1

        return True

    def _fail(self, job: Job, message: str, unauthorized: bool = False):
        logger.error("Job %s '%s' failed: %s", job.id, job.name, message)
        job.status = JobStatus.FAILED
        job.error = message
        self._emit(JobFailed(job_id=job.id, name=job.name, message=message))
        self._emit(RunFailed(
            message=message,
            jobs_processed=self.stats["jobs_processed"],
            pixels_placed=self.stats["pixels_placed"],
            unauthorized=unauthorized
        ))

    def _process_job(self, job: Job):
        """Place every pixel of one job that the canvas does not show yet.

        Args:
            job: Job to process

        Raises:
            RunCancelledError: If cancelled between pixels or while paused
            CanvasError: On a non rate-limit failure
        """
        pattern = job.pattern
        pixels = meaningful_pixels(pattern, self.canvas.colors)
        total = len(pixels)
        todo = pixels_to_place(pattern, pixels, self.canvas)
        already_correct = total - len(todo)

        if not todo:
            reason = "All pixels already correct" if total else "No meaningful pixels"
            logger.info("Job %s '%s' skipped: %s", job.id, job.name, reason)
            job.status = JobStatus.SKIPPED
            job.set_progress(already_correct, total)
            self._emit(JobSkipped(job_id=job.id, name=job.name, reason=reason))
            return

        placed = 0
        for pixel in todo:
            self._checkpoint()

            position = pattern.absolute(pixel)
            progress = already_correct + placed

            if self.quota is not None:
                is_long, wait = should_pause(self.quota, self._now_ms())
                if wait > 0:
                    self._wait(wait, is_long, job, progress, total, position)

            self._emit(JobProgress(
                job_id=job.id, name=job.name, placed=progress, total=total, position=position
            ))

            if self._place(job, pixel, position, progress, total):
                placed += 1
                self.stats["pixels_placed"] += 1
                job.set_progress(already_correct + placed, total)

            self._sleep(self.INTER_PIXEL_DELAY)

        job.status = JobStatus.COMPLETE
        job.set_progress(already_correct + placed, total)
        logger.info("Job %s '%s' completed: %d/%d pixels", job.id, job.name, job.pixels_placed, total)
        self._emit(JobCompleted(job_id=job.id, name=job.name, placed=job.pixels_placed, total=total))

    def _place(self, job: Job, pixel: PatternPixel, position: Tuple[int, int], progress: int, total: int) -> bool:
        """Place one pixel, absorbing a single rate-limit rejection.

        Returns:
            True if placed, False if abandoned after the one retry
        """
        x, y = position
        try:
            result = self.client.set_pixel(x, y, pixel.color_id)
        except RateLimitError as e:
            self._absorb_rate_limit(e)
            is_long, wait = should_pause(self.quota, self._now_ms())
            logger.warning("Rate limited at (%d, %d): %s; retrying in %ds", x, y, e.message, wait)
            if wait > 0:
                self._wait(wait, is_long, job, progress, total, position)

            try:
                result = self.client.set_pixel(x, y, pixel.color_id)
            except RateLimitError as retry_error:
                self._absorb_rate_limit(retry_error)
                self.stats["pixels_abandoned"] += 1
                logger.warning("Abandoning pixel (%d, %d) after retry: %s", x, y, retry_error.message)
                return False

        self._on_placed(result, pixel)
        return True

    def _on_placed(self, result: PlaceResult, pixel: PatternPixel):
        if result.quota is not None:
            self._set_quota(result.quota)
        elif self.quota is not None:
            self._set_quota(self.quota.with_timers(result.timers))
        self.canvas.set_color(result.x, result.y, pixel.color_id)

    def _absorb_rate_limit(self, error: RateLimitError):
        base = self.quota if self.quota is not None else UserQuota()
        self._set_quota(base.after_rate_limit(error.timers, error.interval))

    def _set_quota(self, quota: UserQuota):
        self.quota = quota
        self._emit(QuotaUpdated(quota=quota.with_timers(None)))

    def _wait(self, wait: int, is_long: bool, job: Job, progress: int, total: int, position: Tuple[int, int]):
        """Sleep through a cooldown, in slices when it is long.

        Long waits re-poll the profile at each slice boundary and stop early
        once the fresh quota allows a placement.
        """
        self._emit(JobProgress(
            job_id=job.id, name=job.name, placed=progress, total=total,
            position=position, cooldown_seconds=wait
        ))

        if not is_long:
            self._sleep(wait)
            self._check_cancelled()
            return

        logger.info("Long cooldown of %s before next pixel of '%s'", format_duration(wait), job.name)
        waited = 0
        while waited < wait:
            chunk = min(self.WAIT_SLICE_SECONDS, wait - waited)
            self._sleep(chunk)
            waited += chunk
            self._check_cancelled()

            if self._poll_wait() == 0:
                self._emit(JobProgress(
                    job_id=job.id, name=job.name, placed=progress, total=total, position=position
                ))
                return

            remaining = wait - waited
            if remaining > 0:
                self._emit(JobProgress(
                    job_id=job.id, name=job.name, placed=progress, total=total,
                    position=position, cooldown_seconds=remaining
                ))

    def _poll_wait(self) -> Optional[int]:
        """Refresh the quota from the profile.

        Returns:
            Fresh wait in seconds, None if the profile could not be fetched

        Raises:
            AuthError: If the credentials were rejected
        """
        try:
            profile = self.client.get_profile()
        except AuthError:
            raise
        except CanvasError as e:
            logger.warning("Profile poll during cooldown failed: %s", e)
            return None

        self._set_quota(profile.quota)
        return wait_time(self.quota, self._now_ms())

    def _checkpoint(self):
        """Honour cancel and pause requests between pixels."""
        self._check_cancelled()
        if self._resumed.is_set():
            return

        logger.info("Run paused after %d pixels", self.stats["pixels_placed"])
        self._emit(RunPaused(
            jobs_processed=self.stats["jobs_processed"],
            pixels_placed=self.stats["pixels_placed"]
        ))
        while True:
            self._check_cancelled()
            if self._resumed.is_set():
                break
            if self._sleep_func is not None:
                self._sleep_func(self.PAUSE_POLL_SECONDS)
            else:
                self._resumed.wait(self.PAUSE_POLL_SECONDS)

        logger.info("Run resumed")
        self._emit(RunResumed())

    def _check_cancelled(self):
        if self._cancel.is_set():
            raise RunCancelledError()

    def _sleep(self, seconds: float):
        if seconds <= 0:
            return
        if self._sleep_func is not None:
            self._sleep_func(seconds)
        else:
            self._cancel.wait(seconds)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _emit(self, event: Event):
        self.events.send(event)
