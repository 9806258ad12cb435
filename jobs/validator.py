#!/usr/bin/env python3
"""Periodic drift validator."""

import logging
import queue
import threading
from typing import Callable, List, Optional

from canvas.client import CanvasClient
from canvas.errors import CanvasError
from canvas.models import CanvasSnapshot

from .events import CycleSummary, EventChannel, ItemValidated, ValidationError
from .models import Job, JobStatus
from .pixels import count_correct, meaningful_pixels

logger = logging.getLogger(__name__)

VALIDATION_INTERVAL_SECONDS = 300

# Completed jobs below this share of correct pixels are re-queued
CORRECTNESS_THRESHOLD = 0.9

_STOP = "stop"
_SYNC = "sync"


class DriftValidator:
    """Re-checks completed jobs against the live canvas on a fixed interval.

    The validator never touches the consumer's queue. It keeps its own copy
    of the jobs, refreshed through `sync_jobs()`, and reports drift as
    ItemValidated events for the consumer to apply.
    """

    def __init__(
        self,
        client: CanvasClient,
        jobs: List[Job],
        events: EventChannel,
        interval: int = VALIDATION_INTERVAL_SECONDS,
        threshold: float = CORRECTNESS_THRESHOLD,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize drift validator.

        Args:
            client: Canvas client owned by this validator
            jobs: Snapshot of the queue
            events: Channel to the consumer
            interval: Seconds between cycles
            threshold: Minimum correct/total ratio for a job to count as intact
            sleep: Sleep function (defaults to an interruptible wait)
        """
        self.client = client
        self.jobs = jobs
        self.events = events
        self.interval = interval
        self.threshold = threshold
        self._sleep_func = sleep
        self._control: "queue.Queue" = queue.Queue()
        self._wake = threading.Event()
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.cycles = 0

    def start(self):
        """Start validator thread."""
        if self.running:
            return

        self.running = True
        self.thread = threading.Thread(target=self.run, daemon=True, name="drift-validator")
        self.thread.start()
        logger.info("Validator started (interval %ds)", self.interval)

    def stop(self):
        """Ask the loop to exit; takes effect before the next cycle."""
        self._control.put((_STOP, None))
        self._wake.set()

    def join(self, timeout: Optional[float] = None):
        if self.thread:
            self.thread.join(timeout=timeout)

    def sync_jobs(self, jobs: List[Job]):
        """Replace the validator's copy of the queue.

        Args:
            jobs: Fresh snapshot from the consumer
        """
        self._control.put((_SYNC, jobs))

    def run(self):
        """Loop until stopped: one cycle, then wait for the interval."""
        self.running = True
        try:
            while True:
                if self._drain_control():
                    break
                self.run_cycle()
                self._sleep(self.interval)
                if self._drain_control():
                    break
        finally:
            self.running = False
            logger.info("Validator stopped after %d cycles", self.cycles)

    def run_cycle(self) -> Optional[CycleSummary]:
        """Validate every completed job once.

        Returns:
            The posted summary, None if the canvas could not be fetched
        """
        self.cycles += 1

        try:
            canvas = self.client.get_canvas()
        except CanvasError as e:
            logger.warning("Validation cycle could not fetch canvas: %s", e)
            self.events.send(ValidationError(message=f"Failed to fetch canvas: {e}"))
            return None

        checked = 0
        requeued = 0
        for job in self.jobs:
            if job.status != JobStatus.COMPLETE:
                continue
            checked += 1
            if self._validate_job(job, canvas):
                requeued += 1

        summary = CycleSummary(
            items_checked=checked,
            items_requeued=requeued,
            next_check_seconds=self.interval
        )
        logger.info("Validation cycle %d: %d checked, %d requeued", self.cycles, checked, requeued)
        self.events.send(summary)
        return summary

    def _validate_job(self, job: Job, canvas: CanvasSnapshot) -> bool:
        """Check one completed job.

        Returns:
            True if the job drifted and was re-queued
        """
        pixels = meaningful_pixels(job.pattern, canvas.colors)
        total = len(pixels)
        correct = count_correct(job.pattern, pixels, canvas)

        # an empty pattern has nothing that can drift
        needs_requeue = total > 0 and correct / total < self.threshold

        if needs_requeue:
            logger.warning(
                "Job %s '%s' drifted: %d/%d pixels correct, re-queuing",
                job.id, job.name, correct, total
            )
            job.status = JobStatus.PENDING
            job.pixels_placed = 0
            job.error = None

        self.events.send(ItemValidated(
            job_id=job.id,
            name=job.name,
            correct=correct,
            total=total,
            needs_requeue=needs_requeue
        ))
        return needs_requeue

    def _drain_control(self) -> bool:
        """Apply queued control messages.

        Returns:
            True if a stop was requested
        """
        self._wake.clear()
        stop = False
        while True:
            try:
                kind, payload = self._control.get_nowait()
            except queue.Empty:
                break
            if kind == _STOP:
                stop = True
            elif kind == _SYNC:
                self.jobs = payload
        return stop

    def _sleep(self, seconds: float):
        if self._sleep_func is not None:
            self._sleep_func(seconds)
        else:
            self._wake.wait(seconds)
