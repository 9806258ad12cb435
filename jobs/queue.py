#!/usr/bin/env python3
"""Priority-ordered placement queue."""

import copy
from typing import Iterable, Iterator, List, Optional

from canvas.models import ColorEntry

from .models import DEFAULT_PRIORITY, MAX_PRIORITY, MIN_PRIORITY, Job, JobStatus, Pattern
from .pixels import meaningful_pixels


def sort_key(job: Job):
    """Priority ascending, Pending first, then oldest first."""
    return (job.priority, job.status != JobStatus.PENDING, job.added_at)


class JobQueue:
    """Ordered list of placement jobs.

    Not thread-safe: owned by the consumer, background tasks get snapshots.
    """

    def __init__(self, jobs: Optional[Iterable[Job]] = None):
        """Initialize job queue.

        Args:
            jobs: Initial jobs (e.g. loaded from disk)
        """
        self._jobs: List[Job] = list(jobs or [])
        self.sort()

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[Job]:
        return iter(list(self._jobs))

    def enqueue(self, pattern: Pattern, colors: Iterable[ColorEntry], priority: int = DEFAULT_PRIORITY) -> Job:
        """Create a job for an anchored pattern.

        A pattern with no meaningful pixels is added already Skipped.

        Args:
            pattern: Anchored pattern
            colors: Current palette, used for the background heuristic
            priority: 1 (highest) to 5 (lowest)

        Returns:
            The new job
        """
        _check_priority(priority)
        total = len(meaningful_pixels(pattern, colors))
        job = Job(
            pattern=pattern,
            priority=priority,
            status=JobStatus.PENDING if total else JobStatus.SKIPPED,
            pixels_total=total,
        )
        self._jobs.append(job)
        self.sort()
        return job

    def sort(self) -> None:
        """Re-sort in place (stable)."""
        self._jobs.sort(key=sort_key)

    def get(self, job_id: str) -> Optional[Job]:
        """Find a job by id."""
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    def index_of(self, job_id: str) -> int:
        """Position of a job, -1 if absent."""
        for i, job in enumerate(self._jobs):
            if job.id == job_id:
                return i
        return -1

    def move_up(self, job_id: str) -> bool:
        """Swap a job with its predecessor.

        Only jobs sharing a sort group (priority and pending-ness) can be
        swapped; their `added_at` values are exchanged so the new order
        survives later re-sorts.

        Returns:
            True if the job moved
        """
        i = self.index_of(job_id)
        if i <= 0:
            return False
        return self._swap(i - 1, i)

    def move_down(self, job_id: str) -> bool:
        """Swap a job with its successor (see `move_up`).

        Returns:
            True if the job moved
        """
        i = self.index_of(job_id)
        if i < 0 or i >= len(self._jobs) - 1:
            return False
        return self._swap(i, i + 1)

    def _swap(self, i: int, j: int) -> bool:
        first, second = self._jobs[i], self._jobs[j]
        if sort_key(first)[:2] != sort_key(second)[:2]:
            return False
        first.added_at, second.added_at = second.added_at, first.added_at
        self._jobs[i], self._jobs[j] = second, first
        return True

    def set_priority(self, job_id: str, priority: int) -> Job:
        """Change priority and re-sort.

        Raises:
            ValueError: If priority is outside 1..5
            KeyError: If the job is unknown
        """
        _check_priority(priority)
        job = self._require(job_id)
        job.priority = priority
        self.sort()
        return job

    def set_status(self, job_id: str, status: JobStatus) -> Optional[Job]:
        """Change status and re-sort; unknown ids are ignored."""
        job = self.get(job_id)
        if job is None:
            return None
        job.status = status
        if status == JobStatus.PENDING:
            job.error = None
        self.sort()
        return job

    def requeue(self, job_id: str) -> Optional[Job]:
        """Reset a job to Pending with zero progress."""
        job = self.get(job_id)
        if job is None:
            return None
        job.pixels_placed = 0
        return self.set_status(job_id, JobStatus.PENDING)

    def toggle_paused(self, job_id: str) -> Job:
        """Flip the per-job pause flag.

        Raises:
            KeyError: If the job is unknown
        """
        job = self._require(job_id)
        job.paused = not job.paused
        return job

    def remove(self, job_id: str) -> Optional[Job]:
        """Remove a job, returning it if found."""
        i = self.index_of(job_id)
        if i < 0:
            return None
        return self._jobs.pop(i)

    def clear(self) -> None:
        """Remove every job."""
        self._jobs.clear()

    def pending(self) -> List[Job]:
        """Pending, unpaused jobs in queue order."""
        return [j for j in self._jobs if j.status == JobStatus.PENDING and not j.paused]

    def with_status(self, status: JobStatus) -> List[Job]:
        return [j for j in self._jobs if j.status == status]

    def snapshot(self, jobs: Optional[Iterable[Job]] = None) -> List[Job]:
        """Deep copies for handing to a background task."""
        return copy.deepcopy(list(self._jobs if jobs is None else jobs))

    def _require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job


def _check_priority(priority: int) -> None:
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}")
