#!/usr/bin/env python3
"""File-backed queue storage."""

import json
import logging
from pathlib import Path
from typing import Iterable, List

from .models import Job, JobStatus

logger = logging.getLogger(__name__)


class QueueStore:
    """Persists the placement queue as one JSON document."""

    def __init__(self, queue_path: str):
        """Initialize queue store.

        Args:
            queue_path: JSON file for the queue (e.g., ./queue.json)
        """
        self.queue_path = Path(queue_path)

    def save(self, jobs: Iterable[Job]) -> None:
        """Save all jobs to disk through a temp file.

        Args:
            jobs: Jobs in queue order
        """
        self.queue_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.queue_path.with_suffix(self.queue_path.suffix + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump([job.to_dict() for job in jobs], f, indent=2)
        tmp_path.replace(self.queue_path)

    def load(self) -> List[Job]:
        """Load jobs from disk.

        Jobs saved while in progress come back as Pending.

        Returns:
            Jobs, empty when no queue file exists
        """
        if not self.queue_path.exists():
            return []

        with open(self.queue_path, 'r') as f:
            data = json.load(f)

        jobs = []
        for entry in data:
            job = Job.from_dict(entry)
            if job.status == JobStatus.IN_PROGRESS:
                job.status = JobStatus.PENDING
            jobs.append(job)

        logger.info("Loaded %d jobs from %s", len(jobs), self.queue_path)
        return jobs

    def exists(self) -> bool:
        """Check if a saved queue exists."""
        return self.queue_path.exists()
