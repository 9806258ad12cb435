#!/usr/bin/env python3
"""Events posted by background tasks to the consumer.

Channels are unbounded multi-producer/single-consumer queues; producers are
already throttled by the remote rate limit so no backpressure is applied.
"""

import queue
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from canvas.models import CanvasSnapshot, Profile, UserQuota
from canvas.tokens import CredentialSink


@dataclass(frozen=True)
class Event:
    """Base class for every event."""
    ts: float = field(default_factory=time.time, compare=False, kw_only=True)


# ----- placement run -----

@dataclass(frozen=True)
class JobStarted(Event):
    job_id: str
    name: str
    position: int  # 1-based within this run
    total_jobs: int


@dataclass(frozen=True)
class JobProgress(Event):
    job_id: str
    name: str
    placed: int
    total: int
    position: Tuple[int, int]
    cooldown_seconds: Optional[int] = None


@dataclass(frozen=True)
class JobCompleted(Event):
    job_id: str
    name: str
    placed: int
    total: int


@dataclass(frozen=True)
class JobFailed(Event):
    job_id: str
    name: str
    message: str


@dataclass(frozen=True)
class JobSkipped(Event):
    job_id: str
    name: str
    reason: str


@dataclass(frozen=True)
class RunCompleted(Event):
    jobs_processed: int
    pixels_placed: int
    duration_seconds: float


@dataclass(frozen=True)
class RunCancelled(Event):
    jobs_processed: int
    pixels_placed: int


@dataclass(frozen=True)
class RunFailed(Event):
    message: str
    jobs_processed: int
    pixels_placed: int
    unauthorized: bool = False


@dataclass(frozen=True)
class RunPaused(Event):
    jobs_processed: int
    pixels_placed: int


@dataclass(frozen=True)
class RunResumed(Event):
    pass


@dataclass(frozen=True)
class QuotaUpdated(Event):
    quota: UserQuota


@dataclass(frozen=True)
class CredentialsChanged(Event):
    access_token: Optional[str]
    refresh_token: Optional[str]


# ----- validator -----

@dataclass(frozen=True)
class ItemValidated(Event):
    job_id: str
    name: str
    correct: int
    total: int
    needs_requeue: bool


@dataclass(frozen=True)
class CycleSummary(Event):
    items_checked: int
    items_requeued: int
    next_check_seconds: int


@dataclass(frozen=True)
class ValidationError(Event):
    message: str


# ----- one-shot refreshes -----

@dataclass(frozen=True)
class CanvasFetched(Event):
    canvas: CanvasSnapshot


@dataclass(frozen=True)
class ProfileFetched(Event):
    profile: Profile


@dataclass(frozen=True)
class FetchFailed(Event):
    what: str
    message: str
    unauthorized: bool = False


RUN_TERMINAL_EVENTS = (RunCompleted, RunCancelled, RunFailed)


class EventChannel:
    """Unbounded event queue wrapper."""

    def __init__(self):
        """Initialize event channel."""
        self._queue = queue.Queue()

    def send(self, event: Event) -> None:
        """Post an event (never blocks).

        Args:
            event: Event to post
        """
        if not isinstance(event, Event):
            raise TypeError(f"send() expects an Event, got {type(event).__name__}")
        self._queue.put(event)

    def drain(self) -> List[Event]:
        """Everything queued right now, without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class ChannelCredentialSink(CredentialSink):
    """Credential sink for background tasks.

    Persists through `persist` (if given) and then reports the change to
    the consumer as a CredentialsChanged event.
    """

    def __init__(self, channel: EventChannel, persist: Optional[CredentialSink] = None):
        self.channel = channel
        self.persist = persist

    def on_credentials_changed(self, access_token, refresh_token) -> None:
        if self.persist is not None:
            self.persist.on_credentials_changed(access_token, refresh_token)
        self.channel.send(CredentialsChanged(access_token=access_token, refresh_token=refresh_token))
