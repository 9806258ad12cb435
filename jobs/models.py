#!/usr/bin/env python3
"""Job data models and enums."""

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional, Tuple

DEFAULT_PRIORITY = 3
MIN_PRIORITY = 1
MAX_PRIORITY = 5


class JobStatus(str, Enum):
    """Job status states."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class PatternPixel:
    """One pattern pixel, relative to the pattern anchor."""
    x: int
    y: int
    color_id: int


@dataclass
class Pattern:
    """Pixel art anchored at (board_x, board_y)."""
    name: str
    pixels: List[PatternPixel] = field(default_factory=list)
    board_x: int = 0
    board_y: int = 0

    def absolute(self, pixel: PatternPixel) -> Tuple[int, int]:
        """Board coordinates of a pattern pixel."""
        return self.board_x + pixel.x, self.board_y + pixel.y

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "name": self.name,
            "board_x": self.board_x,
            "board_y": self.board_y,
            "pixels": [{"x": p.x, "y": p.y, "color": p.color_id} for p in self.pixels],
        }

    @classmethod
    def from_dict(cls, d: dict):
        """Create from dictionary.

        Pixels may spell the colour as `color`, `color_id` or `colorId`.
        """
        pixels = []
        for p in d.get('pixels', []):
            color = p.get('color', p.get('color_id', p.get('colorId')))
            if color is None:
                raise KeyError('color')
            pixels.append(PatternPixel(x=int(p['x']), y=int(p['y']), color_id=int(color)))
        return cls(
            name=str(d['name']),
            pixels=pixels,
            board_x=int(d.get('board_x', 0)),
            board_y=int(d.get('board_y', 0)),
        )


@dataclass
class Job:
    """Job data model."""
    pattern: Pattern
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    priority: int = DEFAULT_PRIORITY  # 1 highest, 5 lowest
    status: JobStatus = JobStatus.PENDING

    # Progress tracking
    pixels_placed: int = 0
    pixels_total: int = 0

    added_at: float = field(default_factory=time.time)

    # Skipped by the worker while set, status untouched
    paused: bool = False

    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.pattern.name

    def set_progress(self, placed: int, total: Optional[int] = None) -> None:
        """Update counters keeping pixels_placed <= pixels_total."""
        if total is not None:
            self.pixels_total = max(0, total)
        self.pixels_placed = max(0, min(placed, self.pixels_total))

    def to_dict(self):
        """Convert to dictionary."""
        d = asdict(self)
        d['status'] = self.status.value
        d['pattern'] = self.pattern.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: dict):
        """Create from dictionary."""
        d = d.copy()
        if 'status' in d and isinstance(d['status'], str):
            d['status'] = JobStatus(d['status'])
        if 'pattern' in d and isinstance(d['pattern'], dict):
            d['pattern'] = Pattern.from_dict(d['pattern'])
        return cls(**d)
