# tests/conftest.py
import copy
import sys
from pathlib import Path

import pytest

# project root = one level above tests
ROOT = Path(__file__).resolve().parents[1]

# make `import canvas` / `import jobs` work without installing
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from canvas.models import CanvasSnapshot, ColorEntry, PixelCell, PlaceResult, UserQuota  # noqa: E402

PALETTE = [
    ColorEntry(id=0, name="Transparent", r=0, g=0, b=0),
    ColorEntry(id=1, name="White", r=255, g=255, b=255),
    ColorEntry(id=2, name="Red", r=255, g=0, b=0),
    ColorEntry(id=3, name="Blue", r=0, g=0, b=255),
]


def build_canvas(width=10, height=10, painted=None, colors=None):
    """Canvas with `painted` mapping (x, y) -> colour id, board[x][y]."""
    board = [[None] * height for _ in range(width)]
    for (x, y), color_id in (painted or {}).items():
        board[x][y] = PixelCell(color_id=color_id)
    return CanvasSnapshot(colors=list(colors or PALETTE), board=board)


class FakeCanvasClient:
    """
    Stand-in for CanvasClient:
    - set_pixel pops scripted outcomes (exception instances are raised,
      None means "success with one pixel available")
    - get_canvas / get_profile return (or raise) the configured values
    """

    def __init__(self, canvas=None, profile=None, place_results=None):
        self.canvas = canvas
        self.profile = profile
        self.place_results = list(place_results or [])
        self.attempts = []
        self.profile_calls = 0
        self.base_url = "http://canvas.test"
        self.access_token = "tok"
        self.refresh_token = "ref"
        self.timeout = 30

    def get_canvas(self):
        if isinstance(self.canvas, Exception):
            raise self.canvas
        return copy.deepcopy(self.canvas)

    def get_profile(self):
        self.profile_calls += 1
        if isinstance(self.profile, Exception):
            raise self.profile
        return self.profile

    def set_pixel(self, x, y, color_id):
        self.attempts.append((x, y, color_id))
        outcome = self.place_results.pop(0) if self.place_results else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            outcome = PlaceResult(
                x=x, y=y, color_id=color_id, timers=[],
                quota=UserQuota(pixel_buffer=1, pixel_timer=30000, timers=[]),
            )
        return outcome


@pytest.fixture
def make_canvas():
    return build_canvas


@pytest.fixture
def fake_client_cls():
    return FakeCanvasClient


@pytest.fixture
def sleeps():
    """Recorded sleep durations; pass `sleeps.append` as the sleep function."""
    return []
