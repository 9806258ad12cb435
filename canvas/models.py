#!/usr/bin/env python3
"""Canvas API data models."""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .errors import ProtocolError


def _pick(d: dict, *keys, default=None):
    """Return the first present key (the API spells some fields two ways)."""
    for key in keys:
        if key in d:
            return d[key]
    return default


@dataclass(frozen=True)
class ColorEntry:
    """Palette entry."""
    id: int
    name: str
    r: int
    g: int
    b: int

    @classmethod
    def from_dict(cls, d: dict) -> "ColorEntry":
        return cls(
            id=int(d['id']),
            name=str(d.get('name', '')),
            r=int(_pick(d, 'r', 'red', default=0)),
            g=int(_pick(d, 'g', 'green', default=0)),
            b=int(_pick(d, 'b', 'blue', default=0)),
        )


@dataclass(frozen=True)
class PixelCell:
    """One occupied board cell."""
    color_id: int
    placed_by: str = ""
    placed_at_ms: int = 0

    @classmethod
    def from_dict(cls, d: dict) -> "PixelCell":
        return cls(
            color_id=int(_pick(d, 'colorId', 'c')),
            placed_by=str(_pick(d, 'placedBy', 'u', default='') or ''),
            placed_at_ms=int(_pick(d, 'placedAtMs', 't', default=0) or 0),
        )


@dataclass
class CanvasSnapshot:
    """Palette plus board, indexed board[x][y]."""
    colors: List[ColorEntry] = field(default_factory=list)
    board: List[List[Optional[PixelCell]]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> "CanvasSnapshot":
        colors = [ColorEntry.from_dict(c) for c in d['colors']]
        board = [
            [PixelCell.from_dict(cell) if cell is not None else None for cell in column]
            for column in d['board']
        ]
        return cls(colors=colors, board=board)

    def cell(self, x: int, y: int) -> Optional[PixelCell]:
        """Get cell at absolute coordinates, None when empty or out of range."""
        if x < 0 or y < 0 or x >= len(self.board):
            return None
        column = self.board[x]
        if y >= len(column):
            return None
        return column[y]

    def matches(self, x: int, y: int, color_id: int) -> bool:
        """Check whether the board already shows `color_id` at (x, y)."""
        current = self.cell(x, y)
        return current is not None and current.color_id == color_id

    def set_color(self, x: int, y: int, color_id: int, placed_by: str = "") -> None:
        """Record a placement locally; ignored outside the board."""
        if 0 <= x < len(self.board) and 0 <= y < len(self.board[x]):
            self.board[x][y] = PixelCell(color_id=color_id, placed_by=placed_by)

    @property
    def width(self) -> int:
        return len(self.board)

    @property
    def height(self) -> int:
        return len(self.board[0]) if self.board else 0


@dataclass
class UserQuota:
    """Server-reported placement allowance.

    `pixel_buffer` is the capacity, `pixel_timer` the base cooldown in ms
    and `timers` the future expiry timestamps (ms epoch).
    """
    pixel_buffer: int = 0
    pixel_timer: int = 0
    timers: List[int] = field(default_factory=list)

    @property
    def available(self) -> int:
        return max(0, self.pixel_buffer - len(self.timers))

    @classmethod
    def from_dict(cls, d: dict) -> "UserQuota":
        return cls(
            pixel_buffer=int(d.get('pixel_buffer') or 0),
            pixel_timer=int(d.get('pixel_timer') or 0),
            timers=[int(t) for t in (d.get('timers') or [])],
        )

    def with_timers(self, timers: Optional[List[int]]) -> "UserQuota":
        """Copy with replaced timers (None keeps the current ones)."""
        if timers is None:
            return UserQuota(self.pixel_buffer, self.pixel_timer, list(self.timers))
        return UserQuota(self.pixel_buffer, self.pixel_timer, [int(t) for t in timers])

    def after_rate_limit(self, timers: Optional[List[int]], interval: Optional[int]) -> "UserQuota":
        """Quota implied by a rate-limit rejection: buffer is exhausted."""
        return UserQuota(
            pixel_buffer=0,
            pixel_timer=int(interval) if interval is not None else self.pixel_timer,
            timers=[int(t) for t in timers] if timers is not None else list(self.timers),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Profile:
    """Account profile returned by GET /api/profile."""
    quota: UserQuota
    id: Optional[int] = None
    username: Optional[str] = None
    is_admin: bool = False
    is_banned: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> "Profile":
        info = d.get('userInfos', d)
        if 'pixel_buffer' not in info:
            raise KeyError('pixel_buffer')
        known = {'timers', 'pixel_buffer', 'pixel_timer', 'id', 'username',
                 'isAdmin', 'isBanned', 'soft_is_admin', 'soft_is_banned'}
        return cls(
            quota=UserQuota.from_dict(info),
            id=info.get('id'),
            username=info.get('username'),
            is_admin=bool(_pick(info, 'isAdmin', 'soft_is_admin', default=False)),
            is_banned=bool(_pick(info, 'isBanned', 'soft_is_banned', default=False)),
            extra={k: v for k, v in info.items() if k not in known},
        )


@dataclass
class PlaceResult:
    """Successful POST /api/set response."""
    x: int
    y: int
    color_id: int
    timers: List[int]
    quota: Optional[UserQuota] = None

    @classmethod
    def from_dict(cls, d: dict) -> "PlaceResult":
        update = d['update']
        timers = [int(t) for t in (d.get('timers') or [])]
        info = _pick(d, 'userInfos', 'userInfo')
        quota = None
        if info is not None:
            quota = UserQuota.from_dict(info)
            # top-level timers are the freshest view
            if 'timers' in d:
                quota = quota.with_timers(timers)
        return cls(
            x=int(update['x']),
            y=int(update['y']),
            color_id=int(_pick(update, 'colorId', 'c')),
            timers=timers,
            quota=quota,
        )


@dataclass
class ApiErrorBody:
    """Structured failure body `{message, timers?, interval?}`."""
    message: str
    timers: Optional[List[int]] = None
    interval: Optional[int] = None

    @classmethod
    def from_dict(cls, d: dict) -> "ApiErrorBody":
        message = d['message']
        if not isinstance(message, str):
            raise TypeError("message must be a string")
        timers = d.get('timers')
        interval = d.get('interval')
        return cls(
            message=message,
            timers=[int(t) for t in timers] if timers is not None else None,
            interval=int(interval) if interval is not None else None,
        )


def parse_model(model, data: Any, what: str):
    """Build `model` from decoded JSON, raising ProtocolError on mismatch."""
    try:
        if not isinstance(data, dict):
            raise TypeError(f"expected object, got {type(data).__name__}")
        return model.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Failed to parse {what} response: {e!r}") from e
