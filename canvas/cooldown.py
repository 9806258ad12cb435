#!/usr/bin/env python3
"""Cooldown arithmetic over a UserQuota.

All functions are pure: `now_ms` is passed in, nothing is read from the clock.
"""

import math
from typing import Optional, Tuple

from .models import UserQuota

# Waits above this are re-polled in slices instead of one blocking sleep
LONG_COOLDOWN_SECONDS = 120

# Used when the quota has no timers (or no quota is known at all)
FALLBACK_WAIT_SECONDS = 5

SAFETY_MARGIN_SECONDS = 1


def wait_time(quota: Optional[UserQuota], now_ms: int) -> int:
    """Seconds to wait before the next placement may succeed.

    Args:
        quota: Latest quota, None when unknown
        now_ms: Current time in epoch milliseconds

    Returns:
        Whole seconds, 0 meaning "attempt now"
    """
    if quota is None:
        return FALLBACK_WAIT_SECONDS

    if quota.pixel_buffer > 0:
        return 0

    if not quota.timers:
        return max(FALLBACK_WAIT_SECONDS, math.ceil(quota.pixel_timer / 1000))

    upcoming = [t for t in quota.timers if t > now_ms]
    if not upcoming:
        # every timer already expired, the data is stale
        return 0

    return math.ceil((min(upcoming) - now_ms) / 1000) + SAFETY_MARGIN_SECONDS


def should_pause(quota: Optional[UserQuota], now_ms: int) -> Tuple[bool, int]:
    """Classify the current wait as long (> 2 minutes) or short.

    Returns:
        (is_long, wait_seconds)
    """
    wait = wait_time(quota, now_ms)
    return wait > LONG_COOLDOWN_SECONDS, wait


def format_duration(seconds: int) -> str:
    """Format seconds as `45s` or `2m05s`."""
    if seconds > 60:
        return f"{seconds // 60}m{seconds % 60:02d}s"
    return f"{seconds}s"


def describe_cooldown(quota: Optional[UserQuota], now_ms: int) -> str:
    """One-line cooldown status for display."""
    if quota is None:
        return "No user info available - refresh the profile"

    if quota.available > 0:
        return "Ready to place pixels"

    if not quota.timers:
        return f"No active timers - Cooldown: {quota.pixel_timer // 1000}s"

    active = [t for t in quota.timers if t > now_ms]
    if not active:
        return "Ready to place pixels"

    next_in = math.ceil((min(active) - now_ms) / 1000)
    return f"Next pixel: {format_duration(next_in)} ({len(active)} timers active)"
