#!/usr/bin/env python3
"""Meaningful pixel selection."""

from typing import Iterable, List, Set, Tuple

from canvas.models import CanvasSnapshot, ColorEntry

from .models import Pattern, PatternPixel

BACKGROUND_NAME_MARKERS = ("transparent", "background", "empty", "alpha")


def is_background_color(color: ColorEntry) -> bool:
    """Check whether a palette colour stands for "nothing to paint"."""
    name = color.name.lower()
    return name == "none" or any(marker in name for marker in BACKGROUND_NAME_MARKERS)


def background_color_ids(colors: Iterable[ColorEntry]) -> Set[int]:
    """Palette ids classified as background/transparent."""
    return {c.id for c in colors if is_background_color(c)}


def meaningful_pixels(pattern: Pattern, colors: Iterable[ColorEntry]) -> List[PatternPixel]:
    """Pattern pixels worth placing, in pattern order.

    Pixels in a background colour are dropped; among the rest, duplicates
    at the same (x, y) keep the first occurrence.

    Args:
        pattern: Pattern to filter
        colors: Current palette

    Returns:
        Filtered pixel list
    """
    skip_ids = background_color_ids(colors)
    seen: Set[Tuple[int, int]] = set()
    result = []

    for pixel in pattern.pixels:
        position = (pixel.x, pixel.y)
        if position in seen or pixel.color_id in skip_ids:
            continue
        seen.add(position)
        result.append(pixel)

    return result


def count_correct(pattern: Pattern, pixels: Iterable[PatternPixel], canvas: CanvasSnapshot) -> int:
    """Number of pixels already showing their colour on the canvas."""
    return sum(
        1 for pixel in pixels
        if canvas.matches(*pattern.absolute(pixel), pixel.color_id)
    )


def pixels_to_place(pattern: Pattern, pixels: Iterable[PatternPixel], canvas: CanvasSnapshot) -> List[PatternPixel]:
    """Pixels whose board position does not yet show their colour."""
    return [
        pixel for pixel in pixels
        if not canvas.matches(*pattern.absolute(pixel), pixel.color_id)
    ]
