"""Coordinate normalization for drawn annotations.

Processing flow:
    1. Read raw canvas points from the annotation.
    2. Compute the axis-aligned bounding box (two corners for rectangles, all
       sampled points for freehand strokes and shapes).
    3. Divide by image width/height and clamp into [0, 1].

Edge cases:
    - Points outside the canvas are clamped, never rejected.
    - A click without drag yields a zero-area region.
    - A trailing odd coordinate in a flattened list is ignored.
    - An empty point list yields the zero region at the origin.

Failure handling:
    Non-positive image dimensions raise `ValueError`; that is a caller bug and
    not a user-drawable condition.
"""

import logging

from canvasrefine.core.models import Annotation, NormalizedRegion, ShapeKind


logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def _check_dimensions(width: float, height: float) -> None:
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")


def _bounds(xs: list[float], ys: list[float], width: float, height: float) -> NormalizedRegion:
    return NormalizedRegion(
        x1=_clamp(min(xs) / width),
        y1=_clamp(min(ys) / height),
        x2=_clamp(max(xs) / width),
        y2=_clamp(max(ys) / height),
    )


def normalize_rectangle(points: list[float], width: float, height: float) -> NormalizedRegion:
    """Normalize a rectangle given as two corner points `[x1, y1, x2, y2]`.

    Corner order does not matter; bounds are the per-axis min/max.
    """
    _check_dimensions(width, height)
    if len(points) < 4:
        return normalize_freehand(points, width, height)
    x1, y1, x2, y2 = points[:4]
    return _bounds([x1, x2], [y1, y2], width, height)


def normalize_freehand(points: list[float], width: float, height: float) -> NormalizedRegion:
    """Normalize a flattened `[x, y, x, y, ...]` point list to its bounding box."""
    _check_dimensions(width, height)
    pair_count = len(points) // 2
    if pair_count == 0:
        logger.debug("Empty point list normalized to zero region")
        return NormalizedRegion(0.0, 0.0, 0.0, 0.0)

    xs = [points[2 * i] for i in range(pair_count)]
    ys = [points[2 * i + 1] for i in range(pair_count)]
    return _bounds(xs, ys, width, height)


def normalize_annotation(annotation: Annotation, width: float, height: float) -> NormalizedRegion:
    """Normalize an annotation in place and return the region.

    Args:
        annotation: Annotation whose `raw_points` are canvas pixels.
        width: Displayed image width in the same units as the points.
        height: Displayed image height.

    Returns:
        The region, also stored on `annotation.normalized_region`.
    """
    if annotation.shape_kind == ShapeKind.RECTANGLE:
        region = normalize_rectangle(annotation.raw_points, width, height)
    else:
        region = normalize_freehand(annotation.raw_points, width, height)

    annotation.normalized_region = region
    return region
