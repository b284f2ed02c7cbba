"""Region-to-phrase rendering on a 3x3 grid.

Processing flow:
    1. Place the region centroid on a 3x3 grid (boundaries at 0.33 and 0.66).
    2. Render bounds and dimensions as whole percentages.
    3. Wrap both in a fixed sentence template chosen by shape kind.

Determinism:
    Output depends only on the region, shape kind and optional size token.
    Percentages round half up so equal inputs always produce equal text.

Caching:
    `describe_annotation` stores the phrase on the annotation together with the
    region and size it was built from, and rebuilds only when either changes.

Edge cases:
    - A centroid lying exactly on a grid boundary is placed in the middle
      band of that axis.
    - Zero-area regions render with `0%` dimensions.
"""

import logging
import math

from canvasrefine.core.models import Annotation, ImageSize, NormalizedRegion, ShapeKind
from canvasrefine.spatial.normalizer import normalize_annotation


logger = logging.getLogger(__name__)


LOWER_BOUNDARY = 0.33
UPPER_BOUNDARY = 0.66

_ROWS = ("top", "middle", "bottom")
_COLUMNS = ("left", "center", "right")

SHAPE_DESCRIPTORS = {
    ShapeKind.RECTANGLE: "a rectangle",
    ShapeKind.FREEHAND: "a freehand drawing within a region",
    ShapeKind.SHAPE: "a shape within a region",
}


def _band(value: float) -> int:
    if value < LOWER_BOUNDARY:
        return 0
    if value > UPPER_BOUNDARY:
        return 2
    return 1


def grid_cell(region: NormalizedRegion) -> str:
    """Return the grid cell name holding the region centroid.

    Names: `top-left`, `top-center`, `top-right`, `middle-left`, `center`,
    `middle-right`, `bottom-left`, `bottom-center`, `bottom-right`.
    """
    cx, cy = region.center
    row, column = _band(cy), _band(cx)
    if row == 1 and column == 1:
        return "center"
    return f"{_ROWS[row]}-{_COLUMNS[column]}"


def percent(value: float) -> int:
    """Whole-percent value, rounding halves up."""
    return int(math.floor(value * 100 + 0.5))


def describe_region(
    region: NormalizedRegion,
    shape_kind: ShapeKind = ShapeKind.RECTANGLE,
    size: ImageSize | None = None,
) -> str:
    """Render a region as a position phrase.

    Args:
        region: Normalized bounds.
        shape_kind: Drawing tool, selects the shape descriptor.
        size: Optional output size; adds approximate pixel dimensions.

    Returns:
        Phrase such as ``in the bottom-right of the image (a rectangle from
        70% left, 72% top to 95% right, 95% bottom, with dimensions 25% wide by
        23% tall)``.
    """
    descriptor = SHAPE_DESCRIPTORS[ShapeKind(shape_kind)]
    dimensions = f"{percent(region.width)}% wide by {percent(region.height)}% tall"
    if size is not None:
        pixel_width = int(math.floor(region.width * size.width + 0.5))
        pixel_height = int(math.floor(region.height * size.height + 0.5))
        dimensions += f", about {pixel_width}x{pixel_height} px"

    return (
        f"in the {grid_cell(region)} of the image ({descriptor} from "
        f"{percent(region.x1)}% left, {percent(region.y1)}% top to "
        f"{percent(region.x2)}% right, {percent(region.y2)}% bottom, "
        f"with dimensions {dimensions})"
    )


def describe_annotation(annotation: Annotation, size: ImageSize | None = None) -> str:
    """Return the cached phrase for an annotation, rebuilding it when stale.

    Raises:
        ValueError: When the annotation has not been normalized yet.
    """
    region = annotation.normalized_region
    if region is None:
        raise ValueError(f"Annotation {annotation.id} has no normalized region")

    source = (region, str(size) if size is not None else None)
    if annotation.spatial_phrase is not None and annotation.phrase_source == source:
        return annotation.spatial_phrase

    annotation.spatial_phrase = describe_region(region, annotation.shape_kind, size)
    annotation.phrase_source = source
    return annotation.spatial_phrase


def finalize_annotation(
    annotation: Annotation,
    width: float,
    height: float,
    size: ImageSize | None = None,
) -> Annotation:
    """Normalize and describe an annotation once its gesture has ended."""
    normalize_annotation(annotation, width, height)
    describe_annotation(annotation, size)
    logger.debug("Annotation %s finalized in %s", annotation.id, grid_cell(annotation.normalized_region))
    return annotation
