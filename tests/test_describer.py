import pytest

from canvasrefine.core.models import Annotation, ImageSize, NormalizedRegion, ShapeKind
from canvasrefine.prompting.prompt_builder import region_feedback_lines
from canvasrefine.spatial.describer import (
    describe_annotation,
    describe_region,
    finalize_annotation,
    grid_cell,
)


class TestGridCell:

    @pytest.mark.parametrize("region, expected", [
        (NormalizedRegion(0.0, 0.0, 0.2, 0.2), "top-left"),
        (NormalizedRegion(0.4, 0.0, 0.6, 0.2), "top-center"),
        (NormalizedRegion(0.8, 0.0, 1.0, 0.2), "top-right"),
        (NormalizedRegion(0.0, 0.4, 0.2, 0.6), "middle-left"),
        (NormalizedRegion(0.4, 0.4, 0.6, 0.6), "center"),
        (NormalizedRegion(0.8, 0.4, 1.0, 0.6), "middle-right"),
        (NormalizedRegion(0.0, 0.8, 0.2, 1.0), "bottom-left"),
        (NormalizedRegion(0.4, 0.8, 0.6, 1.0), "bottom-center"),
        (NormalizedRegion(0.7, 0.72, 0.95, 0.95), "bottom-right"),
    ])
    def test_cell_from_centroid(self, region, expected):
        assert grid_cell(region) == expected

    def test_boundary_centroid_defaults_to_center(self):
        assert grid_cell(NormalizedRegion(0.33, 0.33, 0.33, 0.33)) == "center"
        assert grid_cell(NormalizedRegion(0.66, 0.66, 0.66, 0.66)) == "center"


class TestDescribeRegion:

    def test_bottom_right_rectangle(self):
        phrase = describe_region(NormalizedRegion(0.7, 0.72, 0.95, 0.95))
        assert phrase == (
            "in the bottom-right of the image (a rectangle from 70% left, 72% top "
            "to 95% right, 95% bottom, with dimensions 25% wide by 23% tall)"
        )

    def test_freehand_descriptor(self):
        phrase = describe_region(NormalizedRegion(0.1, 0.1, 0.2, 0.2), ShapeKind.FREEHAND)
        assert "(a freehand drawing within a region from 10% left" in phrase

    def test_shape_descriptor(self):
        phrase = describe_region(NormalizedRegion(0.1, 0.1, 0.2, 0.2), ShapeKind.SHAPE)
        assert "(a shape within a region from" in phrase

    def test_pixel_dimensions_with_size(self):
        phrase = describe_region(NormalizedRegion(0.0, 0.0, 0.25, 0.5), size=ImageSize(1024, 768))
        assert "25% wide by 50% tall, about 256x384 px)" in phrase

    def test_half_percent_rounds_up(self):
        phrase = describe_region(NormalizedRegion(0.125, 0.0, 0.5, 0.5))
        assert "from 13% left" in phrase

    def test_deterministic(self):
        region = NormalizedRegion(0.12, 0.34, 0.56, 0.78)
        assert describe_region(region) == describe_region(region)


class TestAnnotationCache:

    def test_phrase_cached_until_region_changes(self):
        annotation = Annotation("a", ShapeKind.RECTANGLE, [700, 720, 950, 950], "make it blue")
        finalize_annotation(annotation, 1000, 1000)
        first = annotation.spatial_phrase
        assert "bottom-right" in first

        annotation.spatial_phrase = "cached"
        assert describe_annotation(annotation) == "cached"

        annotation.move_to([0, 0, 100, 100])
        assert annotation.spatial_phrase is None
        with pytest.raises(ValueError):
            region_feedback_lines([annotation])

        finalize_annotation(annotation, 1000, 1000)
        assert "top-left" in annotation.spatial_phrase

    def test_size_change_rebuilds_phrase(self):
        annotation = Annotation("a", ShapeKind.RECTANGLE, [0, 0, 500, 500])
        finalize_annotation(annotation, 1000, 1000)
        without_size = annotation.spatial_phrase
        describe_annotation(annotation, ImageSize(512, 512))
        assert annotation.spatial_phrase != without_size
        assert "about 256x256 px" in annotation.spatial_phrase

    def test_unnormalized_annotation_rejected(self):
        with pytest.raises(ValueError):
            describe_annotation(Annotation("a", ShapeKind.RECTANGLE, [0, 0, 1, 1]))
