"""
Unit tests for the edge and corner primitives.

Tests:
- Luma conversion
- Sobel and Laplacian responses and their zero borders
- Otsu threshold on bimodal and constant fields
- Harris corners on a checkerboard
"""

import pytest
import numpy as np
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from edge_primitives import (
    corner_points,
    harris_response,
    intensity_histogram,
    laplacian,
    otsu_threshold,
    sobel_magnitude,
    to_grayscale,
)
from fixtures.synthetic_images import bimodal_field, checkerboard_image
from wound_types import RasterImage


class TestGrayscale:
    """Tests for luma conversion."""

    def test_primary_colors_use_luma_weights(self):
        pixels = np.zeros((1, 3, 3), dtype=np.uint8)
        pixels[0, 0] = (255, 0, 0)
        pixels[0, 1] = (0, 255, 0)
        pixels[0, 2] = (0, 0, 255)

        gray = to_grayscale(RasterImage.from_array(pixels))

        assert gray.shape == (1, 3)
        assert gray[0, 0] == pytest.approx(0.299 * 255)
        assert gray[0, 1] == pytest.approx(0.587 * 255)
        assert gray[0, 2] == pytest.approx(0.114 * 255)

    def test_gray_input_is_preserved(self):
        image = RasterImage.from_array(np.full((4, 5), 90, dtype=np.uint8))
        assert np.allclose(to_grayscale(image), 90.0)


class TestSobelAndLaplacian:
    """Tests for gradient and Laplacian fields."""

    def test_vertical_step_responds_only_at_the_step(self):
        field = np.zeros((10, 10))
        field[:, 5:] = 100.0

        edges = sobel_magnitude(field)

        assert edges[5, 4] == pytest.approx(400.0)
        assert edges[5, 5] == pytest.approx(400.0)
        assert edges[5, 2] == 0.0
        assert edges[5, 8] == 0.0

    def test_borders_are_zero(self):
        field = np.random.default_rng(1).random((8, 8)) * 255

        for response in (sobel_magnitude(field), laplacian(field)):
            assert np.all(response[0, :] == 0)
            assert np.all(response[-1, :] == 0)
            assert np.all(response[:, 0] == 0)
            assert np.all(response[:, -1] == 0)

    def test_constant_field_has_no_laplacian_response(self):
        assert not np.any(laplacian(np.full((6, 6), 42.0)))

    def test_single_bright_pixel_laplacian(self):
        field = np.zeros((5, 5))
        field[2, 2] = 10.0

        response = laplacian(field)

        assert response[2, 2] == -40.0
        assert response[1, 2] == 10.0
        assert response[2, 1] == 10.0

    def test_read_only_input_is_left_untouched(self):
        field = np.random.default_rng(2).random((6, 6)) * 255
        original = field.copy()
        field.setflags(write=False)

        sobel_magnitude(field)
        laplacian(field)

        assert np.array_equal(field, original)

    def test_laplacian_matches_four_neighbour_kernel(self):
        field = np.random.default_rng(3).random((7, 9)) * 255

        expected = (
            field[:-2, 1:-1] + field[2:, 1:-1] + field[1:-1, :-2] + field[1:-1, 2:]
            - 4 * field[1:-1, 1:-1]
        )

        assert np.allclose(laplacian(field)[1:-1, 1:-1], expected)

    def test_tiny_fields_return_zeros(self):
        assert not np.any(sobel_magnitude(np.ones((2, 2))))
        assert not np.any(laplacian(np.ones((2, 7))))


class TestOtsuThreshold:
    """Tests for the Otsu adaptive threshold."""

    def test_bimodal_threshold_falls_between_peaks(self):
        threshold = otsu_threshold(bimodal_field(low=50.0, high=200.0))
        assert 50 < threshold < 200

    def test_constant_field_returns_zero(self):
        assert otsu_threshold(np.full((10, 10), 128.0)) == 0

    def test_two_level_field_splits_at_lower_level(self):
        field = np.zeros((4, 4))
        field[:, 2:] = 255.0

        # Every split between the two levels is equally good; the first wins
        assert otsu_threshold(field) == 0

    def test_histogram_clamps_out_of_range_values(self):
        histogram = intensity_histogram(np.array([[-5.0, 0.4, 254.9, 900.0]]))

        assert histogram.sum() == 4
        assert histogram[0] == 2
        assert histogram[254] == 1
        assert histogram[255] == 1


class TestHarrisCorners:
    """Tests for Harris corner detection."""

    def test_checkerboard_corners(self):
        field = checkerboard_image(size=200, cell=40).astype(np.float64)

        points = corner_points(harris_response(field))

        # Each of the 16 interior corners yields its 2x2 block of tied maxima
        assert len(points) == 64
        for point in points:
            assert point.x % 40 in (0, 39)
            assert point.y % 40 in (0, 39)

    def test_points_sorted_by_x_then_y(self):
        field = checkerboard_image(size=200, cell=40).astype(np.float64)

        points = corner_points(harris_response(field))

        keys = [(p.x, p.y) for p in points]
        assert keys == sorted(keys)

    def test_flat_field_has_no_corners(self):
        assert corner_points(harris_response(np.full((20, 20), 10.0))) == []

    def test_small_field_returns_zeros(self):
        assert not np.any(harris_response(np.ones((4, 4))))
