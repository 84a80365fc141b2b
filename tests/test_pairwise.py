import math

import numpy as np
import pytest

from crfseg.errors import ConfigError, DimensionMismatchError
from crfseg.pairwise import (
    DIRECTIONS_4,
    DIRECTIONS_8,
    compute_contrast,
    edge_slices,
    load_pairwise_weight,
    save_pairwise_weight,
)


class TestContrastPotential:
    """Contrast-sensitive edge costs."""

    def test_constant_image(self):
        img = np.full((3, 4, 3), 0.5, dtype=np.float32)
        contrast = compute_contrast(img, connectivity=8, color_space="rgb")

        assert contrast.beta == 0.0
        assert contrast.directions == DIRECTIONS_8
        right, down, diag, anti = contrast.contrast
        # In-bounds edges cost 1 (1/sqrt(2) on diagonals), out-of-bounds 0
        np.testing.assert_allclose(right[:, :-1], 1.0)
        np.testing.assert_allclose(right[:, -1], 0.0)
        np.testing.assert_allclose(down[-1], 0.0)
        np.testing.assert_allclose(diag[:-1, :-1], 1.0 / math.sqrt(2.0))
        np.testing.assert_allclose(anti[:-1, 1:], 1.0 / math.sqrt(2.0))
        np.testing.assert_allclose(anti[:, 0], 0.0)

    def test_edges_across_boundary_are_cheaper(self, two_region_image):
        img, _ = two_region_image
        contrast = compute_contrast(img, connectivity=4, color_space="lab")
        right = contrast.contrast[0]
        boundary = img.shape[1] // 2 - 1
        assert right[:, boundary].max() < right[:, 0].min()
        assert contrast.connectivity == 4

    def test_values_in_unit_range(self, two_region_image):
        contrast = compute_contrast(two_region_image[0], connectivity=8)
        for contrast_map in contrast.contrast:
            assert contrast_map.min() >= 0.0 and contrast_map.max() <= 1.0

    def test_edge_costs_scale(self, two_region_image):
        contrast = compute_contrast(two_region_image[0], connectivity=4)
        costs = contrast.edge_costs(2.5)
        np.testing.assert_allclose(costs[1], 2.5 * contrast.contrast[1])
        with pytest.raises(ConfigError):
            contrast.edge_costs(-1.0)

    def test_disagreement_cost(self):
        img = np.full((2, 2, 3), 0.3, dtype=np.float32)
        contrast = compute_contrast(img, connectivity=4, color_space="rgb")
        labeling = np.array([[0, 1], [0, 1]])
        # Two horizontal edges disagree, vertical edges agree
        assert contrast.disagreement_cost(labeling, 3.0) == pytest.approx(6.0)
        assert contrast.disagreement_cost(labeling, 0.0) == 0.0
        with pytest.raises(DimensionMismatchError):
            contrast.disagreement_cost(np.zeros((3, 2)), 1.0)

    def test_maps_read_only(self, two_region_image):
        contrast = compute_contrast(two_region_image[0])
        with pytest.raises(ValueError):
            contrast.contrast[0][0, 0] = 1.0

    @pytest.mark.parametrize("kwargs", [{"connectivity": 6}, {"color_space": "hsv"}])
    def test_invalid_options(self, kwargs):
        with pytest.raises(ConfigError):
            compute_contrast(np.zeros((2, 2, 3)), **kwargs)


class TestEdgeSlices:

    def test_anti_diagonal(self):
        src, dst = edge_slices((3, 3), (1, -1))
        grid = np.arange(9).reshape(3, 3)
        np.testing.assert_array_equal(grid[src], [[1, 2], [4, 5]])
        np.testing.assert_array_equal(grid[dst], [[3, 4], [6, 7]])

    def test_four_connectivity_directions(self):
        assert DIRECTIONS_4 == ((0, 1), (1, 0))


class TestPairwiseWeightFile:

    def test_round_trip(self, tmp_path):
        save_pairwise_weight(1.5, str(tmp_path))
        assert load_pairwise_weight(str(tmp_path)) == 1.5

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pairwise_weight(str(tmp_path))

    def test_negative_rejected(self, tmp_path):
        with pytest.raises(ConfigError):
            save_pairwise_weight(-0.1, str(tmp_path))
