import numpy as np
import pytest

from crfseg.config import SegmentationConfig
from crfseg.cste import FeatureInfo
from crfseg.errors import ConfigError
from crfseg.feature_extraction_pipeline import (
    FeatureExtractor,
    as_rgb_float,
    compute_grid_means,
    compute_position_features,
    extract_features,
)


class TestFeatureExtractor:
    """Per-pixel feature tensors."""

    def test_default_dimension(self):
        extractor = FeatureExtractor()
        assert extractor.num_features == 6 + 17 + 3 + 3 + 3

    def test_all_groups_shape_and_dtype(self, two_region_image):
        img, _ = two_region_image
        extractor = FeatureExtractor(feature_groups=FeatureInfo.FEATURE_GROUPS, grid_spacing=4)
        features = extractor.extract(img)

        assert features.shape == img.shape[:2] + (extractor.num_features,)
        assert features.dtype == np.float32
        assert np.all(np.isfinite(features))

    def test_dimension_independent_of_image(self, two_region_image):
        extractor = FeatureExtractor(feature_groups=["color", "texture", "gradient"])
        small = extractor.extract(np.zeros((5, 7, 3), dtype=np.float32))
        large = extractor.extract(two_region_image[0])
        assert small.shape[-1] == large.shape[-1] == extractor.num_features

    def test_group_order_is_fixed(self):
        a = FeatureExtractor(feature_groups=["position", "color"])
        b = FeatureExtractor(feature_groups=["color", "position"])
        assert a.feature_groups == b.feature_groups == ["color", "position"]
        assert a.feature_slices()["position"] == slice(6, 9)

    def test_grey_image_promoted(self):
        grey = np.linspace(0.0, 1.0, 30, dtype=np.float32).reshape(5, 6)
        features = FeatureExtractor(feature_groups=["color"]).extract(grey)
        np.testing.assert_array_equal(features[..., 0], features[..., 1])
        np.testing.assert_array_equal(features[..., 0], features[..., 2])

    def test_deterministic(self, two_region_image):
        img, _ = two_region_image
        extractor = FeatureExtractor()
        np.testing.assert_array_equal(extractor.extract(img), extractor.extract(img))

    def test_input_not_mutated(self, two_region_image):
        img, _ = two_region_image
        before = img.copy()
        FeatureExtractor().extract(img)
        np.testing.assert_array_equal(img, before)

    def test_extract_pixels_is_raster_order(self, two_region_image):
        img, _ = two_region_image
        extractor = FeatureExtractor(feature_groups=["color", "position"])
        tensor = extractor.extract(img)
        matrix = extractor.extract_pixels(img)
        np.testing.assert_array_equal(matrix[13], tensor[1, 1])

    @pytest.mark.parametrize("kwargs", [
        {"feature_groups": []},
        {"feature_groups": ["unknown"]},
        {"feature_groups": ["filterbank"], "filter_bandwidth": 0.0},
        {"feature_groups": ["region"], "grid_spacing": 0},
        {"window_size": 4},
    ])
    def test_invalid_options(self, kwargs):
        with pytest.raises(ConfigError):
            FeatureExtractor(**kwargs)

    def test_from_config(self):
        config = SegmentationConfig(feature_groups=["color", "region"], grid_spacing=3)
        extractor = FeatureExtractor.from_config(config)
        assert extractor.num_features == 10
        assert extractor.grid_spacing == 3

    def test_extract_features_saves(self, tmp_path, two_region_image):
        img, _ = two_region_image
        config = SegmentationConfig(feature_groups=["color"])
        path = tmp_path / "features" / "img.npy"
        features = extract_features(img, config, save_path=str(path))
        np.testing.assert_array_equal(np.load(path), features)


class TestFeatureHelpers:

    def test_as_rgb_float_from_uint8(self):
        img = np.full((2, 2, 3), 255, dtype=np.uint8)
        out = as_rgb_float(img)
        assert out.dtype == np.float32
        assert np.allclose(out, 1.0)

    def test_as_rgb_float_rejects_bad_shape(self):
        with pytest.raises(ValueError):
            as_rgb_float(np.zeros((2, 2, 2)))

    def test_position_features_range(self):
        row, col, dist = compute_position_features((4, 5))
        assert row[0, 0] == 0.0 and row[-1, 0] == 1.0
        assert col[0, -1] == 1.0
        assert dist.min() >= 0.0 and dist.max() <= 1.0 + 1e-6

    def test_grid_means_constant_per_cell(self):
        channel = np.arange(16, dtype=np.float32).reshape(4, 4)
        (means,) = compute_grid_means([channel], grid_spacing=2)
        assert means[0, 0] == means[1, 1] == pytest.approx((0 + 1 + 4 + 5) / 4)
        assert means[3, 3] == pytest.approx((10 + 11 + 14 + 15) / 4)


class TestBatchExtraction:

    def test_failures_skipped(self, tmp_path, two_region_image):
        import pandas as pd
        from PIL import Image

        from crfseg.cste import CSVKeys
        from crfseg.feature_extraction_pipeline import extract_features_batch

        img, _ = two_region_image
        Image.fromarray((img * 255).astype(np.uint8)).save(tmp_path / "ok.png")
        pd.DataFrame([
            {CSVKeys.IMAGE_ID: "ok", CSVKeys.IMAGE_PATH: str(tmp_path / "ok.png")},
            {CSVKeys.IMAGE_ID: "gone", CSVKeys.IMAGE_PATH: str(tmp_path / "gone.png")},
        ]).to_csv(tmp_path / "mapping.csv", index=False)

        config = SegmentationConfig(feature_groups=["color", "position"])
        df = extract_features_batch(str(tmp_path / "mapping.csv"), str(tmp_path / "features"), config)

        assert list(df[CSVKeys.IMAGE_ID]) == ["ok"]
        assert np.load(df["feature_path"].iloc[0]).shape == img.shape[:2] + (9,)
