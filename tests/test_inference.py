import numpy as np
import pandas as pd
import pytest
from PIL import Image

from crfseg import evaluate, infer
from crfseg.cste import CSVKeys
from crfseg.errors import ConfigError
from crfseg.inference import evaluate_mapping, infer_batch, infer_with_details
from crfseg.io_utils import load_labels, save_labels


def write_mapping(root, items, broken=False):
    rows = []
    for img_id, img, labels in items:
        img_path = root / f"{img_id}.png"
        label_path = root / f"{img_id}_gt.txt"
        Image.fromarray((img * 255).round().astype(np.uint8)).save(img_path)
        save_labels(labels, str(label_path))
        rows.append({CSVKeys.IMAGE_ID: img_id, CSVKeys.IMAGE_PATH: str(img_path),
                     CSVKeys.LABEL_PATH: str(label_path)})
    if broken:
        rows.insert(1, {CSVKeys.IMAGE_ID: "broken", CSVKeys.IMAGE_PATH: str(root / "absent.png"),
                        CSVKeys.LABEL_PATH: str(root / "absent.txt")})
    csv_path = root / "mapping.csv"
    pd.DataFrame(rows).to_csv(csv_path, index=False)
    return csv_path


class TestInfer:
    """Single image inference."""

    def test_weight_zero_is_unary_argmax(self, unary_model, two_region_image):
        img, _ = two_region_image
        labeling = infer(img, unary_model, 0.0)
        expected = np.argmax(unary_model.image_probabilities(img), axis=-1)
        np.testing.assert_array_equal(labeling, expected)

    def test_labeling_shape_and_read_only(self, unary_model, two_region_image):
        img, _ = two_region_image
        labeling = infer(img, unary_model, 1.0)
        assert labeling.shape == img.shape[:2]
        assert not labeling.flags.writeable

    def test_details(self, unary_model, two_region_image, small_config):
        img, labels = two_region_image
        result = infer_with_details(img, unary_model, 1.0, small_config)
        assert result.energy == result.energy_history[-1]
        accuracy, _ = evaluate(result.labeling, labels, num_classes=2)
        assert accuracy > 0.9

    def test_negative_weight(self, unary_model, two_region_image):
        with pytest.raises(ConfigError):
            infer(two_region_image[0], unary_model, -1.0)


class TestBatch:
    """Batch inference with per-image isolation."""

    def test_failure_isolated(self, tmp_path, unary_model, training_items, small_config):
        csv_path = write_mapping(tmp_path, training_items, broken=True)
        results = infer_batch(str(csv_path), unary_model, 1.0, small_config,
                              output_dir=str(tmp_path / "predictions"))

        assert [img_id for img_id, _, _ in results] == ["img_0", "broken", "img_1", "img_2"]
        broken = results[1]
        assert broken[1] is None and "absent.png" in broken[2]
        assert all(labeling is not None and error is None
                   for img_id, labeling, error in results if img_id != "broken")

        saved = load_labels(str(tmp_path / "predictions" / "img_0_labels.png"))
        np.testing.assert_array_equal(saved, results[0][1])

    def test_evaluate_mapping(self, tmp_path, unary_model, training_items, small_config):
        csv_path = write_mapping(tmp_path, training_items, broken=True)
        metrics_csv = tmp_path / "metrics.csv"
        matrix, metrics = evaluate_mapping(str(csv_path), unary_model, 1.0, small_config,
                                           metrics_csv_path=str(metrics_csv))

        assert matrix.total == 3 * 144 - 12
        assert matrix.accuracy > 0.9
        assert len(metrics) == 4
        assert metrics.loc[metrics[CSVKeys.IMAGE_ID] == "broken", "scored_pixels"].item() == 0
        assert metrics_csv.exists()
