import json

import numpy as np
import pytest

from crfseg.errors import DimensionMismatchError
from crfseg.evaluation import ConfusionMatrix, save_evaluation_report, score, score_many


class TestScore:
    """Pixel accuracy with void exclusion."""

    def test_void_example(self):
        accuracy, matrix = score(np.array([0, 1, -1, 1]), np.array([0, 0, -1, 1]), num_classes=2)
        assert accuracy == pytest.approx(2 / 3)
        np.testing.assert_array_equal(matrix.counts, [[1, 1], [0, 1]])
        assert matrix.total == 3

    def test_void_prediction_ignored_under_void_truth(self):
        # The prediction at a void pixel can be anything
        accuracy, _ = score(np.array([[0, 7]]), np.array([[0, -1]]), num_classes=2)
        assert accuracy == 1.0

    def test_inserting_void_pixels_changes_nothing(self):
        rng = np.random.default_rng(0)
        predicted = rng.integers(0, 3, size=(6, 6))
        truth = rng.integers(0, 3, size=(6, 6))
        _, base = score(predicted, truth, num_classes=3)

        # Extend both images with pixels that are void in the ground truth
        wide_pred = np.hstack([predicted, rng.integers(0, 3, size=(6, 2))])
        wide_truth = np.hstack([truth, np.full((6, 2), -1)])
        accuracy, extended = score(wide_pred, wide_truth, num_classes=3)

        assert extended == base
        assert accuracy == base.accuracy

    def test_custom_void_label(self):
        accuracy, matrix = score(np.array([0, 1]), np.array([0, 255]), num_classes=2, void_label=255)
        assert accuracy == 1.0 and matrix.total == 1

    def test_empty_is_nan(self):
        accuracy, matrix = score(np.array([0, 1]), np.array([-1, -1]), num_classes=2)
        assert np.isnan(accuracy)
        assert matrix.total == 0

    def test_shape_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            score(np.zeros((2, 2), dtype=int), np.zeros((2, 3), dtype=int), num_classes=2)

    def test_out_of_range_prediction(self):
        with pytest.raises(ValueError):
            score(np.array([0, 3]), np.array([0, 1]), num_classes=2)


class TestConfusionMatrix:
    """Additive accumulation."""

    @staticmethod
    def images():
        rng = np.random.default_rng(1)
        return [(rng.integers(0, 3, size=(4, 5)), rng.integers(-1, 3, size=(4, 5))) for _ in range(3)]

    def test_order_independent(self):
        a, b, c = self.images()

        first = ConfusionMatrix(3)
        for predicted, truth in (a, b):
            first.accumulate(predicted, truth)
        first.accumulate(*c)

        second = ConfusionMatrix(3)
        for predicted, truth in (c, b, a):
            second.accumulate(predicted, truth)

        assert first == second

    def test_merge(self):
        a, b, c = self.images()
        left, right, whole = ConfusionMatrix(3), ConfusionMatrix(3), ConfusionMatrix(3)
        left.accumulate(*a)
        right.accumulate(*b)
        right.accumulate(*c)
        for image in (a, b, c):
            whole.accumulate(*image)
        assert left.merge(right) == whole

    def test_merge_rejects_other_k(self):
        with pytest.raises(DimensionMismatchError):
            ConfusionMatrix(2).merge(ConfusionMatrix(3))

    def test_statistics(self):
        matrix = ConfusionMatrix(3)
        matrix.accumulate(np.array([0, 0, 1, 1]), np.array([0, 1, 1, 1]))
        assert matrix.correct == 3 and matrix.misclassified == 1
        np.testing.assert_allclose(matrix.recall()[:2], [1.0, 2 / 3])
        assert np.isnan(matrix.recall()[2])
        np.testing.assert_allclose(matrix.jaccard()[:2], [0.5, 2 / 3])
        assert matrix.class_average_accuracy == pytest.approx((1.0 + 2 / 3) / 2)

    def test_counts_read_only(self):
        matrix = ConfusionMatrix(2)
        with pytest.raises(ValueError):
            matrix.counts[0, 0] = 1

    def test_reset(self):
        matrix = ConfusionMatrix(2)
        matrix.accumulate(np.array([0]), np.array([0]))
        matrix.reset()
        assert matrix.total == 0

    def test_score_many_skips_mismatch(self):
        pairs = [
            (np.array([0, 1]), np.array([0, 1])),
            (np.array([0, 1, 1]), np.array([0, 1])),
        ]
        assert score_many(pairs, num_classes=2).total == 2


class TestReport:

    def test_report_json(self, tmp_path):
        matrix = ConfusionMatrix(3)
        matrix.accumulate(np.array([0, 1]), np.array([0, 1]))
        path = save_evaluation_report(matrix, str(tmp_path), "crf")

        with open(path) as f:
            report = json.load(f)
        assert report["accuracy"] == 1.0
        assert report["recall"][2] is None
        assert report["confusion_matrix"][0][0] == 1
