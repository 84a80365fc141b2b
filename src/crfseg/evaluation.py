"""
Pixel accuracy and confusion matrix evaluation with a void label.

! Ground truth pixels that are void (the configured sentinel, or any negative
! value) are excluded from accuracy and from the confusion matrix, whatever
! the prediction at that pixel is.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

import numpy as np
from sklearn.metrics import confusion_matrix

from crfseg.cste import LabelInfo
from crfseg.errors import DimensionMismatchError
from crfseg.logger import get_logger

log = get_logger("evaluation")


def void_mask(ground_truth: np.ndarray, void_label: int = LabelInfo.VOID_LABEL) -> np.ndarray:
    """True where the ground truth is void."""
    return (ground_truth == void_label) | (ground_truth < 0)


class ConfusionMatrix:
    """
    K x K pixel counts, rows = true label, columns = predicted label.

    Accumulation is additive, so the result does not depend on the order
    in which images are scored.
    """

    def __init__(self, num_classes: int, void_label: int = LabelInfo.VOID_LABEL):
        if num_classes < 1:
            raise ValueError(f"num_classes must be >= 1, got {num_classes}")
        self.num_classes = num_classes
        self.void_label = void_label
        self._counts = np.zeros((num_classes, num_classes), dtype=np.int64)

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def image_counts(self, predicted: np.ndarray, ground_truth: np.ndarray) -> np.ndarray:
        """
        Confusion counts of one image, without accumulating.

        Raises:
            DimensionMismatchError: If the two labelings differ in shape
            ValueError: If a scored pixel carries an out-of-range label
        """
        predicted = np.asarray(predicted)
        ground_truth = np.asarray(ground_truth)
        if predicted.shape != ground_truth.shape:
            raise DimensionMismatchError(ground_truth.shape, predicted.shape, what="predicted labeling")

        scored = ~void_mask(ground_truth, self.void_label)
        y_true = ground_truth[scored].astype(np.int64)
        y_pred = predicted[scored].astype(np.int64)

        if y_true.size == 0:
            return np.zeros((self.num_classes, self.num_classes), dtype=np.int64)

        K = self.num_classes
        if y_true.max() >= K:
            raise ValueError(f"Ground truth label {y_true.max()} outside [0, {K})")
        if y_pred.min() < 0 or y_pred.max() >= K:
            raise ValueError(f"Predicted labels must lie in [0, {K}) on non-void pixels")

        return confusion_matrix(y_true, y_pred, labels=list(range(K))).astype(np.int64)

    def accumulate(self, predicted: np.ndarray, ground_truth: np.ndarray) -> np.ndarray:
        """Add one image and return its own counts."""
        counts = self.image_counts(predicted, ground_truth)
        self._counts += counts
        return counts

    def merge(self, other: "ConfusionMatrix") -> "ConfusionMatrix":
        """Add the counts of another matrix over the same classes."""
        if other.num_classes != self.num_classes:
            raise DimensionMismatchError(
                (self.num_classes, self.num_classes), other.counts.shape, what="confusion matrix"
            )
        self._counts += other.counts
        return self

    def reset(self) -> None:
        self._counts[:] = 0

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    @property
    def counts(self) -> np.ndarray:
        """Read-only copy of the counts."""
        counts = self._counts.copy()
        counts.flags.writeable = False
        return counts

    @property
    def total(self) -> int:
        return int(self._counts.sum())

    @property
    def correct(self) -> int:
        return int(np.trace(self._counts))

    @property
    def misclassified(self) -> int:
        return self.total - self.correct

    @property
    def accuracy(self) -> float:
        """Pixel accuracy over non-void pixels, NaN if nothing was scored."""
        if self.total == 0:
            return float("nan")
        return self.correct / self.total

    def recall(self) -> np.ndarray:
        """Per-class recall TP / (TP + FN), NaN for classes absent from ground truth."""
        gt_totals = self._counts.sum(axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(gt_totals > 0, np.diag(self._counts) / gt_totals, np.nan)

    def precision(self) -> np.ndarray:
        """Per-class precision TP / (TP + FP), NaN for classes never predicted."""
        pred_totals = self._counts.sum(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(pred_totals > 0, np.diag(self._counts) / pred_totals, np.nan)

    def jaccard(self) -> np.ndarray:
        """Per-class IoU = TP / (TP + FP + FN), NaN when the class never occurs."""
        tp = np.diag(self._counts)
        union = self._counts.sum(axis=0) + self._counts.sum(axis=1) - tp
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(union > 0, tp / union, np.nan)

    @property
    def class_average_accuracy(self) -> float:
        recall = self.recall()
        return float(np.nanmean(recall)) if np.any(~np.isnan(recall)) else float("nan")

    @property
    def mean_iou(self) -> float:
        iou = self.jaccard()
        return float(np.nanmean(iou)) if np.any(~np.isnan(iou)) else float("nan")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_classes": self.num_classes,
            "total_pixels": self.total,
            "accuracy": self.accuracy,
            "class_average_accuracy": self.class_average_accuracy,
            "mean_iou": self.mean_iou,
            "recall": self.recall().tolist(),
            "precision": self.precision().tolist(),
            "iou": self.jaccard().tolist(),
            "confusion_matrix": self._counts.tolist(),
        }

    def __eq__(self, other) -> bool:
        if not isinstance(other, ConfusionMatrix):
            return NotImplemented
        return self.num_classes == other.num_classes and np.array_equal(self._counts, other._counts)

    def __repr__(self) -> str:
        return f"ConfusionMatrix(num_classes={self.num_classes}, total={self.total}, accuracy={self.accuracy:.4f})"


# ============================================================================
# SCORING
# ============================================================================

def score(
    predicted: np.ndarray,
    ground_truth: np.ndarray,
    num_classes: int,
    void_label: int = LabelInfo.VOID_LABEL,
) -> Tuple[float, ConfusionMatrix]:
    """
    Score one predicted labeling.

    Args:
        predicted: Predicted labeling (H, W)
        ground_truth: Ground truth labeling (H, W), void pixels ignored
        num_classes: K
        void_label: Void sentinel

    Returns:
        (accuracy, confusion matrix of this image)

    Example:
        >>> acc, cm = score(np.array([0, 1, -1, 1]), np.array([0, 0, -1, 1]), 2)
        >>> # index 2 is void: accuracy = 2/3, counts (0,0)=1, (0,1)=1, (1,1)=1
    """
    matrix = ConfusionMatrix(num_classes, void_label)
    matrix.accumulate(predicted, ground_truth)
    return matrix.accuracy, matrix


def score_many(
    pairs: Iterable[Tuple[np.ndarray, np.ndarray]],
    num_classes: int,
    void_label: int = LabelInfo.VOID_LABEL,
) -> ConfusionMatrix:
    """
    Accumulate (predicted, ground_truth) pairs into one matrix.

    Pairs with mismatched dimensions are logged and skipped.
    """
    matrix = ConfusionMatrix(num_classes, void_label)
    skipped = 0
    for predicted, ground_truth in pairs:
        try:
            matrix.accumulate(predicted, ground_truth)
        except DimensionMismatchError as e:
            skipped += 1
            log.warning(f"Skipping image: {e}")
    if skipped:
        log.warning(f"{skipped} image(s) skipped during scoring")
    return matrix


# ============================================================================
# REPORTING
# ============================================================================

def save_evaluation_report(
    matrix: ConfusionMatrix,
    save_dir: str,
    model_name: str,
) -> Path:
    """
    Save evaluation report to JSON file.

    Args:
        matrix: Accumulated confusion matrix
        save_dir: Directory to save report
        model_name: Name of the model

    Returns:
        Path of the report
    """
    save_path = Path(save_dir)
    save_path.mkdir(parents=True, exist_ok=True)

    report_path = save_path / f'{model_name}_evaluation.json'

    #! NaN is not valid JSON, store it as null
    def _clean(value):
        if isinstance(value, list):
            return [_clean(v) for v in value]
        if isinstance(value, float) and np.isnan(value):
            return None
        return value

    serializable_results = {key: _clean(value) for key, value in matrix.to_dict().items()}

    with open(report_path, 'w') as f:
        json.dump(serializable_results, f, indent=2)

    log.info(f"Saved evaluation report to {report_path}")
    return report_path


def print_evaluation_summary(matrix: ConfusionMatrix) -> None:
    """
    Log a formatted evaluation summary.

    Args:
        matrix: Accumulated confusion matrix
    """
    log.info("=" * 50)
    log.info("EVALUATION SUMMARY")
    log.info("=" * 50)

    log.info(f"Scored pixels:          {matrix.total:,}")
    log.info(f"Accuracy:               {matrix.accuracy:.4f}")
    log.info(f"Class average accuracy: {matrix.class_average_accuracy:.4f}")
    log.info(f"Mean IoU:               {matrix.mean_iou:.4f}")

    recall = matrix.recall()
    iou = matrix.jaccard()
    log.info("Per-Class Metrics:")
    for c in range(matrix.num_classes):
        log.info(f"  Class {c}: recall {recall[c]:.4f}  IoU {iou[c]:.4f}")

    log.info(f"Confusion Matrix:\n{matrix.counts}")
    log.info("=" * 50)
