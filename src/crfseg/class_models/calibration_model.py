"""Multiclass logistic regression calibrating the K boosted scores of a pixel."""

from dataclasses import dataclass

import numpy as np
from scipy.special import softmax
from sklearn.linear_model import LogisticRegression

from crfseg.cste import CalibrationConfig, GeneralConfig
from crfseg.errors import DimensionMismatchError
from crfseg.logger import get_logger

log = get_logger("calibration_model")


@dataclass(frozen=True)
class CalibrationModel:
    """
    Softmax over a linear map of the ensemble score vector.

    P(c | s) = softmax(weights @ s + bias)_c

    ! Classes never seen in training have a -inf bias, i.e. probability 0
    """

    weights: np.ndarray  # (K, K)
    bias: np.ndarray     # (K,)

    def __post_init__(self):
        weights = np.array(self.weights, dtype=np.float64)
        bias = np.array(self.bias, dtype=np.float64)
        if weights.ndim != 2 or weights.shape[0] != weights.shape[1] or bias.shape != (weights.shape[0],):
            raise ValueError(
                f"Calibration expects (K, K) weights and (K,) bias, got {weights.shape} and {bias.shape}"
            )
        weights.flags.writeable = False
        bias.flags.writeable = False
        object.__setattr__(self, "weights", weights)
        object.__setattr__(self, "bias", bias)

    @property
    def num_classes(self) -> int:
        return self.weights.shape[0]

    def predict(self, scores: np.ndarray) -> np.ndarray:
        """
        Map ensemble scores to class probabilities.

        Args:
            scores: (K,) for one pixel or (N, K) for many

        Returns:
            Probabilities with the same shape, each row in [0, 1] summing to 1
        """
        scores = np.asarray(scores, dtype=np.float64)
        if scores.shape[-1] != self.num_classes:
            raise DimensionMismatchError((self.num_classes,), (scores.shape[-1],), what="score vector")

        logits = scores @ self.weights.T + self.bias
        return softmax(logits, axis=-1)


def train_calibration(
    scores: np.ndarray,
    labels: np.ndarray,
    num_classes: int,
    max_iter: int = CalibrationConfig.MAX_ITER,
    C: float = CalibrationConfig.C,
    void_label: int = -1,
) -> CalibrationModel:
    """
    Fit the calibrator by maximum likelihood (L2-regularised, lbfgs).

    Args:
        scores: Ensemble scores (N, K)
        labels: True labels (N,); void samples are dropped
        num_classes: K
        max_iter: Optimiser iteration budget
        C: Inverse regularisation strength
        void_label: Sentinel excluded from the objective (negatives are void too)

    Returns:
        CalibrationModel
    """
    scores = np.asarray(scores, dtype=np.float64)
    labels = np.asarray(labels)
    if scores.ndim != 2 or scores.shape[1] != num_classes:
        raise DimensionMismatchError((scores.shape[0], num_classes), scores.shape, what="calibration scores")
    if labels.shape != (scores.shape[0],):
        raise DimensionMismatchError((scores.shape[0],), labels.shape, what="calibration labels")

    #! Void samples never enter the objective
    keep = (labels != void_label) & (labels >= 0)
    scores, labels = scores[keep], labels[keep].astype(np.int64)
    if labels.size and labels.max() >= num_classes:
        raise ValueError(f"Calibration labels must lie in [0, {num_classes})")

    weights = np.zeros((num_classes, num_classes))
    bias = np.full(num_classes, -np.inf)

    present = np.unique(labels)
    if present.size == 0:
        log.warning("No non-void calibration samples, using a uniform calibrator")
        return CalibrationModel(weights=weights, bias=np.zeros(num_classes))

    if present.size == 1:
        log.warning(f"Only label {present[0]} present in calibration data, using a constant calibrator")
        bias[present[0]] = 0.0
        return CalibrationModel(weights=weights, bias=bias)

    model = LogisticRegression(
        C=C,
        max_iter=max_iter,
        solver="lbfgs",
        random_state=GeneralConfig.RANDOM_SEED,
    )
    model.fit(scores, labels)

    classes = model.classes_.astype(np.int64)
    if classes.size == 2:
        # Binary fit is a sigmoid on class 1 vs class 0: softmax with a zero row for class 0
        weights[classes[1]] = model.coef_[0]
        bias[classes[0]] = 0.0
        bias[classes[1]] = model.intercept_[0]
    else:
        weights[classes] = model.coef_
        bias[classes] = model.intercept_

    log.info(
        f"Calibration fitted on {labels.size:,} samples, {classes.size}/{num_classes} classes, "
        f"{int(np.max(model.n_iter_))} iterations"
    )
    return CalibrationModel(weights=weights, bias=bias)
