"""
One-vs-all boosted decision stumps for pixel-wise classification.

Each class label gets its own ensemble, trained independently with
discrete AdaBoost:
- weak classifier = threshold rule on a single feature dimension
- each round picks the stump that minimises the split criterion over the
  re-weighted sample ('misclass', 'gini' or 'entropy')
- the stump weight is α = ½ ln((1 - ε) / ε), ε the weighted error
- misclassified samples are up-weighted by exp(α), then weights renormalised

! Training runs exactly num_rounds rounds, it is not a convergence loop
! No randomness: stable sorts and first-best tie breaking make it reproducible
"""

import multiprocessing as mp
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Sequence, Tuple

import numpy as np

from crfseg.cste import BoostingConfig
from crfseg.errors import ConfigError, DimensionMismatchError
from crfseg.logger import get_logger

log = get_logger("boosted_model")


# ============================================================================
# MODEL TYPES
# ============================================================================

@dataclass(frozen=True)
class WeakClassifier:
    """Decision stump: polarity if x[feature] > threshold else -polarity."""

    feature: int
    threshold: float
    polarity: int

    def predict(self, X: np.ndarray) -> np.ndarray:
        """
        Args:
            X: Feature vector (D,) or matrix (N, D)

        Returns:
            +1 / -1 decisions, shape () or (N,)
        """
        values = np.asarray(X)[..., self.feature]
        return np.where(values > self.threshold, self.polarity, -self.polarity)


@dataclass(frozen=True)
class BoostedEnsemble:
    """Ordered (weak classifier, weight) pairs for one label."""

    label: int
    num_features: int
    classifiers: Tuple[WeakClassifier, ...] = ()
    weights: Tuple[float, ...] = ()

    def __post_init__(self):
        if len(self.classifiers) != len(self.weights):
            raise ValueError(
                f"Ensemble for label {self.label} has {len(self.classifiers)} classifiers "
                f"but {len(self.weights)} weights"
            )

    @property
    def num_rounds(self) -> int:
        return len(self.classifiers)

    def _check_dims(self, X: np.ndarray) -> None:
        if X.shape[-1] != self.num_features:
            raise DimensionMismatchError(
                (self.num_features,), (X.shape[-1],), what=f"feature vector of label {self.label}"
            )

    def score(self, x: np.ndarray) -> float:
        """Confidence of one feature vector, O(num_rounds)."""
        x = np.asarray(x)
        self._check_dims(x)
        total = 0.0
        for clf, alpha in zip(self.classifiers, self.weights):
            total += alpha * (clf.polarity if x[clf.feature] > clf.threshold else -clf.polarity)
        return float(total)

    def score_many(self, X: np.ndarray) -> np.ndarray:
        """
        Confidence of every row of a feature matrix.

        Args:
            X: Feature matrix (N, D)

        Returns:
            Scores (N,), float64
        """
        X = np.asarray(X)
        self._check_dims(X)
        scores = np.zeros(X.shape[0], dtype=np.float64)
        for clf, alpha in zip(self.classifiers, self.weights):
            scores += alpha * clf.predict(X)
        return scores


def score_all_labels(ensembles: Sequence[BoostedEnsemble], X: np.ndarray) -> np.ndarray:
    """Stack the scores of K ensembles into an (N, K) matrix, column k = label k."""
    return np.stack([ensemble.score_many(X) for ensemble in ensembles], axis=1)


# ============================================================================
# STUMP SEARCH
# ============================================================================

def _presort_features(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Sort each feature column once, reused by every boosting round.

    Returns:
        order: (N, D) sample indices sorting each column
        thresholds: (N-1, D) threshold between consecutive sorted values
        valid: (N-1, D) True where consecutive sorted values differ
    """
    order = np.argsort(X, axis=0, kind="stable")
    sorted_vals = np.take_along_axis(X, order, axis=0).astype(np.float64)

    lower = sorted_vals[:-1]
    upper = sorted_vals[1:]
    valid = lower < upper

    # Midpoint, unless rounding pushed it onto the upper value
    thresholds = lower + (upper - lower) / 2.0
    thresholds = np.where(thresholds < upper, thresholds, lower)

    return order, thresholds, valid


def _impurity(pos: np.ndarray, neg: np.ndarray, criterion: str) -> np.ndarray:
    """Mass-weighted impurity of a child node holding pos / neg weight."""
    mass = pos + neg
    with np.errstate(divide="ignore", invalid="ignore"):
        p = np.where(mass > 0, pos / mass, 0.0)
    q = 1.0 - p

    if criterion == "gini":
        return mass * (1.0 - p ** 2 - q ** 2)

    # entropy
    with np.errstate(divide="ignore", invalid="ignore"):
        h = -(np.where(p > 0, p * np.log2(p), 0.0) + np.where(q > 0, q * np.log2(q), 0.0))
    return mass * h


def _best_stump(
    order: np.ndarray,
    thresholds: np.ndarray,
    valid: np.ndarray,
    y: np.ndarray,
    w: np.ndarray,
    criterion: str,
) -> Tuple[WeakClassifier, float]:
    """
    Select the single-feature stump minimising the split criterion.

    Returns:
        (stump, weighted error of the stump)
    """
    w_pos = np.where(y > 0, w, 0.0)
    w_neg = np.where(y > 0, 0.0, w)
    total_pos = w_pos.sum()
    total_neg = w_neg.sum()
    total = total_pos + total_neg

    best = None
    best_score = np.inf

    for feature in range(order.shape[1]):
        feature_valid = valid[:, feature]
        if not feature_valid.any():
            continue

        idx = order[:, feature]
        # Weight of samples at or below each split (left child)
        left_pos = np.cumsum(w_pos[idx])[:-1]
        left_neg = np.cumsum(w_neg[idx])[:-1]

        # Polarity +1: left predicted -1, right predicted +1
        err_plus = left_pos + (total_neg - left_neg)

        if criterion == "misclass":
            split_score = np.minimum(err_plus, total - err_plus)
        else:
            split_score = (
                _impurity(left_pos, left_neg, criterion)
                + _impurity(total_pos - left_pos, total_neg - left_neg, criterion)
            )

        split_score = np.where(feature_valid, split_score, np.inf)
        i = int(np.argmin(split_score))

        if split_score[i] < best_score:
            best_score = split_score[i]
            error = err_plus[i]
            polarity = 1 if error <= total - error else -1
            best = (feature, float(thresholds[i, feature]), polarity,
                    float(min(error, total - error)))

    if best is None:
        # Every feature is constant: fall back to predicting the heavier class
        majority = 1 if total_pos >= total_neg else -1
        return WeakClassifier(feature=0, threshold=float(np.inf), polarity=-majority), float(
            min(total_pos, total_neg)
        )

    feature, threshold, polarity, error = best
    return WeakClassifier(feature=feature, threshold=threshold, polarity=polarity), error


# ============================================================================
# TRAINING
# ============================================================================

def train_boosted_ensemble(
    X: np.ndarray,
    y: np.ndarray,
    label: int,
    num_rounds: int = BoostingConfig.NUM_ROUNDS,
    split_criterion: str = BoostingConfig.SPLIT_CRITERION,
) -> BoostedEnsemble:
    """
    Train a one-vs-all boosted ensemble.

    Args:
        X: Feature matrix (N, D)
        y: Targets (N,), +1 for the label, -1 for every other class
        label: Class id the ensemble detects
        num_rounds: Number of boosting rounds (fixed budget)
        split_criterion: 'misclass', 'gini' or 'entropy'

    Returns:
        BoostedEnsemble with exactly num_rounds weak classifiers

    Raises:
        ConfigError: On an unknown criterion or a non-positive round budget
        ValueError: On empty or inconsistent samples
    """
    if split_criterion not in BoostingConfig.SPLIT_CRITERIA:
        raise ConfigError(
            f"split_criterion must be one of {BoostingConfig.SPLIT_CRITERIA}, got '{split_criterion}'"
        )
    if num_rounds < 1:
        raise ConfigError(f"num_rounds must be >= 1, got {num_rounds}")

    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y)
    if X.ndim != 2 or X.shape[0] == 0:
        raise ValueError(f"Expected a non-empty (N, D) feature matrix, got shape {X.shape}")
    if y.shape != (X.shape[0],):
        raise DimensionMismatchError((X.shape[0],), y.shape, what="boosting targets")
    if not np.all(np.isin(y, (-1, 1))):
        raise ValueError("Boosting targets must be +1 / -1")

    eps = BoostingConfig.ERROR_EPS
    order, thresholds, valid = _presort_features(X)
    w = np.full(X.shape[0], 1.0 / X.shape[0])

    classifiers: List[WeakClassifier] = []
    weights: List[float] = []

    for _ in range(num_rounds):
        stump, error = _best_stump(order, thresholds, valid, y, w, split_criterion)

        error = min(max(error / w.sum(), eps), 1.0 - eps)
        alpha = 0.5 * np.log((1.0 - error) / error)

        #! Up-weight misclassified samples
        w = w * np.exp(-alpha * y * stump.predict(X))
        w /= w.sum()

        classifiers.append(stump)
        weights.append(float(alpha))

    return BoostedEnsemble(
        label=label,
        num_features=X.shape[1],
        classifiers=tuple(classifiers),
        weights=tuple(weights),
    )


def empty_ensemble(label: int, num_features: int) -> BoostedEnsemble:
    """Ensemble with no rounds, scores 0 everywhere (label never observed)."""
    return BoostedEnsemble(label=label, num_features=num_features)


def _train_label_worker(
    label: int,
    X: np.ndarray,
    labels: np.ndarray,
    num_rounds: int,
    split_criterion: str,
) -> BoostedEnsemble:
    """
    Train the ensemble of one label.
    Must be at module level for multiprocessing pickling.
    """
    y = np.where(labels == label, 1, -1)
    n_pos = int((y > 0).sum())
    if n_pos == 0:
        log.warning(f"Label {label}: no positive samples, using an empty ensemble")
        return empty_ensemble(label, X.shape[1])

    ensemble = train_boosted_ensemble(X, y, label, num_rounds, split_criterion)
    log.info(f"Label {label}: trained {ensemble.num_rounds} rounds on {n_pos:,} positives / {len(y):,} samples")
    return ensemble


def train_label_ensembles(
    X: np.ndarray,
    labels: np.ndarray,
    num_classes: int,
    num_rounds: int = BoostingConfig.NUM_ROUNDS,
    split_criterion: str = BoostingConfig.SPLIT_CRITERION,
    n_jobs: int = 1,
) -> List[BoostedEnsemble]:
    """
    Train one ensemble per label, optionally one label per worker.

    ! All workers join before returning, calibration needs every ensemble

    Args:
        X: Feature matrix (N, D) of non-void samples
        labels: Class ids (N,) in [0, num_classes)
        num_classes: K
        num_rounds: Boosting rounds per label
        split_criterion: Split criterion
        n_jobs: Worker processes, 1 runs in-process

    Returns:
        List of K ensembles, index k = label k
    """
    labels = np.asarray(labels)
    if labels.shape != (X.shape[0],):
        raise DimensionMismatchError((X.shape[0],), labels.shape, what="training labels")
    if labels.size and (labels.min() < 0 or labels.max() >= num_classes):
        raise ValueError(f"Training labels must lie in [0, {num_classes}), void samples must be removed")

    worker_fn = partial(
        _train_label_worker,
        X=X,
        labels=labels,
        num_rounds=num_rounds,
        split_criterion=split_criterion,
    )

    if n_jobs > 1:
        with mp.Pool(processes=min(n_jobs, num_classes)) as pool:
            ensembles = pool.map(worker_fn, range(num_classes))
    else:
        ensembles = [worker_fn(label) for label in range(num_classes)]

    return ensembles


def ensemble_summary(ensemble: BoostedEnsemble) -> Dict[str, object]:
    """Feature usage counts of an ensemble, for logging and reports."""
    counts: Dict[int, int] = {}
    for clf in ensemble.classifiers:
        counts[clf.feature] = counts.get(clf.feature, 0) + 1
    return {
        "label": ensemble.label,
        "num_rounds": ensemble.num_rounds,
        "feature_usage": dict(sorted(counts.items())),
        "total_weight": float(sum(ensemble.weights)),
    }
