"""Training pipeline for the pixel CRF: unary model, then pairwise weight."""

import json
import multiprocessing as mp
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import numpy as np
from tqdm import tqdm

from crfseg.class_models.boosted_model import ensemble_summary, score_all_labels, train_label_ensembles
from crfseg.class_models.calibration_model import train_calibration
from crfseg.class_models.unary_model import UnaryModel
from crfseg.config import SegmentationConfig, save_config
from crfseg.errors import ConfigError
from crfseg.evaluation import ConfusionMatrix, print_evaluation_summary, save_evaluation_report, void_mask
from crfseg.feature_extraction_pipeline import FeatureExtractor
from crfseg.inference import evaluate_mapping
from crfseg.io_utils import iter_labeled_images
from crfseg.logger import get_logger
from crfseg.pairwise import save_pairwise_weight
from crfseg.weight_search import LabeledItem, SearchResult, search_pairwise_weight

log = get_logger("trainer")


@dataclass(frozen=True)
class TrainingSamples:
    """Subsampled non-void pixels of a training set."""

    X: np.ndarray       # (N, D) float32
    labels: np.ndarray  # (N,) int64 in [0, K)
    num_images: int
    skipped: int

    def __post_init__(self):
        if self.X.ndim != 2 or self.labels.shape != (self.X.shape[0],):
            raise ValueError(f"Inconsistent samples: X {self.X.shape}, labels {self.labels.shape}")

    @property
    def num_samples(self) -> int:
        return int(self.X.shape[0])

    def class_counts(self, num_classes: int) -> np.ndarray:
        return np.bincount(self.labels, minlength=num_classes)


# ============================================================================
# SAMPLING
# ============================================================================

def subsample_pixels(
    labels: np.ndarray,
    factor: int,
    seed: int,
    void_label: int = -1,
) -> np.ndarray:
    """
    Keep one uniformly chosen pixel per factor x factor block.

    Blocks on the right and bottom borders may be smaller than factor x factor.
    The chosen pixel is dropped if it is void, so a block contributes 0 or 1 sample.

    Args:
        labels: Ground truth (H, W)
        factor: Block side, 1 keeps every pixel
        seed: RNG seed
        void_label: Void sentinel

    Returns:
        Flat (raster) indices of the kept pixels, in block order
    """
    if factor < 1:
        raise ConfigError(f"Subsampling factor must be >= 1, got {factor}")
    labels = np.asarray(labels)
    H, W = labels.shape

    if factor == 1:
        indices = np.arange(H * W)
    else:
        rng = np.random.default_rng(seed)
        n_rows = -(-H // factor)
        n_cols = -(-W // factor)
        block_rows = np.arange(n_rows)[:, None] * factor
        block_cols = np.arange(n_cols)[None, :] * factor
        heights = np.broadcast_to(np.minimum(factor, H - block_rows), (n_rows, n_cols))
        widths = np.broadcast_to(np.minimum(factor, W - block_cols), (n_rows, n_cols))

        rows = block_rows + rng.integers(0, heights)
        cols = block_cols + rng.integers(0, widths)
        indices = (rows * W + cols).ravel()

    keep = ~void_mask(labels.ravel()[indices], void_label)
    return indices[keep]


def _sample_image_worker(
    indexed_item: Tuple[int, LabeledItem],
    config: SegmentationConfig,
) -> Tuple[str, Optional[np.ndarray], Optional[np.ndarray], Optional[str]]:
    """
    Extract and subsample one training image.
    Must be at module level for multiprocessing pickling.

    Returns:
        (img_id, X or None, labels or None, skip reason or None)
    """
    index, item = indexed_item
    if len(item) == 3:
        img_id, img, labels = item
    else:
        img, labels = item
        img_id = f"image_{index}"
    img_id = str(img_id)

    labels = np.asarray(labels)
    if np.asarray(img).shape[:2] != labels.shape:
        return img_id, None, None, f"size mismatch {np.asarray(img).shape[:2]} vs labels {labels.shape}"
    if void_mask(labels, config.void_label).all():
        return img_id, None, None, "all pixels void"

    scored = labels[~void_mask(labels, config.void_label)]
    if scored.max() >= config.num_classes:
        raise ConfigError(
            f"Image {img_id} has label {scored.max()}, configuration has {config.num_classes} classes"
        )

    indices = subsample_pixels(labels, config.sub_sample, config.random_seed + index, config.void_label)
    features = FeatureExtractor.from_config(config).extract_pixels(img)
    return img_id, features[indices], labels.ravel()[indices].astype(np.int64), None


def collect_training_samples(
    items: Iterable[LabeledItem],
    config: SegmentationConfig,
) -> TrainingSamples:
    """
    Turn labeled images into a subsampled training matrix.

    Images with a size mismatch or without any non-void pixel are skipped
    and counted.

    Args:
        items: (image, labels) or (img_id, image, labels) tuples
        config: Run configuration

    Returns:
        TrainingSamples
    """
    worker_fn = partial(_sample_image_worker, config=config)
    indexed = enumerate(items)

    if config.n_jobs > 1:
        with mp.Pool(processes=config.n_jobs) as pool:
            results = list(tqdm(pool.imap(worker_fn, indexed), desc="Sampling training pixels"))
    else:
        results = [worker_fn(item) for item in tqdm(indexed, desc="Sampling training pixels")]

    X_parts, y_parts = [], []
    skipped = 0
    for img_id, X, y, reason in results:
        if reason is not None:
            skipped += 1
            log.warning(f"Skipping training image {img_id}: {reason}")
            continue
        X_parts.append(X)
        y_parts.append(y)

    num_features = FeatureExtractor.from_config(config).num_features
    if X_parts:
        X = np.concatenate(X_parts, axis=0).astype(np.float32)
        labels = np.concatenate(y_parts, axis=0)
    else:
        X = np.zeros((0, num_features), dtype=np.float32)
        labels = np.zeros(0, dtype=np.int64)

    log.info(
        f"Collected {X.shape[0]:,} samples of dimension {num_features} "
        f"from {len(X_parts)} image(s) ({skipped} skipped)"
    )
    return TrainingSamples(X=X, labels=labels, num_images=len(X_parts), skipped=skipped)


# ============================================================================
# TRAINING ENTRY POINTS
# ============================================================================

def _holdout_split(num_samples: int, fraction: float, seed: int) -> Tuple[np.ndarray, np.ndarray]:
    """Seeded split into (boosting indices, calibration indices), both sorted."""
    n_holdout = int(round(num_samples * fraction))
    if fraction <= 0 or n_holdout == 0 or n_holdout >= num_samples:
        everything = np.arange(num_samples)
        return everything, everything

    permutation = np.random.default_rng(seed).permutation(num_samples)
    return np.sort(permutation[n_holdout:]), np.sort(permutation[:n_holdout])


def train_unary(
    samples: Union[TrainingSamples, Iterable[LabeledItem]],
    config: SegmentationConfig,
) -> UnaryModel:
    """
    Train the K boosted ensembles and the calibrator.

    ! Boosting finishes for every label before calibration starts

    Args:
        samples: Prepared TrainingSamples, or labeled images to sample from
        config: Run configuration

    Returns:
        UnaryModel bundling ensembles, calibrator and configuration

    Raises:
        ConfigError: On an invalid configuration or labels outside [0, K)
        ValueError: If no training sample is available
    """
    config.validate()
    if not isinstance(samples, TrainingSamples):
        samples = collect_training_samples(samples, config)
    if samples.num_samples == 0:
        raise ValueError("No non-void training samples, cannot train the unary model")

    K = config.num_classes
    counts = samples.class_counts(K)
    if counts.size > K:
        raise ConfigError(f"Training labels exceed the configured {K} classes")
    for label in np.flatnonzero(counts == 0):
        log.warning(f"Label {label} has no training samples")

    boost_idx, calib_idx = _holdout_split(samples.num_samples, config.calibration_holdout, config.random_seed)
    log.info(f"Boosting on {boost_idx.size:,} samples, calibrating on {calib_idx.size:,} samples")

    ensembles = train_label_ensembles(
        samples.X[boost_idx],
        samples.labels[boost_idx],
        num_classes=K,
        num_rounds=config.num_rounds,
        split_criterion=config.split_criterion,
        n_jobs=config.n_jobs,
    )

    scores = score_all_labels(ensembles, samples.X[calib_idx])
    calibration = train_calibration(
        scores,
        samples.labels[calib_idx],
        num_classes=K,
        max_iter=config.calibration_max_iter,
        C=config.calibration_c,
        void_label=config.void_label,
    )

    return UnaryModel(ensembles, calibration, config)


def train_pairwise(
    validation_set: Iterable[LabeledItem],
    unary_model: UnaryModel,
    config: SegmentationConfig,
) -> float:
    """Select λ on validation images, see weight_search.search_pairwise_weight."""
    return search_pairwise_weight(validation_set, unary_model, config).chosen_weight


# ============================================================================
# PIPELINE
# ============================================================================

class SegmentationTrainer:
    """
    Training pipeline over mapping CSVs.

    Handles data loading, unary training, weight search, evaluation and saving.
    """

    def __init__(
        self,
        config: SegmentationConfig,
        train_csv: str,
        val_csv: Optional[str] = None,
        output_dir: str = './outputs',
    ):
        """
        Initialize trainer.

        Args:
            config: Run configuration
            train_csv: Mapping CSV of the training images
            val_csv: Mapping CSV of the validation images (optional)
            output_dir: Directory to save model artifacts and reports
        """
        self.config = config.validate()
        self.train_csv = train_csv
        self.val_csv = val_csv
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.unary_model: Optional[UnaryModel] = None
        self.search_result: Optional[SearchResult] = None

        log.info(f"Initialized trainer, output directory: {self.output_dir}")

    @property
    def pairwise_weight(self) -> float:
        return self.search_result.chosen_weight if self.search_result is not None else 0.0

    def train(self) -> Dict[str, Any]:
        """
        Train the unary model.

        Returns:
            Training history
        """
        log.info(f"{'='*50}")
        log.info("TRAINING UNARY MODEL")
        log.info(f"{'='*50}")

        start_time = time.time()

        #! Load and subsample training data
        items = iter_labeled_images(self.train_csv, void_label=self.config.void_label)
        samples = collect_training_samples(items, self.config)

        self.unary_model = train_unary(samples, self.config)

        elapsed_time = time.time() - start_time
        log.info(f"Training completed in {elapsed_time:.2f} seconds")

        history = {
            'num_images': samples.num_images,
            'skipped_images': samples.skipped,
            'num_samples': samples.num_samples,
            'class_counts': samples.class_counts(self.config.num_classes),
            'ensembles': [ensemble_summary(e) for e in self.unary_model.ensembles],
            'training_time_seconds': elapsed_time,
        }
        self._save_training_history(history, 'unary')
        return history

    def search(self) -> SearchResult:
        """
        Select the pairwise weight on the validation set.

        Without a validation CSV the weight stays 0.
        """
        if self.unary_model is None:
            raise RuntimeError("Train the unary model before searching the pairwise weight")

        if self.val_csv is None:
            log.warning("No validation set, pairwise weight left at 0")
            self.search_result = SearchResult(chosen_weight=0.0, degenerate=True)
            return self.search_result

        log.info(f"{'='*50}")
        log.info("SEARCHING PAIRWISE WEIGHT")
        log.info(f"{'='*50}")

        items = iter_labeled_images(self.val_csv, void_label=self.config.void_label)
        self.search_result = search_pairwise_weight(items, self.unary_model, self.config)

        self._save_training_history(
            {
                'chosen_weight': self.search_result.chosen_weight,
                'errors': {str(w): e for w, e in self.search_result.errors.items()},
                'accuracies': {str(w): a for w, a in self.search_result.accuracies.items()},
                'num_images': self.search_result.num_images,
                'skipped_images': self.search_result.skipped,
                'degenerate': self.search_result.degenerate,
            },
            'pairwise',
        )
        return self.search_result

    def evaluate(self, test_csv: str) -> ConfusionMatrix:
        """
        Evaluate the trained CRF on test data.

        Args:
            test_csv: Mapping CSV of the test images

        Returns:
            Accumulated confusion matrix
        """
        if self.unary_model is None:
            raise RuntimeError("Train the unary model before evaluating")

        log.info(f"{'='*50}")
        log.info("EVALUATING CRF")
        log.info(f"{'='*50}")

        matrix, _ = evaluate_mapping(
            test_csv,
            self.unary_model,
            self.pairwise_weight,
            self.config,
            metrics_csv_path=str(self.output_dir / 'per_image_metrics.csv'),
        )
        print_evaluation_summary(matrix)
        save_evaluation_report(matrix, str(self.output_dir), 'crf')
        return matrix

    def save_model(self) -> None:
        """Save trained model, pairwise weight and configuration to output directory."""
        if self.unary_model is None:
            raise RuntimeError("Nothing to save, train the unary model first")

        log.info(f"Saving model to {self.output_dir}...")
        self.unary_model.save(str(self.output_dir))
        save_pairwise_weight(self.pairwise_weight, str(self.output_dir))
        save_config(self.config, str(self.output_dir / 'run_config.json'))
        log.info("Model saved successfully")

    def _save_training_history(self, history: Dict[str, Any], stage: str) -> None:
        """
        Save training history to JSON.

        Args:
            history: Training history dictionary
            stage: 'unary' or 'pairwise'
        """
        history_path = self.output_dir / f'{stage}_training_history.json'

        #! Convert numpy types to native Python types
        def _native(value):
            if isinstance(value, np.ndarray):
                return value.tolist()
            if isinstance(value, np.floating):
                return float(value)
            if isinstance(value, np.integer):
                return int(value)
            if isinstance(value, dict):
                return {str(k): _native(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [_native(v) for v in value]
            if isinstance(value, float) and np.isnan(value):
                return None
            return value

        with open(history_path, 'w') as f:
            json.dump(_native(history), f, indent=2)

        log.info(f"Saved training history to {history_path}")


def train_and_evaluate(
    config: SegmentationConfig,
    train_csv: str,
    val_csv: Optional[str] = None,
    test_csv: Optional[str] = None,
    output_dir: str = './outputs',
) -> SegmentationTrainer:
    """
    Complete training and evaluation pipeline.

    Args:
        config: Run configuration
        train_csv: Training mapping CSV
        val_csv: Validation mapping CSV, used for the weight search
        test_csv: Test mapping CSV, evaluated if given
        output_dir: Directory for the model and reports

    Returns:
        The trainer holding the trained model
    """
    trainer = SegmentationTrainer(config, train_csv, val_csv, output_dir)
    trainer.train()
    trainer.search()
    trainer.save_model()
    if test_csv is not None:
        trainer.evaluate(test_csv)
    return trainer
