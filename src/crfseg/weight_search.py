"""
Grid search of the pairwise weight λ on validation images.

For every candidate λ (ascending), every validation image is decoded with
the CRF and scored against its ground truth. The candidate with the lowest
total number of misclassified non-void pixels wins; on ties the smaller λ
is kept. With too little usable validation data the search falls back to
λ = 0 and emits a DegenerateSearchWarning.
"""

import itertools
import multiprocessing as mp
import warnings
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm import tqdm

from crfseg.class_models.unary_model import UnaryModel
from crfseg.config import SegmentationConfig
from crfseg.cste import CRFConfig, LabelInfo
from crfseg.crf_inference import CRFInferenceEngine
from crfseg.errors import ConfigError, DegenerateSearchWarning, DimensionMismatchError
from crfseg.evaluation import ConfusionMatrix, void_mask
from crfseg.logger import get_logger
from crfseg.pairwise import ContrastPotential, compute_contrast

log = get_logger("weight_search")

#! Never more validation images than this, whatever the configuration says
VALIDATION_IMAGE_CAP = 100

LabeledItem = Union[Tuple[np.ndarray, np.ndarray], Tuple[str, np.ndarray, np.ndarray]]


@dataclass(frozen=True)
class ValidationImage:
    """Everything the search needs from one image, computed once."""

    img_id: str
    probabilities: np.ndarray  # (H, W, K)
    contrast: ContrastPotential
    ground_truth: np.ndarray   # (H, W)


@dataclass(frozen=True)
class SearchResult:
    """Outcome of a weight search."""

    chosen_weight: float
    errors: Dict[float, int] = field(default_factory=dict)
    accuracies: Dict[float, float] = field(default_factory=dict)
    num_images: int = 0
    skipped: int = 0
    degenerate: bool = False


def select_weight(errors: Dict[float, int]) -> float:
    """Lowest error wins, ties go to the smaller weight."""
    best_weight, best_error = None, None
    for weight in sorted(errors):
        if best_error is None or errors[weight] < best_error:
            best_weight, best_error = weight, errors[weight]
    return best_weight


def _evaluate_candidate(
    weight: float,
    images: Sequence[ValidationImage],
    engine: CRFInferenceEngine,
    num_classes: int,
    void_label: int,
) -> ConfusionMatrix:
    """
    Decode and score every validation image with one λ.
    Must be at module level for multiprocessing pickling.
    """
    matrix = ConfusionMatrix(num_classes, void_label)
    for image in images:
        result = engine.infer(image.probabilities, image.contrast, weight)
        matrix.accumulate(result.labeling, image.ground_truth)
    return matrix


class WeightSearcher:
    """
    Selects λ from a candidate grid by validation misclassification count.

    ! Reads the shared engine and validation data only, candidates are independent
    """

    def __init__(
        self,
        candidates: Sequence[float],
        engine: CRFInferenceEngine,
        num_classes: int,
        void_label: int = LabelInfo.VOID_LABEL,
        max_images: int = CRFConfig.MAX_VALIDATION_IMAGES,
        min_images: int = CRFConfig.MIN_VALIDATION_IMAGES,
        n_jobs: int = 1,
    ):
        """
        Args:
            candidates: Candidate weights, all >= 0
            engine: Inference engine used for decoding
            num_classes: K
            void_label: Void sentinel of the ground truth
            max_images: Validation subset size (capped at VALIDATION_IMAGE_CAP)
            min_images: Fewer usable images than this is a degenerate search
            n_jobs: Candidates evaluated in parallel

        Raises:
            ConfigError: On an empty grid or a negative candidate
        """
        if not candidates:
            raise ConfigError("The pairwise weight grid is empty")
        for weight in candidates:
            if not np.isfinite(weight) or weight < 0:
                raise ConfigError(f"Pairwise weights must be finite and >= 0, got {weight}")
        if max_images < 1 or min_images < 1:
            raise ConfigError("max_images and min_images must be >= 1")

        self.candidates: List[float] = sorted(set(float(w) for w in candidates))
        self.engine = engine
        self.num_classes = num_classes
        self.void_label = void_label
        self.max_images = min(max_images, VALIDATION_IMAGE_CAP)
        self.min_images = min_images
        self.n_jobs = n_jobs

    @classmethod
    def from_config(cls, config: SegmentationConfig) -> "WeightSearcher":
        return cls(
            candidates=config.pairwise_candidates,
            engine=CRFInferenceEngine.from_config(config),
            num_classes=config.num_classes,
            void_label=config.void_label,
            max_images=config.max_validation_images,
            min_images=config.min_validation_images,
            n_jobs=config.n_jobs,
        )

    def _fallback(self, reason: str, num_images: int, skipped: int) -> SearchResult:
        message = f"Degenerate pairwise weight search ({reason}), falling back to weight 0"
        log.warning(message)
        warnings.warn(message, DegenerateSearchWarning, stacklevel=3)
        return SearchResult(chosen_weight=0.0, num_images=num_images, skipped=skipped, degenerate=True)

    def usable(self, image: ValidationImage) -> bool:
        """
        An image is usable if its shapes agree, it has a non-void pixel and
        every non-void ground truth label lies in [0, K).
        """
        shape = image.ground_truth.shape
        if image.probabilities.shape[:2] != shape or tuple(image.contrast.shape) != shape:
            log.warning(f"Validation image {image.img_id}: dimension mismatch, skipped")
            return False
        if image.probabilities.shape[2] != self.num_classes:
            log.warning(f"Validation image {image.img_id}: expected {self.num_classes} classes, skipped")
            return False
        void = void_mask(image.ground_truth, self.void_label)
        if void.all():
            log.warning(f"Validation image {image.img_id}: all pixels void, skipped")
            return False
        max_label = int(image.ground_truth[~void].max())
        if max_label >= self.num_classes:
            log.warning(
                f"Validation image {image.img_id}: label {max_label} outside [0, {self.num_classes}), skipped"
            )
            return False
        return True

    def search(self, validation_images: Iterable[ValidationImage], skipped: int = 0) -> SearchResult:
        """
        Run the grid search.

        Args:
            validation_images: Prepared validation images, only the first max_images are used
            skipped: Images already dropped while preparing the data

        Returns:
            SearchResult
        """
        subset = list(itertools.islice(validation_images, self.max_images))
        images = [image for image in subset if self.usable(image)]
        skipped += len(subset) - len(images)

        if len(images) < self.min_images:
            return self._fallback(
                f"{len(images)} usable image(s), {self.min_images} required", len(images), skipped
            )

        log.info(f"Searching pairwise weight over {self.candidates} on {len(images)} image(s)")

        worker_fn = partial(
            _evaluate_candidate,
            images=images,
            engine=self.engine,
            num_classes=self.num_classes,
            void_label=self.void_label,
        )

        if self.n_jobs > 1 and len(self.candidates) > 1:
            with mp.Pool(processes=min(self.n_jobs, len(self.candidates))) as pool:
                matrices = pool.map(worker_fn, self.candidates)
        else:
            matrices = [worker_fn(weight) for weight in tqdm(self.candidates, desc="Pairwise weight search")]

        if matrices[0].total == 0:
            return self._fallback("no scored pixels", len(images), skipped)

        errors = {}
        accuracies = {}
        for weight, matrix in zip(self.candidates, matrices):
            errors[weight] = matrix.misclassified
            accuracies[weight] = matrix.accuracy
            log.info(f"  weight {weight:g}: {matrix.misclassified:,} errors, accuracy {matrix.accuracy:.4f}")

        chosen = select_weight(errors)
        log.info(f"Selected pairwise weight {chosen:g}")

        return SearchResult(
            chosen_weight=chosen,
            errors=errors,
            accuracies=accuracies,
            num_images=len(images),
            skipped=skipped,
        )


# ============================================================================
# PREPARATION FROM RAW IMAGES
# ============================================================================

def _split_item(item: LabeledItem, index: int) -> Tuple[str, np.ndarray, np.ndarray]:
    if len(item) == 3:
        img_id, img, labels = item
        return str(img_id), img, labels
    img, labels = item
    return f"image_{index}", img, labels


def prepare_validation_image(
    img_id: str,
    img: np.ndarray,
    ground_truth: np.ndarray,
    unary_model: UnaryModel,
    config: SegmentationConfig,
) -> ValidationImage:
    """
    Compute calibrated probabilities and contrast maps of one image.

    Raises:
        DimensionMismatchError: If image and ground truth sizes differ
        ValueError: If the image is not an (H, W) or (H, W, 3) array
    """
    ground_truth = np.asarray(ground_truth)
    if np.asarray(img).shape[:2] != ground_truth.shape:
        raise DimensionMismatchError(np.asarray(img).shape[:2], ground_truth.shape, what=f"labels of {img_id}")

    return ValidationImage(
        img_id=img_id,
        probabilities=unary_model.image_probabilities(img),
        contrast=compute_contrast(img, config.connectivity, config.color_space),
        ground_truth=ground_truth,
    )


def prepare_validation_images(
    items: Iterable[LabeledItem],
    unary_model: UnaryModel,
    config: SegmentationConfig,
    limit: Optional[int] = None,
) -> Tuple[List[ValidationImage], int]:
    """
    Prepare at most `limit` validation images.

    ! The limit counts the items read, not the images kept: a skipped
    ! item still uses one slot of the validation budget

    Returns:
        (prepared images, number skipped because they could not be prepared)
    """
    if limit is None:
        limit = min(config.max_validation_images, VALIDATION_IMAGE_CAP)

    prepared, skipped = [], 0
    for index, item in enumerate(itertools.islice(items, limit)):
        img_id, img, labels = _split_item(item, index)
        try:
            prepared.append(prepare_validation_image(img_id, img, labels, unary_model, config))
        except ValueError as e:
            skipped += 1
            log.warning(f"Skipping validation image {img_id}: {e}")
    return prepared, skipped


def search_pairwise_weight(
    items: Iterable[LabeledItem],
    unary_model: UnaryModel,
    config: SegmentationConfig,
) -> SearchResult:
    """
    Full weight search from raw (image, ground truth) pairs.

    Args:
        items: (image, labels) or (img_id, image, labels) tuples
        unary_model: Trained unary model
        config: Run configuration (candidates, caps, solver budget)

    Returns:
        SearchResult
    """
    config.validate()
    searcher = WeightSearcher.from_config(config)
    images, skipped = prepare_validation_images(items, unary_model, config, limit=searcher.max_images)
    return searcher.search(images, skipped=skipped)
