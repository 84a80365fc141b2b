"""
Inference entry points: single image, batch over a mapping CSV, evaluation.
"""

import multiprocessing as mp
import os
from functools import partial
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from crfseg.class_models.unary_model import UnaryModel
from crfseg.config import SegmentationConfig
from crfseg.crf_inference import CRFInferenceEngine, InferenceResult
from crfseg.cste import CSVKeys, LabelInfo
from crfseg.errors import ConfigError, DimensionMismatchError
from crfseg.evaluation import ConfusionMatrix, score
from crfseg.io_utils import load_image, load_labels, save_labels
from crfseg.logger import get_logger
from crfseg.pairwise import compute_contrast

log = get_logger("inference")


def infer_with_details(
    image: np.ndarray,
    unary_model: UnaryModel,
    weight: float,
    config: Optional[SegmentationConfig] = None,
) -> InferenceResult:
    """
    MAP labeling of one image, with energy trace and solver status.

    Args:
        image: RGB image (H, W, 3) in [0, 1]
        unary_model: Trained unary model
        weight: Pairwise weight λ >= 0
        config: Pairwise and solver options, default the model's own configuration

    Returns:
        InferenceResult
    """
    if config is None:
        config = unary_model.segmentation_config
    if weight < 0:
        raise ConfigError(f"Pairwise weight must be >= 0, got {weight}")

    probabilities = unary_model.image_probabilities(image)
    contrast = compute_contrast(image, config.connectivity, config.color_space)
    return CRFInferenceEngine.from_config(config).infer(probabilities, contrast, weight)


def infer(
    image: np.ndarray,
    unary_model: UnaryModel,
    weight: float,
    config: Optional[SegmentationConfig] = None,
) -> np.ndarray:
    """Read-only (H, W) labeling of one image."""
    return infer_with_details(image, unary_model, weight, config).labeling


def evaluate(
    predicted: np.ndarray,
    ground_truth: np.ndarray,
    num_classes: int,
    void_label: int = LabelInfo.VOID_LABEL,
) -> Tuple[float, ConfusionMatrix]:
    """(accuracy, confusion matrix) of one prediction, void pixels excluded."""
    return score(predicted, ground_truth, num_classes, void_label)


# ============================================================================
# BATCH PROCESSING
# ============================================================================

def _infer_single_image(
    row: dict,
    unary_model: UnaryModel,
    weight: float,
    config: SegmentationConfig,
    output_dir: Optional[str],
) -> Tuple[str, Optional[np.ndarray], Optional[str]]:
    """
    Worker function for one image.
    Must be at module level for multiprocessing pickling.

    Returns:
        (img_id, labeling or None, error message or None)
    """
    img_id = str(row[CSVKeys.IMAGE_ID])
    try:
        img = load_image(row[CSVKeys.IMAGE_PATH])
        labeling = infer(img, unary_model, weight, config)
        if output_dir is not None:
            save_labels(labeling, os.path.join(output_dir, f"{img_id}_labels.png"))
        return img_id, labeling, None

    except Exception as e:
        return img_id, None, f"Error processing {row[CSVKeys.IMAGE_PATH]}: {str(e)}"


def infer_batch(
    mapping_csv_path: str,
    unary_model: UnaryModel,
    weight: float,
    config: Optional[SegmentationConfig] = None,
    output_dir: Optional[str] = None,
) -> List[Tuple[str, Optional[np.ndarray], Optional[str]]]:
    """
    Run inference on every image of a mapping CSV.

    A failing image never stops the batch: its entry carries the error
    message and no labeling. Results keep the CSV order.

    Args:
        mapping_csv_path: CSV with img_id and img_path columns
        unary_model: Trained unary model
        weight: Pairwise weight λ
        config: Run configuration, default the model's
        output_dir: If given, labelings are saved there as 16-bit PNG

    Returns:
        List of (img_id, labeling or None, error or None)
    """
    if config is None:
        config = unary_model.segmentation_config

    df = pd.read_csv(mapping_csv_path)
    required_columns = {CSVKeys.IMAGE_ID, CSVKeys.IMAGE_PATH}
    if not required_columns.issubset(df.columns):
        raise ValueError(f"CSV must contain columns: {required_columns}")

    if output_dir is not None:
        os.makedirs(output_dir, exist_ok=True)

    rows = df.to_dict(orient="records")
    worker_fn = partial(
        _infer_single_image,
        unary_model=unary_model,
        weight=weight,
        config=config,
        output_dir=output_dir,
    )

    if config.n_jobs > 1:
        with mp.Pool(processes=config.n_jobs) as pool:
            results = list(tqdm(pool.imap(worker_fn, rows), total=len(rows), desc="CRF inference"))
    else:
        results = [worker_fn(row) for row in tqdm(rows, desc="CRF inference")]

    failed = 0
    for _, labeling, error_msg in results:
        if labeling is None:
            failed += 1
            log.warning(error_msg)

    log.info(f"Inference completed: {len(results) - failed}/{len(results)} images ({failed} failed)")
    return results


def evaluate_mapping(
    mapping_csv_path: str,
    unary_model: UnaryModel,
    weight: float,
    config: Optional[SegmentationConfig] = None,
    output_dir: Optional[str] = None,
    metrics_csv_path: Optional[str] = None,
) -> Tuple[ConfusionMatrix, pd.DataFrame]:
    """
    Infer and score every labeled image of a mapping CSV.

    Args:
        mapping_csv_path: CSV with img_id, img_path and label_path columns
        unary_model: Trained unary model
        weight: Pairwise weight λ
        config: Run configuration, default the model's
        output_dir: If given, predicted labelings are saved there
        metrics_csv_path: If given, per-image metrics are written there

    Returns:
        (accumulated confusion matrix, per-image metrics)
    """
    if config is None:
        config = unary_model.segmentation_config

    df = pd.read_csv(mapping_csv_path)
    if CSVKeys.LABEL_PATH not in df.columns:
        raise ValueError(f"CSV must contain column: {CSVKeys.LABEL_PATH}")
    label_paths: Dict[str, str] = {
        str(img_id): path for img_id, path in zip(df[CSVKeys.IMAGE_ID], df[CSVKeys.LABEL_PATH])
    }

    results = infer_batch(mapping_csv_path, unary_model, weight, config, output_dir)

    matrix = ConfusionMatrix(config.num_classes, config.void_label)
    records = []
    for img_id, labeling, error_msg in results:
        record = {CSVKeys.IMAGE_ID: img_id, "accuracy": np.nan, "scored_pixels": 0, "error": error_msg}
        if labeling is not None:
            try:
                ground_truth = load_labels(label_paths[img_id], void_label=config.void_label)
                counts = matrix.accumulate(labeling, ground_truth)
                total = int(counts.sum())
                record["scored_pixels"] = total
                record["accuracy"] = np.trace(counts) / total if total else np.nan
            except (FileNotFoundError, DimensionMismatchError, ValueError) as e:
                record["error"] = str(e)
                log.warning(f"Could not score {img_id}: {e}")
        records.append(record)

    metrics = pd.DataFrame(records)
    if metrics_csv_path is not None:
        os.makedirs(os.path.dirname(metrics_csv_path) or ".", exist_ok=True)
        metrics.to_csv(metrics_csv_path, index=False)
        log.info(f"Saved per-image metrics to {metrics_csv_path}")

    log.info(f"Overall accuracy: {matrix.accuracy:.4f} over {matrix.total:,} pixels")
    return matrix, metrics
