"""
Constants and default configuration for the pixel CRF segmentation pipeline.
"""

from typing import Dict, List, Tuple

# ============================================================================
# GENERAL CONFIGURATION
# ============================================================================
class GeneralConfig:
    """General project configuration."""
    RANDOM_SEED: int = 42
    LOG_TO_FILE: bool = False


class GeneralPath:
    """General project paths."""
    LOG_PATH: str = r".logs/"


class DataPath:
    """Data directory paths."""
    IMG_TRAIN: str = r"data/images/train/"
    LABEL_TRAIN: str = r"data/labels/train/"

    MODEL_DIR: str = r"data/models/"
    FEATURE_DIR: str = r"data/features/"

    CSV_MAPPING_TRAIN: str = r"data/metadata/train_mapping.csv"
    CSV_MAPPING_VAL: str = r"data/metadata/val_mapping.csv"
    CSV_MAPPING_TEST: str = r"data/metadata/test_mapping.csv"


class ResultPath:
    """Result output paths."""
    PREDICTION_PATH: str = r"data/results/predictions/"
    REPORT_PATH: str = r"data/results/reports/"
    EVALUATION_CSV_PATH: str = r"data/results/predictions_metrics.csv"


class CSVKeys:
    """Keys for CSV mapping files."""
    IMAGE_ID: str = "img_id"
    IMAGE_PATH: str = "img_path"
    LABEL_PATH: str = "label_path"


# ============================================================================
# LABELS
# ============================================================================

class LabelInfo:
    """Label conventions."""

    VOID_LABEL: int = -1  # Ignored in training and scoring
    NUM_CLASSES: int = 21

    # Extensions accepted for ground truth files
    TEXT_LABEL_EXT: Tuple[str, ...] = (".txt",)
    RASTER_LABEL_EXT: Tuple[str, ...] = (".png", ".tif", ".tiff")
    IMAGE_EXT: Tuple[str, ...] = (".png", ".jpg", ".jpeg", ".bmp")


# ============================================================================
# FEATURES
# ============================================================================

class FeatureInfo:
    """
    Feature groups and their widths in the per-pixel feature vector.

    The vector is the concatenation of the enabled groups in FEATURE_GROUPS order.
    """

    COLOR: str = "color"            # RGB + CIELab
    FILTERBANK: str = "filterbank"  # Gaussian, LoG, derivative of Gaussian
    TEXTURE: str = "texture"        # Local variance, local entropy, LBP
    GRADIENT: str = "gradient"      # Magnitude, orientation, anisotropy
    POSITION: str = "position"      # Normalised row/col, distance to centre
    REGION: str = "region"          # Grid cell means

    FEATURE_GROUPS: List[str] = [COLOR, FILTERBANK, TEXTURE, GRADIENT, POSITION, REGION]

    GROUP_WIDTHS: Dict[str, int] = {
        COLOR: 6,
        FILTERBANK: 17,
        TEXTURE: 3,
        GRADIENT: 3,
        POSITION: 3,
        REGION: 4,
    }

    DEFAULT_GROUPS: List[str] = [COLOR, FILTERBANK, TEXTURE, GRADIENT, POSITION]


class ProcessingConfig:
    """Default parameters for feature extraction."""

    # Filter bank base bandwidth (sigma, in pixels)
    FILTER_BANDWIDTH: float = 1.0
    # Grid cell size for region features
    GRID_SPACING: int = 8

    # Local window sizes
    WINDOW_SIZE_TEXTURE: int = 7
    LBP_POINTS: int = 8
    LBP_RADIUS: int = 1
    ENTROPY_BINS: int = 16


# ============================================================================
# UNARY MODEL
# ============================================================================

class BoostingConfig:
    """Defaults for one-vs-all boosted decision stumps."""

    NUM_ROUNDS: int = 50
    SPLIT_CRITERION: str = "misclass"
    SPLIT_CRITERIA: Tuple[str, ...] = ("misclass", "gini", "entropy")
    # Keep one pixel per SUB_SAMPLE x SUB_SAMPLE block
    SUB_SAMPLE: int = 4
    ERROR_EPS: float = 1e-10


class CalibrationConfig:
    """Defaults for the multiclass logistic regression calibrator."""

    MAX_ITER: int = 500
    C: float = 1.0
    HOLDOUT_FRACTION: float = 0.2


# ============================================================================
# CRF
# ============================================================================

class CRFConfig:
    """Defaults for the pairwise term, weight search and MAP inference."""

    CONNECTIVITY: int = 8
    COLOR_SPACE: str = "lab"
    PAIRWISE_CANDIDATES: List[float] = [0.0, 0.25, 0.5, 1.0, 2.0, 4.0, 8.0]

    # Validation policy for the weight search
    MAX_VALIDATION_IMAGES: int = 100
    MIN_VALIDATION_IMAGES: int = 1

    # Solver budget
    MAX_ITERATIONS: int = 10
    TIME_LIMIT: float = 60.0  # seconds, per image
    TOLERANCE: float = 1e-6

    # Floor for probabilities before taking -log
    PROB_EPS: float = 1e-10
