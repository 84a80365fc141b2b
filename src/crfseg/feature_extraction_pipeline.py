"""
Per-pixel feature extraction and batch processing pipeline.

This module provides:
- Vectorized operations (no Python loops over pixels)
- Cached intermediate computations (grey, Lab, gradients)
- Numba JIT compilation for the local entropy window
- Multiprocessing for batch operations

Feature vector layout is the concatenation of the enabled groups, in
FeatureInfo.FEATURE_GROUPS order:
1. color       RGB + CIELab                                   - 6 features
2. filterbank  Gaussian (L,a,b) x3 scales, LoG x4, DoG x/y x2  - 17 features
3. texture     local variance, local entropy, uniform LBP      - 3 features
4. gradient    magnitude, orientation, anisotropy              - 3 features
5. position    normalised row, column, distance to centre      - 3 features
6. region      grid cell mean of L, a, b, gradient magnitude   - 4 features
"""

import multiprocessing as mp
import os
from functools import partial
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import pandas as pd
from numba import jit, prange
from scipy import ndimage
from skimage.feature import local_binary_pattern
from tqdm import tqdm

from crfseg.config import SegmentationConfig
from crfseg.cste import CSVKeys, FeatureInfo, ProcessingConfig
from crfseg.errors import ConfigError
from crfseg.io_utils import load_image
from crfseg.logger import get_logger

log = get_logger("feature_extraction")

# ============================================================================
# CORE UTILITIES
# ============================================================================

def as_rgb_float(img: np.ndarray) -> np.ndarray:
    """
    Bring an image to float32 RGB in [0, 1].

    Accepts (H, W) grey or (H, W, 3) colour images, uint8 or float.
    """
    img = np.asarray(img)
    if img.ndim == 2:
        img = np.stack([img] * 3, axis=-1)
    if img.ndim != 3 or img.shape[2] not in (3, 4):
        raise ValueError(f"Expected an (H, W) or (H, W, 3) image, got shape {img.shape}")
    img = img[..., :3]

    if np.issubdtype(img.dtype, np.integer):
        img = img.astype(np.float32) / 255.0
    else:
        img = np.clip(img.astype(np.float32), 0.0, 1.0)

    return np.ascontiguousarray(img)


# ============================================================================
# COLOR SPACE CONVERSIONS
# ============================================================================

def to_grayscale(img: np.ndarray) -> np.ndarray:
    """
    Convert RGB image to grayscale using luminosity method
    Args: img: RGB image (H, W, 3)
    Returns: Grayscale image (H, W)
    """
    return np.dot(img[..., :3], [0.299, 0.587, 0.114]).astype(np.float32)


def rgb_to_lab(img: np.ndarray) -> np.ndarray:
    """
    RGB to CIELab conversion.

    Args:
        img: RGB image in [0, 1]

    Returns:
        Lab image with L in [0, 1] and a, b roughly in [-1, 1]
    """
    lab = cv2.cvtColor(np.ascontiguousarray(img, dtype=np.float32), cv2.COLOR_RGB2Lab)
    lab[..., 0] /= 100.0
    lab[..., 1:] /= 128.0
    return lab.astype(np.float32)


# ============================================================================
# FILTER BANK
# ============================================================================

def compute_filterbank(lab: np.ndarray, bandwidth: float) -> List[np.ndarray]:
    """
    Texton-style filter bank over the Lab image.

    - Gaussians at sigma, 2 sigma, 4 sigma on L, a, b   (9)
    - Laplacian of Gaussian at sigma..8 sigma on L       (4)
    - First derivative of Gaussian (x, y) at 2, 4 sigma  (4)

    Args:
        lab: Lab image (H, W, 3)
        bandwidth: Base sigma in pixels

    Returns:
        List of 17 response maps (H, W)
    """
    responses = []
    lightness = lab[..., 0]

    for scale in (1, 2, 4):
        sigma = bandwidth * scale
        for channel in range(3):
            responses.append(ndimage.gaussian_filter(lab[..., channel], sigma, mode="reflect"))

    for scale in (1, 2, 4, 8):
        responses.append(ndimage.gaussian_laplace(lightness, bandwidth * scale, mode="reflect"))

    for scale in (2, 4):
        sigma = bandwidth * scale
        responses.append(ndimage.gaussian_filter(lightness, sigma, order=(0, 1), mode="reflect"))
        responses.append(ndimage.gaussian_filter(lightness, sigma, order=(1, 0), mode="reflect"))

    return [r.astype(np.float32) for r in responses]


# ============================================================================
# TEXTURE FEATURES (VECTORIZED)
# ============================================================================

def compute_local_variance_fast(img: np.ndarray, window_size: int = 7) -> np.ndarray:
    """
    Vectorized local variance using box filters (no Python loops).

    Uses: Var(X) = E[X²] - E[X]²

    Args:
        img: Grayscale image
        window_size: Size of local window

    Returns:
        Local variance map
    """
    mean = cv2.boxFilter(img, -1, (window_size, window_size), normalize=True)
    mean_sq = cv2.boxFilter(img ** 2, -1, (window_size, window_size), normalize=True)

    variance = mean_sq - mean ** 2

    return np.maximum(variance, 0).astype(np.float32)


@jit(nopython=True, parallel=True, fastmath=True)
def _compute_entropy_numba(img_quantized: np.ndarray, window_size: int, n_bins: int) -> np.ndarray:
    """
    Numba-accelerated local entropy computation.

    Args:
        img_quantized: Quantized image (H, W) with values [0, n_bins - 1]
        window_size: Size of local window
        n_bins: Number of grey levels

    Returns:
        Local entropy map
    """
    h, w = img_quantized.shape
    entropy = np.zeros((h, w), dtype=np.float32)
    half_win = window_size // 2

    for i in prange(h):
        hist = np.zeros(n_bins, dtype=np.float32)
        for j in range(w):
            i_min = max(0, i - half_win)
            i_max = min(h, i + half_win + 1)
            j_min = max(0, j - half_win)
            j_max = min(w, j + half_win + 1)

            hist[:] = 0.0
            for ii in range(i_min, i_max):
                for jj in range(j_min, j_max):
                    hist[img_quantized[ii, jj]] += 1

            total = (i_max - i_min) * (j_max - j_min)
            ent = 0.0
            for k in range(n_bins):
                if hist[k] > 0:
                    p = hist[k] / total
                    ent -= p * np.log2(p)

            entropy[i, j] = ent

    return entropy


def compute_local_entropy_fast(img: np.ndarray, window_size: int = 7,
                               n_bins: int = ProcessingConfig.ENTROPY_BINS) -> np.ndarray:
    """
    Fast local entropy computation with Numba acceleration.

    Args:
        img: Grayscale image in [0, 1]
        window_size: Size of local window
        n_bins: Quantization levels

    Returns:
        Local entropy map, in bits
    """
    img_quantized = (np.clip(img, 0.0, 1.0) * (n_bins - 1)).astype(np.uint8)
    return _compute_entropy_numba(img_quantized, window_size, n_bins)


def compute_lbp(gray: np.ndarray) -> np.ndarray:
    """Uniform local binary pattern, scaled to [0, 1]."""
    points = ProcessingConfig.LBP_POINTS
    gray_u8 = (np.clip(gray, 0.0, 1.0) * 255).astype(np.uint8)
    lbp = local_binary_pattern(gray_u8, P=points, R=ProcessingConfig.LBP_RADIUS, method="uniform")
    # 'uniform' codes lie in [0, P + 1]
    return (lbp / (points + 1)).astype(np.float32)


# ============================================================================
# GRADIENT FEATURES
# ============================================================================

def compute_gradients_fast(gray: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Compute gradient magnitude and orientation efficiently.

    Args:
        gray: Grayscale image

    Returns:
        (sobel_x, sobel_y, gradient_magnitude)
    """
    sobel_x = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    sobel_y = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)

    gradient_mag = np.sqrt(sobel_x ** 2 + sobel_y ** 2)

    return sobel_x, sobel_y, gradient_mag


def compute_gradient_anisotropy_fast(sobel_x: np.ndarray, sobel_y: np.ndarray,
                                     window_size: int = 7) -> np.ndarray:
    """
    Gradient anisotropy from the local structure tensor.

    Anisotropy = (λ1 - λ2) / (λ1 + λ2 + ε)

    Returns:
        Anisotropy map in [0, 1]
    """
    Ixx = cv2.boxFilter(sobel_x * sobel_x, -1, (window_size, window_size), normalize=True)
    Iyy = cv2.boxFilter(sobel_y * sobel_y, -1, (window_size, window_size), normalize=True)
    Ixy = cv2.boxFilter(sobel_x * sobel_y, -1, (window_size, window_size), normalize=True)

    trace = Ixx + Iyy
    det = Ixx * Iyy - Ixy * Ixy
    discriminant = np.sqrt(np.maximum(trace ** 2 / 4 - det, 0))

    lambda1 = trace / 2 + discriminant
    lambda2 = trace / 2 - discriminant

    anisotropy = (lambda1 - lambda2) / (lambda1 + lambda2 + 1e-8)

    return np.clip(anisotropy, 0, 1).astype(np.float32)


# ============================================================================
# POSITION AND REGION FEATURES
# ============================================================================

def compute_position_features(shape: Tuple[int, int]) -> List[np.ndarray]:
    """Normalised row, column and distance to the image centre, all in [0, 1]."""
    H, W = shape
    rows = np.arange(H, dtype=np.float32) / max(H - 1, 1)
    cols = np.arange(W, dtype=np.float32) / max(W - 1, 1)
    row_map, col_map = np.meshgrid(rows, cols, indexing="ij")

    dist = np.sqrt((row_map - 0.5) ** 2 + (col_map - 0.5) ** 2) / np.sqrt(0.5)
    return [row_map, col_map, dist.astype(np.float32)]


def compute_grid_means(channels: List[np.ndarray], grid_spacing: int) -> List[np.ndarray]:
    """
    Mean of each channel over the grid cell containing each pixel.

    Args:
        channels: List of (H, W) maps
        grid_spacing: Cell size in pixels

    Returns:
        List of (H, W) maps, constant within each cell
    """
    H, W = channels[0].shape
    cell_rows = np.arange(H) // grid_spacing
    cell_cols = np.arange(W) // grid_spacing
    n_cell_cols = cell_cols[-1] + 1

    cell_id = (cell_rows[:, None] * n_cell_cols + cell_cols[None, :]).ravel()
    counts = np.bincount(cell_id)

    means = []
    for channel in channels:
        sums = np.bincount(cell_id, weights=channel.ravel().astype(np.float64))
        means.append((sums / counts)[cell_id].reshape(H, W).astype(np.float32))
    return means


# ============================================================================
# CACHED PREPROCESSING
# ============================================================================

class ImageCache:
    """Cache for intermediate computations to avoid recomputation."""

    def __init__(self, img: np.ndarray):
        self.img = as_rgb_float(img)

        self._gray = None
        self._lab = None
        self._gradients = None

    @property
    def gray(self) -> np.ndarray:
        """Lazy grayscale conversion."""
        if self._gray is None:
            self._gray = to_grayscale(self.img)
        return self._gray

    @property
    def lab(self) -> np.ndarray:
        """Lazy Lab conversion."""
        if self._lab is None:
            self._lab = rgb_to_lab(self.img)
        return self._lab

    @property
    def gradients(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Lazy gradient computation."""
        if self._gradients is None:
            self._gradients = compute_gradients_fast(self.gray)
        return self._gradients


# ============================================================================
# MAIN FEATURE EXTRACTION
# ============================================================================

class FeatureExtractor:
    """
    Computes a fixed-length feature vector for every pixel of an image.

    ! Stateless apart from its configuration, safe to share between workers
    ! The vector length D depends only on the enabled feature groups
    """

    def __init__(
        self,
        feature_groups: Optional[List[str]] = None,
        filter_bandwidth: float = ProcessingConfig.FILTER_BANDWIDTH,
        grid_spacing: int = ProcessingConfig.GRID_SPACING,
        window_size: int = ProcessingConfig.WINDOW_SIZE_TEXTURE,
    ):
        """
        Args:
            feature_groups: Enabled groups (default FeatureInfo.DEFAULT_GROUPS)
            filter_bandwidth: Base sigma of the filter bank, must be > 0 if enabled
            grid_spacing: Cell size of region features, must be >= 1 if enabled
            window_size: Window of the texture and anisotropy features

        Raises:
            ConfigError: If a feature group is missing a required parameter
        """
        if feature_groups is None:
            feature_groups = list(FeatureInfo.DEFAULT_GROUPS)

        if not feature_groups:
            raise ConfigError("At least one feature group must be enabled")
        unknown = [g for g in feature_groups if g not in FeatureInfo.GROUP_WIDTHS]
        if unknown:
            raise ConfigError(f"Unknown feature group(s): {unknown}")
        if FeatureInfo.FILTERBANK in feature_groups and not filter_bandwidth > 0:
            raise ConfigError(f"filter_bandwidth must be > 0, got {filter_bandwidth}")
        if FeatureInfo.REGION in feature_groups and grid_spacing < 1:
            raise ConfigError(f"grid_spacing must be >= 1, got {grid_spacing}")
        if window_size < 1 or window_size % 2 == 0:
            raise ConfigError(f"window_size must be a positive odd integer, got {window_size}")

        # Fixed group order regardless of the order given
        self.feature_groups = [g for g in FeatureInfo.FEATURE_GROUPS if g in feature_groups]
        self.filter_bandwidth = float(filter_bandwidth)
        self.grid_spacing = int(grid_spacing)
        self.window_size = int(window_size)

    @classmethod
    def from_config(cls, config: SegmentationConfig) -> "FeatureExtractor":
        return cls(
            feature_groups=config.feature_groups,
            filter_bandwidth=config.filter_bandwidth,
            grid_spacing=config.grid_spacing,
        )

    @property
    def num_features(self) -> int:
        return sum(FeatureInfo.GROUP_WIDTHS[g] for g in self.feature_groups)

    def feature_slices(self) -> Dict[str, slice]:
        """Position of each enabled group in the feature vector."""
        slices = {}
        start = 0
        for group in self.feature_groups:
            width = FeatureInfo.GROUP_WIDTHS[group]
            slices[group] = slice(start, start + width)
            start += width
        return slices

    def _group_maps(self, group: str, cache: ImageCache) -> List[np.ndarray]:
        if group == FeatureInfo.COLOR:
            return [cache.img[..., c] for c in range(3)] + [cache.lab[..., c] for c in range(3)]

        if group == FeatureInfo.FILTERBANK:
            return compute_filterbank(cache.lab, self.filter_bandwidth)

        if group == FeatureInfo.TEXTURE:
            return [
                compute_local_variance_fast(cache.gray, window_size=self.window_size),
                compute_local_entropy_fast(cache.gray, window_size=self.window_size),
                compute_lbp(cache.gray),
            ]

        if group == FeatureInfo.GRADIENT:
            sobel_x, sobel_y, gradient_mag = cache.gradients
            # Orientation normalised to [0, 1]
            gradient_orient = (np.arctan2(sobel_y, sobel_x) + np.pi) / (2 * np.pi)
            return [
                gradient_mag,
                gradient_orient.astype(np.float32),
                compute_gradient_anisotropy_fast(sobel_x, sobel_y, window_size=self.window_size),
            ]

        if group == FeatureInfo.POSITION:
            return compute_position_features(cache.gray.shape)

        if group == FeatureInfo.REGION:
            lab = cache.lab
            channels = [lab[..., 0], lab[..., 1], lab[..., 2], cache.gradients[2]]
            return compute_grid_means(channels, self.grid_spacing)

        raise ConfigError(f"Unknown feature group: {group}")

    def extract(self, img: np.ndarray) -> np.ndarray:
        """
        Extract the feature tensor of an image.

        Args:
            img: RGB image (H, W, 3) or grey image (H, W)

        Returns:
            Feature tensor (H, W, D), float32
        """
        cache = ImageCache(img)
        H, W = cache.gray.shape
        features = np.empty((H, W, self.num_features), dtype=np.float32)

        for group, group_slice in self.feature_slices().items():
            maps = self._group_maps(group, cache)
            for offset, feature_map in enumerate(maps):
                features[..., group_slice.start + offset] = feature_map

        return features

    def extract_pixels(self, img: np.ndarray) -> np.ndarray:
        """Feature matrix (H*W, D), rows in raster order."""
        features = self.extract(img)
        return features.reshape(-1, features.shape[-1])


def extract_features(img: np.ndarray, config: SegmentationConfig,
                     save_path: Optional[str] = None) -> np.ndarray:
    """
    Extract features of one image with the feature options of a run config.

    Args:
        img: RGB image (H, W, 3)
        config: Run configuration
        save_path: If given, save features to disk (.npy)

    Returns:
        Feature tensor (H, W, D)
    """
    features = FeatureExtractor.from_config(config).extract(img)

    if save_path is not None:
        os.makedirs(os.path.dirname(save_path) or ".", exist_ok=True)
        np.save(save_path, features)

    return features


# ============================================================================
# BATCH PROCESSING
# ============================================================================

def _process_single_image(row: dict, config: SegmentationConfig) -> tuple:
    """
    Worker function for processing a single image.
    Must be at module level for multiprocessing pickling.

    Returns:
        (success: bool, error_message: str or None)
    """
    img_path = row[CSVKeys.IMAGE_PATH]
    feature_path = row["feature_path"]

    try:
        img = load_image(img_path)
        extract_features(img, config, save_path=feature_path)
        return True, None

    except Exception as e:
        return False, f"Error processing {img_path}: {str(e)}"


def extract_features_batch(
    mapping_csv_path: str,
    feature_dir: str,
    config: SegmentationConfig,
) -> pd.DataFrame:
    """
    Extract features for multiple images using multiprocessing.

    Reads a CSV file with columns img_id, img_path, label_path.
    Each image is processed independently and features are saved as .npy files.
    Images causing errors are skipped.

    Returns:
        The mapping with an added feature_path column, restricted to successful images
    """
    log.info(f"Reading CSV mapping from {mapping_csv_path}")
    df = pd.read_csv(mapping_csv_path)
    total_images = len(df)

    log.info(f"Found {total_images} images to process")

    if total_images == 0:
        log.warning("No images found in CSV, exiting.")
        return df

    rows = df.to_dict(orient="records")
    for row in rows:
        row["feature_path"] = os.path.join(feature_dir, f"{row[CSVKeys.IMAGE_ID]}.npy")

    worker_fn = partial(_process_single_image, config=config)

    if config.n_jobs > 1:
        with mp.Pool(processes=config.n_jobs) as pool:
            results = list(
                tqdm(pool.imap(worker_fn, rows), total=total_images, desc="Extracting features")
            )
    else:
        results = [worker_fn(row) for row in tqdm(rows, desc="Extracting features")]

    success_count = 0
    kept = []
    for row, (success, error_msg) in zip(rows, results):
        if success:
            success_count += 1
            kept.append(row)
        elif error_msg:
            log.warning(error_msg)

    log.info("=" * 60)
    log.info("Feature extraction completed")
    log.info(f"Total images: {total_images}")
    log.info(f"Successfully processed: {success_count}")
    log.info(f"Failed / Skipped: {total_images - success_count}")
    log.info("=" * 60)

    return pd.DataFrame(kept)
