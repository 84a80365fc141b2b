"""
Contrast-sensitive pairwise potential.

For adjacent pixels i, j:
    cost(i, j) = λ · exp(-β ‖c_i - c_j‖²) · [l_i ≠ l_j]

with β = 1 / (2 · mean ‖c_i - c_j‖²) over all edges of the image.
Diagonal edges (8-connectivity) are scaled by 1/√2.

Edges are stored per direction as (H, W) maps: the value at (r, c) is the
edge between (r, c) and (r + dr, c + dc), zero when the neighbour falls
outside the image.
"""

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import numpy as np

from crfseg.cste import CRFConfig
from crfseg.errors import ConfigError, DimensionMismatchError
from crfseg.feature_extraction_pipeline import as_rgb_float, rgb_to_lab
from crfseg.logger import get_logger

log = get_logger("pairwise")

Offset = Tuple[int, int]

DIRECTIONS_4: Tuple[Offset, ...] = ((0, 1), (1, 0))
DIRECTIONS_8: Tuple[Offset, ...] = DIRECTIONS_4 + ((1, 1), (1, -1))


def directions_for(connectivity: int) -> Tuple[Offset, ...]:
    if connectivity == 4:
        return DIRECTIONS_4
    if connectivity == 8:
        return DIRECTIONS_8
    raise ConfigError(f"connectivity must be 4 or 8, got {connectivity}")


def edge_slices(shape: Tuple[int, int], offset: Offset) -> Tuple[Tuple[slice, slice], Tuple[slice, slice]]:
    """
    Slices selecting the source and target pixels of every in-bounds edge.

    Returns:
        (source_slices, target_slices), each a (rows, cols) pair
    """
    H, W = shape
    dr, dc = offset
    rows_src, rows_dst = slice(0, H - dr), slice(dr, H)
    if dc >= 0:
        cols_src, cols_dst = slice(0, W - dc), slice(dc, W)
    else:
        cols_src, cols_dst = slice(-dc, W), slice(0, W + dc)
    return (rows_src, cols_src), (rows_dst, cols_dst)


@dataclass(frozen=True)
class ContrastPotential:
    """Per-direction contrast maps of one image, before scaling by λ."""

    shape: Tuple[int, int]
    directions: Tuple[Offset, ...]
    contrast: Tuple[np.ndarray, ...]
    beta: float

    def __post_init__(self):
        if len(self.directions) != len(self.contrast):
            raise ValueError("One contrast map is needed per direction")
        for contrast_map in self.contrast:
            if contrast_map.shape != tuple(self.shape):
                raise DimensionMismatchError(self.shape, contrast_map.shape, what="contrast map")
            contrast_map.flags.writeable = False

    @property
    def connectivity(self) -> int:
        return 2 * len(self.directions)

    def edge_costs(self, weight: float) -> List[np.ndarray]:
        """Disagreement cost of every edge for a pairwise weight λ."""
        if weight < 0:
            raise ConfigError(f"Pairwise weight must be >= 0, got {weight}")
        return [weight * contrast_map for contrast_map in self.contrast]

    def disagreement_cost(self, labeling: np.ndarray, weight: float) -> float:
        """Σ λ · contrast over edges whose endpoints carry different labels."""
        labeling = np.asarray(labeling)
        if labeling.shape != tuple(self.shape):
            raise DimensionMismatchError(self.shape, labeling.shape, what="labeling")
        if weight == 0:
            return 0.0

        total = 0.0
        for offset, contrast_map in zip(self.directions, self.contrast):
            src, dst = edge_slices(self.shape, offset)
            differ = labeling[src] != labeling[dst]
            total += float(contrast_map[src][differ].sum())
        return weight * total


def compute_contrast(
    img: np.ndarray,
    connectivity: int = CRFConfig.CONNECTIVITY,
    color_space: str = CRFConfig.COLOR_SPACE,
) -> ContrastPotential:
    """
    Build the contrast maps of an image.

    ! β is a fixed statistic of the image, not a learned parameter
    ! A constant image has β = 0, every edge then costs exactly λ (times 1/√2 on diagonals)

    Args:
        img: RGB image (H, W, 3) or grey (H, W)
        connectivity: 4 or 8
        color_space: 'rgb' or 'lab'

    Returns:
        ContrastPotential
    """
    directions = directions_for(connectivity)
    rgb = as_rgb_float(img)
    if color_space == "lab":
        colors = rgb_to_lab(rgb).astype(np.float64)
    elif color_space == "rgb":
        colors = rgb.astype(np.float64)
    else:
        raise ConfigError(f"color_space must be 'rgb' or 'lab', got '{color_space}'")

    shape = colors.shape[:2]

    sq_diffs = []
    total, count = 0.0, 0
    for offset in directions:
        src, dst = edge_slices(shape, offset)
        diff = np.sum((colors[src] - colors[dst]) ** 2, axis=-1)
        sq_diffs.append(diff)
        total += float(diff.sum())
        count += diff.size

    mean_sq = total / count if count else 0.0
    beta = 1.0 / (2.0 * mean_sq) if mean_sq > 0 else 0.0

    contrast = []
    for offset, diff in zip(directions, sq_diffs):
        src, _ = edge_slices(shape, offset)
        scale = 1.0 / math.sqrt(2.0) if offset[0] != 0 and offset[1] != 0 else 1.0
        contrast_map = np.zeros(shape, dtype=np.float64)
        contrast_map[src] = scale * np.exp(-beta * diff)
        contrast.append(contrast_map)

    return ContrastPotential(
        shape=(int(shape[0]), int(shape[1])),
        directions=directions,
        contrast=tuple(contrast),
        beta=beta,
    )


# ============================================================================
# PERSISTENCE
# ============================================================================

def save_pairwise_weight(weight: float, model_dir: str) -> None:
    """Store the selected λ next to the unary model."""
    if weight < 0:
        raise ConfigError(f"Pairwise weight must be >= 0, got {weight}")
    path = Path(model_dir) / "pairwise.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({"pairwise_weight": float(weight)}, f, indent=2)
    log.info(f"Saved pairwise weight {weight} to {path}")


def load_pairwise_weight(model_dir: str) -> float:
    path = Path(model_dir) / "pairwise.json"
    if not path.exists():
        raise FileNotFoundError(f"Pairwise weight not found: {path}. Run the weight search first.")
    with open(path, "r") as f:
        weight = float(json.load(f)["pairwise_weight"])
    if weight < 0:
        raise ConfigError(f"Stored pairwise weight must be >= 0, got {weight}")
    return weight
