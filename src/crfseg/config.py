"""
Validated run configuration.

A SegmentationConfig is built from the defaults in cste.py, optionally
overridden from a dict or a JSON file, and validated once before any
training or inference starts.
"""

import json
import math
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List

from crfseg.cste import (
    BoostingConfig,
    CalibrationConfig,
    CRFConfig,
    FeatureInfo,
    GeneralConfig,
    LabelInfo,
    ProcessingConfig,
)
from crfseg.errors import ConfigError
from crfseg.logger import get_logger

log = get_logger("config")


@dataclass(frozen=True)
class SegmentationConfig:
    """All knobs of a training / inference run."""

    num_classes: int = LabelInfo.NUM_CLASSES
    void_label: int = LabelInfo.VOID_LABEL

    # Features
    feature_groups: List[str] = field(default_factory=lambda: list(FeatureInfo.DEFAULT_GROUPS))
    filter_bandwidth: float = ProcessingConfig.FILTER_BANDWIDTH
    grid_spacing: int = ProcessingConfig.GRID_SPACING

    # Boosting
    num_rounds: int = BoostingConfig.NUM_ROUNDS
    split_criterion: str = BoostingConfig.SPLIT_CRITERION
    sub_sample: int = BoostingConfig.SUB_SAMPLE

    # Calibration
    calibration_holdout: float = CalibrationConfig.HOLDOUT_FRACTION
    calibration_max_iter: int = CalibrationConfig.MAX_ITER
    calibration_c: float = CalibrationConfig.C

    # Pairwise / search
    pairwise_candidates: List[float] = field(
        default_factory=lambda: list(CRFConfig.PAIRWISE_CANDIDATES)
    )
    max_validation_images: int = CRFConfig.MAX_VALIDATION_IMAGES
    min_validation_images: int = CRFConfig.MIN_VALIDATION_IMAGES
    connectivity: int = CRFConfig.CONNECTIVITY
    color_space: str = CRFConfig.COLOR_SPACE

    # Solver budget
    max_iterations: int = CRFConfig.MAX_ITERATIONS
    time_limit: float = CRFConfig.TIME_LIMIT
    tolerance: float = CRFConfig.TOLERANCE

    # Runtime
    n_jobs: int = 1
    random_seed: int = GeneralConfig.RANDOM_SEED

    def validate(self) -> "SegmentationConfig":
        """
        Check the configuration for consistency.

        Raises:
            ConfigError: On the first inconsistent value found
        """
        if self.num_classes < 2:
            raise ConfigError(f"num_classes must be >= 2, got {self.num_classes}")
        if 0 <= self.void_label < self.num_classes:
            raise ConfigError(
                f"void_label {self.void_label} collides with a class id in [0, {self.num_classes})"
            )

        if not self.feature_groups:
            raise ConfigError("At least one feature group must be enabled")
        unknown = [g for g in self.feature_groups if g not in FeatureInfo.GROUP_WIDTHS]
        if unknown:
            raise ConfigError(
                f"Unknown feature group(s) {unknown}, expected a subset of {FeatureInfo.FEATURE_GROUPS}"
            )
        if len(set(self.feature_groups)) != len(self.feature_groups):
            raise ConfigError(f"Duplicate feature groups in {self.feature_groups}")
        if FeatureInfo.FILTERBANK in self.feature_groups and not self.filter_bandwidth > 0:
            raise ConfigError(
                f"Feature group '{FeatureInfo.FILTERBANK}' needs filter_bandwidth > 0, got {self.filter_bandwidth}"
            )
        if FeatureInfo.REGION in self.feature_groups and self.grid_spacing < 1:
            raise ConfigError(
                f"Feature group '{FeatureInfo.REGION}' needs grid_spacing >= 1, got {self.grid_spacing}"
            )

        if self.num_rounds < 1:
            raise ConfigError(f"num_rounds must be >= 1, got {self.num_rounds}")
        if self.split_criterion not in BoostingConfig.SPLIT_CRITERIA:
            raise ConfigError(
                f"split_criterion must be one of {BoostingConfig.SPLIT_CRITERIA}, got '{self.split_criterion}'"
            )
        if self.sub_sample < 1:
            raise ConfigError(f"sub_sample must be >= 1, got {self.sub_sample}")

        if not 0.0 <= self.calibration_holdout < 1.0:
            raise ConfigError(
                f"calibration_holdout must be in [0, 1), got {self.calibration_holdout}"
            )
        if self.calibration_max_iter < 1:
            raise ConfigError(f"calibration_max_iter must be >= 1, got {self.calibration_max_iter}")
        if not self.calibration_c > 0:
            raise ConfigError(f"calibration_c must be > 0, got {self.calibration_c}")

        if not self.pairwise_candidates:
            raise ConfigError("pairwise_candidates must not be empty")
        for weight in self.pairwise_candidates:
            if not math.isfinite(weight) or weight < 0:
                raise ConfigError(f"Pairwise weights must be finite and >= 0, got {weight}")
        if self.max_validation_images < 1:
            raise ConfigError(
                f"max_validation_images must be >= 1, got {self.max_validation_images}"
            )
        if self.min_validation_images < 1:
            raise ConfigError(
                f"min_validation_images must be >= 1, got {self.min_validation_images}"
            )
        if self.connectivity not in (4, 8):
            raise ConfigError(f"connectivity must be 4 or 8, got {self.connectivity}")
        if self.color_space not in ("rgb", "lab"):
            raise ConfigError(f"color_space must be 'rgb' or 'lab', got '{self.color_space}'")

        if self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not self.time_limit > 0:
            raise ConfigError(f"time_limit must be > 0, got {self.time_limit}")
        if self.tolerance < 0:
            raise ConfigError(f"tolerance must be >= 0, got {self.tolerance}")
        if self.n_jobs < 1:
            raise ConfigError(f"n_jobs must be >= 1, got {self.n_jobs}")

        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_overrides(self, **kwargs) -> "SegmentationConfig":
        """Return a validated copy with some fields replaced."""
        return replace(self, **kwargs).validate()

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "SegmentationConfig":
        """
        Build and validate a configuration from a plain dict.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration key(s): {unknown}")
        try:
            config = cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        return config.validate()


def load_config(config_path: str) -> SegmentationConfig:
    """
    Load a configuration from a JSON file.

    Args:
        config_path: Path to a JSON object whose keys are SegmentationConfig fields

    Returns:
        Validated SegmentationConfig
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            values = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Malformed configuration file {config_path}: {e}") from e

    if not isinstance(values, dict):
        raise ConfigError(f"Configuration file {config_path} must hold a JSON object")

    config = SegmentationConfig.from_dict(values)
    log.info(f"Loaded config from {config_path}")
    return config


def save_config(config: SegmentationConfig, config_path: str) -> None:
    """Write a configuration to JSON."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    log.info(f"Saved config to {config_path}")
