"""Abstract base class for pixel probability models."""

import json
from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np

from crfseg.config import SegmentationConfig
from crfseg.logger import get_logger

log = get_logger("model_base")

CONFIG_FILENAME = "config.json"


class BasePixelModel(ABC):
    """
    Model producing a class distribution for every pixel.

    ! The run configuration is saved with the model, so a loaded model
    ! extracts the same D features and predicts the same K classes
    """

    def __init__(self, config: SegmentationConfig, model_name: str):
        """
        Args:
            config: Validated run configuration
            model_name: Name identifier for reports
        """
        self.segmentation_config = config
        self.model_name = model_name

    @property
    def num_classes(self) -> int:
        return self.segmentation_config.num_classes

    @abstractmethod
    def predict_proba(self, features: np.ndarray) -> np.ndarray:
        """
        Per-pixel class probabilities.

        Args:
            features: Feature tensor (H, W, D) or matrix (N, D)

        Returns:
            Probabilities with the last axis replaced by K, summing to 1
        """

    @abstractmethod
    def save(self, save_dir: str) -> None:
        """Write every artifact of the model under save_dir."""

    @classmethod
    @abstractmethod
    def load(cls, save_dir: str) -> "BasePixelModel":
        """Rebuild a model written by save."""

    def predict(self, features: np.ndarray) -> np.ndarray:
        """Per-pixel argmax labeling."""
        return np.argmax(self.predict_proba(features), axis=-1)

    def _save_config(self, save_dir: str) -> Path:
        save_path = Path(save_dir)
        save_path.mkdir(parents=True, exist_ok=True)

        config_path = save_path / CONFIG_FILENAME
        with open(config_path, 'w') as f:
            json.dump(self.segmentation_config.to_dict(), f, indent=2)

        log.info(f"Saved config to {config_path}")
        return config_path

    @staticmethod
    def _load_config(save_dir: str) -> SegmentationConfig:
        """
        Read and validate the configuration saved next to a model.

        Raises:
            FileNotFoundError: If the model directory holds no configuration
            ConfigError: If the stored configuration is invalid
        """
        config_path = Path(save_dir) / CONFIG_FILENAME
        if not config_path.exists():
            raise FileNotFoundError(f"Model config not found: {config_path}")
        with open(config_path, 'r') as f:
            values = json.load(f)

        log.info(f"Loaded config from {config_path}")
        return SegmentationConfig.from_dict(values)
