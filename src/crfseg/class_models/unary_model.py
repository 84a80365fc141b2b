"""
Unary potential model: K boosted ensembles followed by a calibrator.

Saved layout:
    <model_dir>/config.json          run configuration (K, features, ...)
    <model_dir>/ensemble_<k>.pkl     one BoostedEnsemble per label
    <model_dir>/calibration.pkl      CalibrationModel
"""

import pickle
from pathlib import Path
from typing import List, Sequence

import numpy as np

from crfseg.class_models.base_model import BasePixelModel
from crfseg.class_models.boosted_model import BoostedEnsemble, score_all_labels
from crfseg.class_models.calibration_model import CalibrationModel
from crfseg.config import SegmentationConfig
from crfseg.errors import ConfigError, DimensionMismatchError
from crfseg.feature_extraction_pipeline import FeatureExtractor
from crfseg.logger import get_logger

log = get_logger("unary_model")


class UnaryModel(BasePixelModel):
    """
    Boosted one-vs-all scores calibrated into per-pixel distributions.

    ! Read-only after construction, shared freely between inference calls
    """

    def __init__(
        self,
        ensembles: Sequence[BoostedEnsemble],
        calibration: CalibrationModel,
        config: SegmentationConfig,
    ):
        super().__init__(config, "BoostedUnary")

        self.ensembles: List[BoostedEnsemble] = list(ensembles)
        self.calibration = calibration
        self.feature_extractor = FeatureExtractor.from_config(config)

        #! Every ensemble and the calibrator share the same D and K
        if len(self.ensembles) != self.num_classes:
            raise ConfigError(f"Expected {self.num_classes} ensembles, got {len(self.ensembles)}")
        if calibration.num_classes != self.num_classes:
            raise ConfigError(
                f"Calibration has {calibration.num_classes} classes, configuration has {self.num_classes}"
            )
        for k, ensemble in enumerate(self.ensembles):
            if ensemble.label != k:
                raise ConfigError(f"Ensemble at position {k} is for label {ensemble.label}")
            if ensemble.num_features != self.num_features:
                raise ConfigError(
                    f"Ensemble {k} expects {ensemble.num_features} features, "
                    f"extractor produces {self.num_features}"
                )

    @property
    def num_features(self) -> int:
        return self.feature_extractor.num_features

    def scores(self, features: np.ndarray) -> np.ndarray:
        """
        Raw ensemble scores.

        Args:
            features: (H, W, D) tensor or (N, D) matrix

        Returns:
            Scores with the feature axis replaced by K
        """
        features = np.asarray(features)
        if features.shape[-1] != self.num_features:
            raise DimensionMismatchError((self.num_features,), (features.shape[-1],), what="features")
        flat = features.reshape(-1, self.num_features)
        return score_all_labels(self.ensembles, flat).reshape(features.shape[:-1] + (self.num_classes,))

    def predict_proba(self, features: np.ndarray) -> np.ndarray:
        """Calibrated probabilities, same leading shape as features."""
        return self.calibration.predict(self.scores(features))

    def image_probabilities(self, img: np.ndarray) -> np.ndarray:
        """Extract features of an image and return (H, W, K) probabilities."""
        return self.predict_proba(self.feature_extractor.extract(img))

    def save(self, save_dir: str) -> None:
        """
        Save ensembles, calibrator and configuration.

        Args:
            save_dir: Directory to save model artifacts
        """
        save_path = Path(save_dir)
        save_path.mkdir(parents=True, exist_ok=True)

        for ensemble in self.ensembles:
            model_path = save_path / f"ensemble_{ensemble.label}.pkl"
            with open(model_path, "wb") as f:
                pickle.dump(ensemble, f)

        calibration_path = save_path / "calibration.pkl"
        with open(calibration_path, "wb") as f:
            pickle.dump(self.calibration, f)

        self._save_config(save_dir)
        log.info(f"Saved {len(self.ensembles)} ensembles and calibrator to {save_path}")

    @classmethod
    def load(cls, save_dir: str) -> "UnaryModel":
        """
        Load a model saved by UnaryModel.save.

        Raises:
            FileNotFoundError: If an artifact is missing
            ConfigError: If artifacts disagree on D or K
        """
        config = cls._load_config(save_dir)
        save_path = Path(save_dir)

        ensembles = []
        for label in range(config.num_classes):
            model_path = save_path / f"ensemble_{label}.pkl"
            if not model_path.exists():
                raise FileNotFoundError(f"Model not found: {model_path}. Train the unary model first.")
            with open(model_path, "rb") as f:
                ensembles.append(pickle.load(f))

        calibration_path = save_path / "calibration.pkl"
        if not calibration_path.exists():
            raise FileNotFoundError(f"Calibration not found: {calibration_path}. Train the unary model first.")
        with open(calibration_path, "rb") as f:
            calibration = pickle.load(f)

        log.info(f"Loaded unary model from {save_path}")
        return cls(ensembles, calibration, config)
