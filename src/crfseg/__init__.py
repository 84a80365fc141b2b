"""
Pixel-level CRF segmentation: boosted unary potentials, contrast-sensitive
pairwise smoothing and alpha-expansion MAP inference.
"""

from .config import SegmentationConfig, load_config
from .errors import ConfigError, DegenerateSearchWarning, DimensionMismatchError, SolverBudgetExceeded
from .class_models.unary_model import UnaryModel
from .trainer import train_pairwise, train_unary
from .inference import evaluate, infer


# Defines what gets exported when someone does from crfseg import *
__all__ = [
    'SegmentationConfig',
    'load_config',
    'ConfigError',
    'DegenerateSearchWarning',
    'DimensionMismatchError',
    'SolverBudgetExceeded',
    'UnaryModel',
    'train_unary',
    'train_pairwise',
    'infer',
    'evaluate',
]

__version__ = "0.1.0"
