"""
Per-pixel class models: boosted one-vs-all ensembles, score calibration and
the unary model bundling both.
"""

# ! TO ADD A NEW PIXEL MODEL
# 1. subclass BasePixelModel in a new file of this package
# 2. implement predict_proba, save and load
# 3. export it here

from .base_model import BasePixelModel
from .boosted_model import BoostedEnsemble, WeakClassifier
from .calibration_model import CalibrationModel
from .unary_model import UnaryModel


__all__ = [
    'BasePixelModel',
    'BoostedEnsemble',
    'WeakClassifier',
    'CalibrationModel',
    'UnaryModel',
]
