# ============================================================================
# Pixel CRF segmentation - Pytest Configuration
# ============================================================================
# Purpose: Shared fixtures (synthetic images, configs, trained models)
# ============================================================================

import os

# numba's TBB threading layer hangs at interpreter exit once multiprocessing
# has forked worker pools; pin a fork-tolerant layer for the test process.
os.environ.setdefault("NUMBA_THREADING_LAYER", "workqueue")

import numpy as np
import pytest

from crfseg.config import SegmentationConfig
from crfseg.pairwise import DIRECTIONS_4, ContrastPotential


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def small_config():
    """Two classes, cheap features and a short boosting budget."""
    return SegmentationConfig(
        num_classes=2,
        feature_groups=["color", "position"],
        num_rounds=5,
        sub_sample=1,
        calibration_holdout=0.0,
        pairwise_candidates=[0.0, 1.0, 5.0],
        connectivity=4,
        max_iterations=5,
        time_limit=30.0,
    ).validate()


# =============================================================================
# Image Fixtures
# =============================================================================

def make_two_region_image(height=12, width=12, seed=0):
    """Left half reddish, right half bluish, mild noise. Labels 0 left, 1 right."""
    rng = np.random.default_rng(seed)
    img = np.zeros((height, width, 3), dtype=np.float32)
    img[:, : width // 2] = (0.8, 0.2, 0.2)
    img[:, width // 2:] = (0.2, 0.2, 0.8)
    img += rng.normal(0.0, 0.02, size=img.shape).astype(np.float32)
    img = np.clip(img, 0.0, 1.0)

    labels = np.zeros((height, width), dtype=np.int32)
    labels[:, width // 2:] = 1
    return img, labels


@pytest.fixture(scope="session")
def two_region_image():
    return make_two_region_image()


@pytest.fixture(scope="session")
def training_items():
    """Three labeled images with a void border on the last one."""
    items = []
    for seed in range(3):
        img, labels = make_two_region_image(seed=seed)
        items.append((f"img_{seed}", img, labels))
    labels = items[-1][2].copy()
    labels[0, :] = -1
    items[-1] = (items[-1][0], items[-1][1], labels)
    return items


@pytest.fixture(scope="session")
def unary_model(small_config, training_items):
    """Unary model trained on the synthetic two-region images."""
    from crfseg.trainer import train_unary
    return train_unary(training_items, small_config)


# =============================================================================
# Chain Fixtures
# =============================================================================

def chain_problem():
    """
    1 x 20 chain with unit contrast on horizontal edges (4-connectivity).

    Ground truth: class 0 everywhere except a true two-pixel run of class 1
    at 10-11. The calibrated distribution is 0.9 on the true class, except
    pixel 4 which leans wrongly to class 1 (0.4, 0.6).

    Errors by weight: 0 -> 1 (pixel 4), 1 -> 0, 5 -> 2 (run smoothed away).
    """
    width = 20
    ground_truth = np.zeros((1, width), dtype=np.int32)
    ground_truth[0, 10:12] = 1

    probabilities = np.empty((1, width, 2))
    probabilities[0, :, 0] = np.where(ground_truth[0] == 0, 0.9, 0.1)
    probabilities[0, :, 1] = 1.0 - probabilities[0, :, 0]
    probabilities[0, 4] = (0.4, 0.6)

    horizontal = np.zeros((1, width))
    horizontal[0, :-1] = 1.0
    contrast = ContrastPotential(
        shape=(1, width),
        directions=DIRECTIONS_4,
        contrast=(horizontal, np.zeros((1, width))),
        beta=0.0,
    )
    return probabilities, contrast, ground_truth


@pytest.fixture
def chain():
    return chain_problem()


# =============================================================================
# Pytest Hooks
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless explicitly requested."""
    if not config.getoption("--runslow", default=False):
        skip_slow = pytest.mark.skip(reason="need --runslow option to run")
        for item in items:
            if "slow" in item.keywords:
                item.add_marker(skip_slow)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--runslow",
        action="store_true",
        default=False,
        help="run slow tests"
    )
