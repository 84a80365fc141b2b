"""
Error and warning types raised by the CRF segmentation pipeline.
"""


class ConfigError(ValueError):
    """Malformed or inconsistent configuration. Fatal, raised before any work starts."""


class DimensionMismatchError(ValueError):
    """Image, labeling or feature tensor sizes do not agree."""

    def __init__(self, expected, actual, what: str = "labeling"):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(
            f"Dimension mismatch for {what}: expected {self.expected}, got {self.actual}"
        )


class DegenerateSearchWarning(UserWarning):
    """Pairwise weight search had too little validation data and fell back to 0."""


class SolverBudgetExceeded(RuntimeWarning):
    """MAP inference stopped on its iteration or time budget before converging."""
