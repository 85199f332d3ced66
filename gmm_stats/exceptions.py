"""Exception classes for gmm_stats."""

__all__ = [
    "DimensionMismatchError",
    "InvalidCovarianceError",
]


class DimensionMismatchError(ValueError):
    """Raised when a vector, batch or statistics object does not have the expected dimensionality."""

    def __init__(self, expected: int, actual: int, what: str = "sample") -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"{what} has dimension {actual}, expected {expected}")


class InvalidCovarianceError(ValueError):
    """Raised when a covariance matrix is not finite and positive-definite."""
