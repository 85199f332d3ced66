# gmm_stats/_sufficient_statistics.py
"""Online, mergeable sufficient statistics for a weighted mean and covariance.

SufficientStatistics keeps, for d dimensions:

- sums:                 d-vector of sum w_i x_i over samples where x_i is finite
- moments:              co-moments sum w (x_i - mean_i)(x_j - mean_j)
- weight_sums:          sum w over samples where both x_i and x_j are finite
- squared_weight_sums:  sum w^2 over the same samples

The last three are symmetric d x d matrices and only their upper triangle is
stored, packed row by row: row i starts at its diagonal entry
``_diagonal(i, d) = i * (2d - i + 1) / 2`` and entry (i, j), j >= i, lives at
``_diagonal(i, d) + (j - i)``. This is the same order as ``np.triu_indices(d)``.

Samples are folded in one at a time with a weighted multivariate Welford update,
or as whole column batches whose two-pass statistics are merged with the
pairwise (Chan et al.) combination rule. Merging is commutative and associative,
so partitions of a dataset can be accumulated independently and reduced in any
order.

Non-finite values never poison the statistics: a NaN or infinity in dimension i
only suppresses the terms that involve dimension i.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np

from gmm_stats.exceptions import DimensionMismatchError

logger = logging.getLogger(__name__)


# ---------------------------
# Packed upper-triangular helpers
# ---------------------------

def _triangular(n: int) -> int:
    return n * (n + 1) // 2


def _diagonal(i: int, d: int) -> int:
    """Flat offset of entry (i, i) in a packed upper-triangular d x d matrix."""
    return i * (2 * d - i + 1) // 2


def _safe_mean(total, weight) -> np.ndarray:
    """total / weight elementwise, 0 wherever weight <= 0."""
    total = np.asarray(total, dtype=np.float64)
    weight = np.asarray(weight, dtype=np.float64)
    out = np.zeros(np.broadcast(total, weight).shape, dtype=np.float64)
    np.divide(total, weight, out=out, where=weight > 0)
    return out


def _unpack(packed: np.ndarray, d: int) -> np.ndarray:
    dense = np.zeros((d, d), dtype=np.float64)
    dense[np.triu_indices(d)] = packed
    return dense


# ---------------------------
# Accumulator
# ---------------------------

class SufficientStatistics:
    """Weighted sample mean and covariance accumulator over ``d`` dimensions."""

    def __init__(self, d: int) -> None:
        d = int(d)
        if d <= 0:
            raise ValueError("d must be positive")

        self._d = d
        self._rows, self._cols = np.triu_indices(d)
        self._diag = np.array([_diagonal(i, d) for i in range(d)], dtype=np.intp)

        self._sums = np.zeros(d, dtype=np.float64)
        self._moments = np.zeros(_triangular(d), dtype=np.float64)
        self._weight_sums = np.zeros(_triangular(d), dtype=np.float64)
        self._squared_weight_sums = np.zeros(_triangular(d), dtype=np.float64)

    @property
    def d(self) -> int:
        return self._d

    @property
    def total_weight(self) -> np.ndarray:
        """Per-dimension sum of weights over the finite values seen."""
        return self._weight_sums[self._diag].copy()

    # -----------------------
    # Accessors
    # -----------------------

    def mean(self) -> np.ndarray:
        """Weighted mean per dimension; 0 for a dimension with no weight."""
        return _safe_mean(self._sums, self._weight_sums[self._diag])

    def covariance(self) -> np.ndarray:
        """Symmetric d x d Bessel-corrected sample covariance.

        Cell (i, j) is ``moments[ij] / (weight_sums[ij] - 1)``; cells whose
        weight sum is at most 1 are reported as 0.
        """
        values = _safe_mean(self._moments, self._weight_sums - 1.0)
        cov = np.zeros((self._d, self._d), dtype=np.float64)
        cov[self._rows, self._cols] = values
        cov[self._cols, self._rows] = values
        return cov

    # -----------------------
    # Updates
    # -----------------------

    def add_sample(self, sample: Sequence[float]) -> "SufficientStatistics":
        return self.add_weighted_sample(sample, 1.0)

    def add_weighted_sample(self, sample: Sequence[float], weight: float) -> "SufficientStatistics":
        """Fold one weighted sample into the statistics (weighted Welford update).

        For every pair (i, j), i <= j, with both values finite the co-moment grows by
        ``w * (x_i - new_mean_i) * (x_j - old_mean_j)``: dimension i already includes
        this sample, dimension j does not yet. On the diagonal this is the usual
        two-mean correction ``w * (x_i - new_mean_i) * (x_i - old_mean_i)``.
        """
        x = self._check_sample(sample)
        weight = float(weight)

        finite = np.isfinite(x)
        if not np.isfinite(weight) or not finite.any():
            return self

        x = np.where(finite, x, 0.0)
        step = np.where(finite, weight, 0.0)

        diagonal_weights = self._weight_sums[self._diag]
        old_means = _safe_mean(self._sums, diagonal_weights)
        new_sums = self._sums + step * x
        new_means = _safe_mean(new_sums, diagonal_weights + step)

        i, j = self._rows, self._cols
        both = finite[i] & finite[j]

        self._moments += np.where(both, weight * (x[i] - new_means[i]) * (x[j] - old_means[j]), 0.0)
        self._weight_sums += np.where(both, weight, 0.0)
        self._squared_weight_sums += np.where(both, weight * weight, 0.0)
        self._sums = new_sums
        return self

    def add_samples(self, columns) -> "SufficientStatistics":
        columns = self._check_columns(columns)
        return self.add_weighted_samples(columns, np.ones(columns.shape[1], dtype=np.float64))

    def add_weighted_samples(self, columns, weights) -> "SufficientStatistics":
        """Fold a column-major batch (d columns of n values) with one weight per row.

        The batch mean and co-moments are computed directly (two passes), skipping
        every term that is not finite, and then merged into ``self``.
        """
        columns = self._check_columns(columns)
        n = columns.shape[1]
        weights = np.asarray(weights, dtype=np.float64).reshape(-1)
        if weights.shape[0] != n:
            raise DimensionMismatchError(n, weights.shape[0], what="weights")

        d = self._d
        moments = np.zeros(_triangular(d), dtype=np.float64)
        weight_sums = np.zeros(_triangular(d), dtype=np.float64)
        squared_weight_sums = np.zeros(_triangular(d), dtype=np.float64)

        with np.errstate(invalid="ignore", over="ignore"):
            terms = columns * weights
            finite = np.isfinite(terms)
            sums = np.where(finite, terms, 0.0).sum(axis=1)
            means = _safe_mean(sums, np.where(finite, weights, 0.0).sum(axis=1))
            finite_means = np.isfinite(means)

            deviations = columns - means[:, None]
            for i in range(d):
                lo, hi = _diagonal(i, d), _diagonal(i, d) + d - i

                terms = weights * deviations[i] * deviations[i:]  # (d - i, n)
                finite = np.isfinite(terms)
                moments[lo:hi] = np.where(finite, terms, 0.0).sum(axis=1)
                weight_sums[lo:hi] = np.where(finite, weights, 0.0).sum(axis=1)
                squared_weight_sums[lo:hi] = np.where(finite, weights * weights, 0.0).sum(axis=1)

                # a pair whose mean overflowed has no defined co-moment
                undefined = ~(finite_means[i] & finite_means[i:])
                moments[lo:hi][undefined] = np.nan
                weight_sums[lo:hi][undefined] = 0.0
                squared_weight_sums[lo:hi][undefined] = 0.0

        return self._merge(sums, moments, weight_sums, squared_weight_sums)

    def add_statistics(self, other: "SufficientStatistics") -> "SufficientStatistics":
        """Merge statistics accumulated elsewhere (e.g. on another partition) into ``self``."""
        if not isinstance(other, SufficientStatistics):
            raise TypeError(f"expected SufficientStatistics, got {type(other).__name__}")
        if other.d != self._d:
            raise DimensionMismatchError(self._d, other.d, what="statistics")
        return self._merge(other._sums, other._moments, other._weight_sums, other._squared_weight_sums)

    def clear(self) -> "SufficientStatistics":
        self._sums.fill(0.0)
        self._moments.fill(0.0)
        self._weight_sums.fill(0.0)
        self._squared_weight_sums.fill(0.0)
        return self

    def copy(self) -> "SufficientStatistics":
        out = SufficientStatistics(self._d)
        out._sums = self._sums.copy()
        out._moments = self._moments.copy()
        out._weight_sums = self._weight_sums.copy()
        out._squared_weight_sums = self._squared_weight_sums.copy()
        return out

    # -----------------------
    # Internals
    # -----------------------

    def _merge(
        self,
        sums: np.ndarray,
        moments: np.ndarray,
        weight_sums: np.ndarray,
        squared_weight_sums: np.ndarray,
    ) -> "SufficientStatistics":
        # Corrections use the pre-merge means of both sides, so compute them first.
        i, j = self._rows, self._cols
        delta = _safe_mean(self._sums, self._weight_sums[self._diag]) - _safe_mean(sums, weight_sums[self._diag])
        norm = _safe_mean(self._weight_sums * weight_sums, self._weight_sums + weight_sums)

        self._moments += moments + delta[i] * delta[j] * norm
        self._sums += sums
        self._weight_sums += weight_sums
        self._squared_weight_sums += squared_weight_sums
        return self

    def _check_sample(self, sample) -> np.ndarray:
        x = np.asarray(sample, dtype=np.float64).reshape(-1)
        if x.shape[0] != self._d:
            raise DimensionMismatchError(self._d, x.shape[0])
        return x

    def _check_columns(self, columns) -> np.ndarray:
        columns = np.asarray(columns, dtype=np.float64)
        if columns.ndim != 2:
            raise ValueError(f"columns must have shape (d, n), got {columns.shape}")
        if columns.shape[0] != self._d:
            raise DimensionMismatchError(self._d, columns.shape[0], what="columns")
        return columns

    def __repr__(self) -> str:
        d = self._d
        return (
            f"SufficientStatistics(d={d})\n"
            f"Sums:\n{np.array2string(self._sums)}\n"
            f"Moments:\n{np.array2string(_unpack(self._moments, d))}\n"
            f"Weights:\n{np.array2string(_unpack(self._weight_sums, d))}\n"
            f"Squared weights:\n{np.array2string(_unpack(self._squared_weight_sums, d))}"
        )


def reduce_statistics(statistics: Iterable[SufficientStatistics]) -> SufficientStatistics:
    """Merge independently accumulated statistics with a pairwise tree reduction.

    The inputs are left untouched; the result is a new SufficientStatistics.
    """
    level = [s.copy() for s in statistics]
    if not level:
        raise ValueError("reduce_statistics() needs at least one SufficientStatistics")

    logger.debug(f"Reducing {len(level)} partial statistics")
    while len(level) > 1:
        merged = [a.add_statistics(b) for a, b in zip(level[0::2], level[1::2])]
        if len(level) % 2:
            merged.append(level[-1])
        level = merged
    return level[0]
