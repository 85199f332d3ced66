# gmm_stats/_mixture.py
"""One weighted multivariate normal component of a Gaussian mixture.

Densities are evaluated through the precision Cholesky factor, never through an
explicit inverse of the covariance:

  cov = L L^T (L lower), precision_chol P = inv(L) (lower),
  precision = inv(cov) = P^T P,
  log N(x | mu, cov) = -0.5 * (D log(2 pi) + ||P (x - mu)||^2) + sum log diag(P).

The factor is computed once per Mixture (and once per marginal variable subset)
and reused for every evaluation. Cholesky fails exactly when the covariance is
not positive-definite, which is reported as InvalidCovarianceError.
"""

from __future__ import annotations

import math
from typing import Dict, Sequence, Tuple

import numpy as np
import torch

from gmm_stats.exceptions import DimensionMismatchError, InvalidCovarianceError


# ---------------------------
# Precision-Cholesky kernels
# ---------------------------

@torch.no_grad()
def _compute_precision_cholesky(cov: torch.Tensor) -> torch.Tensor:
    """Lower-triangular P with precision = P^T P, for a (D, D) covariance."""
    if not bool(torch.isfinite(cov).all()):
        raise InvalidCovarianceError("covariance contains non-finite values")

    L, info = torch.linalg.cholesky_ex(cov)
    if int(info.item()) != 0:
        raise InvalidCovarianceError(
            f"covariance is not positive-definite (leading minor {int(info.item())} is not positive)"
        )

    I = torch.eye(cov.shape[0], dtype=cov.dtype)
    return torch.linalg.solve_triangular(L, I, upper=False)


@torch.no_grad()
def _nearest_positive_definite(cov: torch.Tensor, floor: float = 1e-3) -> torch.Tensor:
    """Closest covariance with the same variances whose correlation eigenvalues are >= floor.

    A covariance assembled cell by cell from pairwise-complete data need not be
    positive semi-definite. The correlation matrix is clipped in its eigenbasis and
    rescaled back to unit diagonal, so each dimension keeps its own variance.
    Matrices that are already well conditioned, or that have a non-finite or
    non-positive variance, are returned unchanged.
    """
    variances = torch.diagonal(cov)
    if not bool(torch.isfinite(cov).all()) or not bool((variances > 0).all()):
        return cov

    std = torch.sqrt(variances)
    scale = torch.outer(std, std)
    corr = cov / scale
    corr = 0.5 * (corr + corr.T)

    eigvals, eigvecs = torch.linalg.eigh(corr)
    if float(eigvals.min()) >= floor:
        return cov

    corr = (eigvecs * eigvals.clamp_min(floor)) @ eigvecs.T
    unit = torch.sqrt(torch.diagonal(corr))
    corr = corr / torch.outer(unit, unit)
    corr = 0.5 * (corr + corr.T)
    return corr * scale


@torch.no_grad()
def _estimate_log_gaussian_prob(
    X: torch.Tensor,
    mean: torch.Tensor,
    precision_chol: torch.Tensor,
) -> torch.Tensor:
    """log N(X | mean, cov) for X of shape (N, D), using precision_chol (D, D lower)."""
    N, D = X.shape
    assert mean.shape == (D,)
    assert precision_chol.shape == (D, D)

    log_det_term = torch.sum(torch.log(torch.diagonal(precision_chol)))

    y = (X - mean.unsqueeze(0)) @ precision_chol.T  # (N, D)
    mahal = torch.sum(y * y, dim=1)  # (N,)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term


# ---------------------------
# Mixture component
# ---------------------------

class Mixture:
    """Immutable (weight, mean, covariance) triple with a cached density evaluator."""

    def __init__(self, weight: float, mean: Sequence[float], covariance: Sequence[Sequence[float]]) -> None:
        weight = float(weight)
        if not math.isfinite(weight) or weight < 0.0:
            raise ValueError(f"mixture weight must be finite and non-negative, got {weight}")

        mean = np.array(mean, dtype=np.float64).reshape(-1)
        covariance = np.array(covariance, dtype=np.float64)
        D = mean.shape[0]
        if covariance.ndim != 2 or covariance.shape[0] != covariance.shape[1]:
            raise DimensionMismatchError(D, covariance.shape[0] if covariance.ndim else 0, what="covariance")
        if covariance.shape[0] != D:
            raise DimensionMismatchError(D, covariance.shape[0], what="covariance")

        mean.setflags(write=False)
        covariance.setflags(write=False)

        self._weight = weight
        self._mean = mean
        self._covariance = covariance

        self._mean_t = torch.from_numpy(mean.copy())
        self._precision_chol = _compute_precision_cholesky(torch.from_numpy(covariance.copy()))
        self._marginals: Dict[Tuple[int, ...], Tuple[torch.Tensor, torch.Tensor]] = {}

    @property
    def weight(self) -> float:
        return self._weight

    @property
    def mean(self) -> np.ndarray:
        return self._mean

    @property
    def covariance(self) -> np.ndarray:
        return self._covariance

    @property
    def d(self) -> int:
        return self._mean.shape[0]

    def weighted_pdf(self, sample):
        """weight * N(sample | mean, covariance).

        ``sample`` is one vector of length d (returns a float) or an (N, d) batch
        (returns an (N,) array).
        """
        X, single = self._as_batch(sample, self.d)
        log_prob = _estimate_log_gaussian_prob(X, self._mean_t, self._precision_chol)
        return self._finish(log_prob, single)

    def marginal_weighted_pdf(self, variables: Sequence[int], sample):
        """weight * density of the marginal over ``variables``, evaluated at ``sample``.

        ``sample`` holds only the selected coordinates, in the order of ``variables``.
        The marginal of zero variables has density 1.
        """
        key = self._check_variables(variables)
        X, single = self._as_batch(sample, len(key))
        if not key:
            density = np.full(X.shape[0], self._weight)
            return float(density[0]) if single else density

        mean_t, precision_chol = self._marginal(key)
        log_prob = _estimate_log_gaussian_prob(X, mean_t, precision_chol)
        return self._finish(log_prob, single)

    # -----------------------
    # Internals
    # -----------------------

    def _marginal(self, key: Tuple[int, ...]) -> Tuple[torch.Tensor, torch.Tensor]:
        if key not in self._marginals:
            idx = np.asarray(key, dtype=np.intp)
            sub_mean = torch.from_numpy(self._mean[idx].copy())
            sub_cov = torch.from_numpy(self._covariance[np.ix_(idx, idx)].copy())
            self._marginals[key] = (sub_mean, _compute_precision_cholesky(sub_cov))
        return self._marginals[key]

    def _check_variables(self, variables: Sequence[int]) -> Tuple[int, ...]:
        key = tuple(int(v) for v in variables)
        for v in key:
            if not 0 <= v < self.d:
                raise ValueError(f"variable index {v} out of range for dimension {self.d}")
        return key

    @staticmethod
    def _as_batch(sample, D: int) -> Tuple[torch.Tensor, bool]:
        X = np.asarray(sample, dtype=np.float64)
        single = X.ndim == 1
        if single:
            X = X.reshape(1, -1)
        if X.ndim != 2 or X.shape[1] != D:
            raise DimensionMismatchError(D, X.shape[-1] if X.ndim else 0)
        return torch.from_numpy(np.ascontiguousarray(X)), single

    def _finish(self, log_prob: torch.Tensor, single: bool):
        density = self._weight * torch.exp(log_prob).numpy()
        return float(density[0]) if single else density

    def __repr__(self) -> str:
        return f"Mixture(weight={self._weight:.6g}, mean={np.array2string(self._mean, precision=4)})"
