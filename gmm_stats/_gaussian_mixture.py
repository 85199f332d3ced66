# gmm_stats/_gaussian_mixture.py
"""Gaussian Mixture Model trained by incremental Expectation-Maximization.

The E-step (``train``) may be fed any number of sample batches; each sample's
responsibilities are folded into one SufficientStatistics accumulator per
cluster. The M-step (``maximize_parameters``) turns every accumulator into a
new Mixture, resets the accumulators and reports convergence.

Key choices:
- Before the first M-step the responsibilities are random (1 + U(0, 1) per
  cluster), so no cluster starts empty.
- Densities are evaluated for the whole batch at once with the precision
  Cholesky kernels of ``_mixture``.
- When every cluster's density underflows to 0 for a sample, the sample goes to
  the cluster whose mean has the smallest dot product with it, with the
  smallest positive float as its total, so responsibilities stay finite.
- Samples with non-finite components are scored on the marginal over their
  finite dimensions. Their accumulated covariances are built pair by pair, so
  after such an epoch they are projected back to positive-definite.
- Convergence: |L - L_prev| <= tol or |1 - L_prev / L| < tol^3.
"""

from __future__ import annotations

import logging
import math
import sys
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import torch

from gmm_stats._mixture import Mixture, _nearest_positive_definite
from gmm_stats._sufficient_statistics import SufficientStatistics
from gmm_stats.exceptions import DimensionMismatchError

logger = logging.getLogger(__name__)

EPSILON = 1e-3
MIN_POSITIVE = sys.float_info.min


def _is_converged(log_likelihood: float, previous: float, tol: float) -> bool:
    """|L - L_prev| <= tol or |1 - L_prev / L| < tol^3; never true against a NaN score."""
    if math.isnan(previous) or math.isnan(log_likelihood):
        return False
    relative_diff = abs(1.0 - previous / log_likelihood) if log_likelihood != 0.0 else math.inf
    return abs(log_likelihood - previous) <= tol or relative_diff < tol**3


class GaussianMixtureModel:
    """k-component, d-dimensional full-covariance Gaussian mixture."""

    def __init__(
        self,
        n_components: int,
        n_features: int,
        *,
        tol: float = EPSILON,
        seed: Optional[int] = None,
    ) -> None:
        if n_components <= 0:
            raise ValueError("n_components must be positive")
        if n_features <= 0:
            raise ValueError("n_features must be positive")
        if tol < 0:
            raise ValueError("tol must be non-negative")

        self._k = int(n_components)
        self._d = int(n_features)
        self.tol = float(tol)
        self._rng = np.random.default_rng(seed)

        self._mixtures: List[Mixture] = []
        self._accumulators = [SufficientStatistics(self._d) for _ in range(self._k)]
        self._responsibility_totals = np.zeros(self._k, dtype=np.float64)

        self._log_likelihood = 0.0
        self._previous_log_likelihood = math.nan
        self._samples_seen = 0
        self._incomplete_samples = 0
        self._initialized = False
        self._converged = False

        self.n_iter_: int = 0
        self.log_likelihoods_: List[float] = []

    @classmethod
    def from_mixtures(
        cls,
        mixtures: Sequence[Mapping[str, Any]],
        *,
        tol: float = EPSILON,
        seed: Optional[int] = None,
    ) -> "GaussianMixtureModel":
        """Rebuild a trained model from the output of ``mixtures``.

        Each entry needs ``weight``, ``mean`` and ``covariance``; an ``id`` places
        the entry at that cluster index, otherwise list order is used.

        The rebuilt model counts as initialized: its next ``train`` scores samples
        with these parameters rather than drawing random responsibilities.
        """
        if len(mixtures) < 1:
            raise ValueError("at least one mixture is required")

        k = len(mixtures)
        d = len(mixtures[0]["mean"])
        ids = [int(m.get("id", i)) for i, m in enumerate(mixtures)]
        if sorted(ids) != list(range(k)):
            raise ValueError(f"mixture ids must be a permutation of 0..{k - 1}, got {ids}")

        built: List[Optional[Mixture]] = [None] * k
        for idx, m in zip(ids, mixtures):
            if len(m["mean"]) != d:
                raise DimensionMismatchError(d, len(m["mean"]), what="mixture mean")
            built[idx] = Mixture(m["weight"], m["mean"], m["covariance"])

        model = cls(k, d, tol=tol, seed=seed)
        model._mixtures = built
        model._initialized = True
        return model

    # -----------------------
    # Read-only state
    # -----------------------

    @property
    def k(self) -> int:
        return self._k

    @property
    def d(self) -> int:
        return self._d

    @property
    def has_converged(self) -> bool:
        return self._converged

    @property
    def mixtures(self) -> List[Dict[str, Any]]:
        """Plain-Python export of the current parameters, ordered by cluster id."""
        return [
            {
                "id": i,
                "weight": m.weight,
                "mean": m.mean.tolist(),
                "covariance": m.covariance.tolist(),
            }
            for i, m in enumerate(self._mixtures)
        ]

    # -----------------------
    # EM
    # -----------------------

    def train(self, samples) -> None:
        """E-step: accumulate responsibility-weighted statistics for ``samples`` (n, d)."""
        X = self._check_samples(samples)
        n = X.shape[0]
        if n == 0:
            return

        if self._initialized:
            T = self._weighted_densities(X)
        else:
            T = 1.0 + self._rng.random((n, self._k))

        underflows = 0
        for x, t in zip(X, T):
            total = float(t.sum())
            if total == 0.0:
                t = np.zeros(self._k)
                t[self._closest_mean(x)] = MIN_POSITIVE
                total = MIN_POSITIVE
                underflows += 1

            resp = t / total
            self._responsibility_totals += resp
            for acc, w in zip(self._accumulators, resp):
                acc.add_weighted_sample(x, w)
            self._log_likelihood += math.log(total)

        self._samples_seen += n
        self._incomplete_samples += int((~np.isfinite(X).all(axis=1)).sum())
        if underflows:
            logger.debug(f"{underflows}/{n} samples underflowed; assigned by nearest mean")

    def maximize_parameters(self) -> float:
        """M-step: refit every cluster and return the score of the epoch just finished.

        The returned value is NaN for the first epoch, whose responsibilities were random.
        """
        if self._samples_seen == 0:
            raise RuntimeError("maximize_parameters() called before any samples were trained")

        # Build everything first so a bad covariance leaves the model untouched.
        mixtures = [
            Mixture(s / self._samples_seen, acc.mean(), self._cluster_covariance(acc))
            for s, acc in zip(self._responsibility_totals, self._accumulators)
        ]

        L, L_prev = self._log_likelihood, self._previous_log_likelihood

        self._mixtures = mixtures
        for acc in self._accumulators:
            acc.clear()
        self._responsibility_totals.fill(0.0)

        self._converged = self._initialized and _is_converged(L, L_prev, self.tol)
        self._previous_log_likelihood = L if self._initialized else math.nan
        self._log_likelihood = 0.0
        self._samples_seen = 0
        self._incomplete_samples = 0
        self._initialized = True

        logger.debug(f"epoch score={self._previous_log_likelihood:.6f} delta={L - L_prev:+.6e}")
        if self._converged:
            logger.info(f"EM converged with log-likelihood {self._previous_log_likelihood:.6f}")

        return self._previous_log_likelihood

    def fit(self, samples, max_iter: int = 500) -> "GaussianMixtureModel":
        """Alternate ``train`` and ``maximize_parameters`` until converged or ``max_iter`` epochs.

        Each call starts a fresh convergence run from the current parameters, so a
        model that already converged keeps learning from new samples.
        """
        if max_iter <= 0:
            raise ValueError("max_iter must be positive")

        X = self._check_samples(samples)
        self._converged = False
        self._previous_log_likelihood = math.nan
        history: List[float] = []
        it = 0
        while not self._converged and it < max_iter:
            self.train(X)
            history.append(self.maximize_parameters())
            it += 1

        self.n_iter_ = it
        self.log_likelihoods_ = history

        if self._converged:
            logger.info(f"fit finished after {it} epochs")
        else:
            logger.warning(f"fit stopped after {it} epochs without converging")
        return self

    # -----------------------
    # Queries
    # -----------------------

    def get_cluster(self, sample) -> int:
        """Index of the cluster with the highest weighted density for ``sample``."""
        self._check_fitted()
        x = self._check_samples(np.asarray(sample, dtype=np.float64).reshape(1, -1))[0]
        densities = self._weighted_densities(x.reshape(1, -1))[0]
        best = self._argmax_positive(densities)
        return self._closest_mean(x) if best < 0 else best

    def get_marginal_cluster(self, variables: Sequence[int], sample) -> int:
        """Like ``get_cluster`` on the marginal over ``variables``; ``sample`` holds those coordinates."""
        self._check_fitted()
        variables = [int(v) for v in variables]
        x = np.asarray(sample, dtype=np.float64).reshape(-1)
        if x.shape[0] != len(variables):
            raise DimensionMismatchError(len(variables), x.shape[0])

        densities = np.array([m.marginal_weighted_pdf(variables, x) for m in self._mixtures])
        best = self._argmax_positive(densities)
        if best >= 0:
            return best
        return self._closest_mean(x, variables)

    def predict(self, samples) -> np.ndarray:
        X = self._check_samples(samples)
        return np.array([self.get_cluster(x) for x in X], dtype=np.int64)

    # -----------------------
    # Internals
    # -----------------------

    def _weighted_densities(self, X: np.ndarray) -> np.ndarray:
        """(n, k) weighted densities; rows with non-finite values use their finite marginal."""
        T = np.empty((X.shape[0], self._k), dtype=np.float64)
        finite = np.isfinite(X)
        complete = finite.all(axis=1)

        if complete.any():
            for j, m in enumerate(self._mixtures):
                T[complete, j] = m.weighted_pdf(X[complete])

        for r in np.flatnonzero(~complete):
            variables = np.flatnonzero(finite[r]).tolist()
            T[r] = [m.marginal_weighted_pdf(variables, X[r, variables]) for m in self._mixtures]
        return T

    def _cluster_covariance(self, acc: SufficientStatistics) -> np.ndarray:
        """Covariance for the next Mixture; repaired when the epoch had incomplete rows."""
        cov = acc.covariance()
        if self._incomplete_samples == 0:
            return cov

        # each cell only saw the rows finite in both of its dimensions
        cov_t = torch.from_numpy(cov)
        repaired = _nearest_positive_definite(cov_t)
        if repaired is cov_t:
            return cov
        logger.debug("covariance from incomplete samples projected to positive-definite")
        return repaired.numpy()

    def _closest_mean(self, x: np.ndarray, variables: Optional[Sequence[int]] = None) -> int:
        """Cluster whose mean has the smallest dot product with ``x`` (over finite coordinates)."""
        if variables is None:
            variables = list(range(self._d))
        variables = np.asarray(variables, dtype=np.intp)
        finite = np.isfinite(x)

        best, best_distance = -1, math.inf
        for j, m in enumerate(self._mixtures):
            distance = float(np.dot(x[finite], m.mean[variables][finite]))
            if distance < best_distance:
                best, best_distance = j, distance
        return best if best >= 0 else 0

    @staticmethod
    def _argmax_positive(densities: np.ndarray) -> int:
        best, best_density = -1, 0.0
        for j, density in enumerate(densities):
            if density > best_density:
                best, best_density = j, density
        return best

    def _check_samples(self, samples) -> np.ndarray:
        X = np.asarray(samples, dtype=np.float64)
        if X.ndim == 1 and X.size == 0:
            X = X.reshape(0, self._d)
        if X.ndim != 2:
            raise ValueError(f"samples must have shape (n, d), got {X.shape}")
        if X.shape[1] != self._d:
            raise DimensionMismatchError(self._d, X.shape[1])
        return X

    def _check_fitted(self) -> None:
        if not self._mixtures:
            raise RuntimeError("Model is not fitted yet.")

    def __repr__(self) -> str:
        return (
            f"GaussianMixtureModel(n_components={self._k}, n_features={self._d}, "
            f"initialized={self._initialized}, converged={self._converged})"
        )
