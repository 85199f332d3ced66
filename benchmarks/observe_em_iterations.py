"""Observe EM epoch by epoch on the Iris measurements, next to scikit-learn."""

import os
import sys
import logging

import numpy as np
from sklearn.datasets import load_iris
from sklearn.mixture import GaussianMixture

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import gmm_stats
from gmm_stats import GaussianMixtureModel


def observe_sklearn(X: np.ndarray, n_components: int):
    """Observe scikit-learn EM iterations."""
    print("="*70)
    print("SCIKIT-LEARN GMM - Observing EM Iterations")
    print("="*70)

    gmm = GaussianMixture(
        n_components=n_components,
        covariance_type="full",
        max_iter=500,
        n_init=1,
        init_params="random",
        tol=1e-3,
        random_state=42,
        verbose=2,
        verbose_interval=1,
    )
    gmm.fit(X)

    print(f"\n{'='*70}")
    print(f"Final Results:")
    print(f"  Converged: {gmm.converged_}")
    print(f"  Iterations: {gmm.n_iter_}")
    # sklearn reports the mean per-sample log-likelihood
    print(f"  Final log-likelihood: {gmm.lower_bound_ * X.shape[0]:.6f}")
    print(f"\n  Final Weights: {gmm.weights_}")
    for k in range(n_components):
        print(f"    Component {k} mean: {gmm.means_[k]}")
    print("="*70 + "\n")


def observe_gmm_stats(X: np.ndarray, n_components: int):
    """Observe incremental EM epoch by epoch."""
    print("="*70)
    print("GMM_STATS - Observing EM Epochs")
    print("="*70)

    model = GaussianMixtureModel(n_components, X.shape[1], seed=42)

    prev = np.nan
    epoch = 0
    while not model.has_converged and epoch < 500:
        model.train(X)
        score = model.maximize_parameters()
        delta = score - prev
        print(f"Epoch {epoch+1:3d}: log-likelihood = {score:12.6f} (delta = {delta:+.6e})")
        prev = score
        epoch += 1

    print(f"\n{'='*70}")
    print(f"Final Results:")
    print(f"  Converged: {model.has_converged}")
    print(f"  Epochs: {epoch}")
    for m in model.mixtures:
        print(f"    Component {m['id']}: weight={m['weight']:.4f} mean={np.round(m['mean'], 4)}")
    print("="*70 + "\n")


if __name__ == "__main__":
    gmm_stats.log(logging.INFO)

    X = load_iris().data.astype(np.float64)
    print(f"\nConfiguration: N={X.shape[0]}, D={X.shape[1]}, K=3\n")

    observe_sklearn(X, 3)
    observe_gmm_stats(X, 3)
