# tests/test_mixture.py
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest
import torch
from scipy import stats

from gmm_stats import DimensionMismatchError, InvalidCovarianceError, Mixture
from gmm_stats._mixture import _compute_precision_cholesky, _estimate_log_gaussian_prob, _nearest_positive_definite


def _random_spd(rng: np.random.Generator, d: int) -> np.ndarray:
    A = rng.normal(size=(d, d))
    C = A @ A.T
    C /= np.trace(C) / d
    return C + 1e-3 * np.eye(d)


@pytest.fixture
def component():
    rng = np.random.default_rng(11)
    mean = rng.normal(size=4) * 3.0
    cov = _random_spd(rng, 4)
    return 0.3, mean, cov


# ---------------------------------------------------------------------
# Kernels
# ---------------------------------------------------------------------
def test_precision_cholesky_reconstructs_inverse():
    cov = torch.tensor([[2.0, 0.5], [0.5, 3.0]], dtype=torch.float64)
    P = _compute_precision_cholesky(cov)

    det = 2.0 * 3.0 - 0.5 * 0.5
    expected = torch.tensor([[3.0 / det, -0.5 / det], [-0.5 / det, 2.0 / det]], dtype=torch.float64)
    assert torch.allclose(P.T @ P, expected, atol=1e-12)
    assert torch.allclose(P, torch.tril(P))


def test_log_prob_matches_scipy(component):
    _, mean, cov = component
    X = np.random.default_rng(0).normal(size=(25, 4))

    log_prob = _estimate_log_gaussian_prob(
        torch.from_numpy(X),
        torch.from_numpy(mean),
        _compute_precision_cholesky(torch.from_numpy(cov)),
    )
    expected = stats.multivariate_normal(mean=mean, cov=cov).logpdf(X)
    np.testing.assert_allclose(log_prob.numpy(), expected, rtol=1e-10)


def test_nearest_positive_definite_keeps_variances():
    # pairwise correlations 0.9, 0.9, -0.9 cannot all hold at once
    corr = torch.tensor([[1.0, 0.9, 0.9], [0.9, 1.0, -0.9], [0.9, -0.9, 1.0]], dtype=torch.float64)
    std = torch.tensor([2.0, 1.0, 3.0], dtype=torch.float64)
    cov = corr * torch.outer(std, std)
    with pytest.raises(InvalidCovarianceError):
        _compute_precision_cholesky(cov)

    repaired = _nearest_positive_definite(cov)
    assert torch.allclose(torch.diagonal(repaired), std * std, rtol=1e-12)
    assert torch.allclose(repaired, repaired.T)
    assert float(torch.linalg.eigvalsh(repaired).min()) > 0.0
    _compute_precision_cholesky(repaired)

    # input untouched, valid matrices returned as-is
    assert float(cov[1, 2]) == pytest.approx(-0.9 * 3.0)
    spd = torch.tensor([[2.0, 0.5], [0.5, 3.0]], dtype=torch.float64)
    assert _nearest_positive_definite(spd) is spd


# ---------------------------------------------------------------------
# Densities
# ---------------------------------------------------------------------
def test_weighted_pdf_single_sample(component):
    weight, mean, cov = component
    m = Mixture(weight, mean, cov)
    x = mean + 0.25

    result = m.weighted_pdf(x)
    assert isinstance(result, float)
    np.testing.assert_allclose(result, weight * stats.multivariate_normal(mean, cov).pdf(x), rtol=1e-10)


def test_weighted_pdf_batch(component):
    weight, mean, cov = component
    m = Mixture(weight, mean, cov)
    X = mean + np.random.default_rng(1).normal(size=(10, 4))

    result = m.weighted_pdf(X)
    assert result.shape == (10,)
    np.testing.assert_allclose(result, weight * stats.multivariate_normal(mean, cov).pdf(X), rtol=1e-10)


@pytest.mark.parametrize("variables", [[0], [2, 0], [1, 2, 3]])
def test_marginal_weighted_pdf(component, variables):
    weight, mean, cov = component
    m = Mixture(weight, mean, cov)
    x = mean[variables] - 0.5

    sub = stats.multivariate_normal(mean[variables], cov[np.ix_(variables, variables)])
    np.testing.assert_allclose(m.marginal_weighted_pdf(variables, x), weight * sub.pdf(x), rtol=1e-10)


def test_marginal_over_all_variables_is_full_density(component):
    weight, mean, cov = component
    m = Mixture(weight, mean, cov)
    x = mean * 0.9
    np.testing.assert_allclose(m.marginal_weighted_pdf(range(4), x), m.weighted_pdf(x), rtol=1e-12)


def test_marginal_over_no_variables_is_weight(component):
    weight, mean, cov = component
    assert Mixture(weight, mean, cov).marginal_weighted_pdf([], []) == pytest.approx(weight)


def test_far_sample_underflows_to_zero():
    m = Mixture(0.5, [0.0, 0.0], np.eye(2) * 1e-4)
    assert m.weighted_pdf([1e3, 1e3]) == 0.0


# ---------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------
@pytest.mark.parametrize(
    "cov",
    [
        np.zeros((2, 2)),
        np.array([[1.0, 2.0], [2.0, 1.0]]),  # indefinite
        np.array([[1.0, 0.0], [0.0, -1.0]]),
        np.array([[np.nan, 0.0], [0.0, 1.0]]),
    ],
)
def test_invalid_covariance_is_rejected(cov):
    with pytest.raises(InvalidCovarianceError):
        Mixture(0.5, [0.0, 0.0], cov)


def test_marginal_variable_out_of_range():
    m = Mixture(1.0, [0.0, 0.0], np.eye(2))
    with pytest.raises(ValueError):
        m.marginal_weighted_pdf([2], [0.0])


def test_shape_mismatches_are_rejected(component):
    weight, mean, cov = component
    with pytest.raises(DimensionMismatchError):
        Mixture(weight, mean[:3], cov)
    with pytest.raises(DimensionMismatchError):
        Mixture(weight, mean, cov[:, :3])

    m = Mixture(weight, mean, cov)
    with pytest.raises(DimensionMismatchError):
        m.weighted_pdf(mean[:3])
    with pytest.raises(DimensionMismatchError):
        m.marginal_weighted_pdf([0, 1], [0.0])


@pytest.mark.parametrize("weight", [-0.1, np.inf, np.nan])
def test_invalid_weight_is_rejected(weight):
    with pytest.raises(ValueError):
        Mixture(weight, [0.0], [[1.0]])


def test_mixture_is_immutable(component):
    weight, mean, cov = component
    m = Mixture(weight, mean, cov)
    with pytest.raises(ValueError):
        m.mean[0] = 1.0
    with pytest.raises(ValueError):
        m.covariance[0, 0] = 1.0

    # the caller's arrays are copied, not aliased
    mean[0] += 100.0
    assert m.mean[0] != mean[0]
