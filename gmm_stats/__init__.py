"""
gmm_stats: mergeable weighted sufficient statistics (mean and full covariance)
and a Gaussian Mixture Model trained on top of them by incremental EM.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    "DimensionMismatchError",
    "EPSILON",
    "GaussianMixtureModel",
    "InvalidCovarianceError",
    "Mixture",
    "SufficientStatistics",
    "log",
    "reduce_statistics",
]

import logging

from gmm_stats._gaussian_mixture import EPSILON, GaussianMixtureModel
from gmm_stats._mixture import Mixture
from gmm_stats._sufficient_statistics import SufficientStatistics, reduce_statistics
from gmm_stats.exceptions import DimensionMismatchError, InvalidCovarianceError

logging.getLogger(__name__).addHandler(logging.NullHandler())


def log(level: int = logging.DEBUG, handler: logging.Handler | None = None) -> None:
    """
    Attach a handler to the package logger. Useful for watching EM progress.

    Parameters
    ----------
    level : int, default logging.DEBUG
        Level for the package logger.
    handler : logging.Handler, optional
        Handler to attach; a formatted StreamHandler when omitted.
    """
    logger = logging.getLogger(__name__)
    if handler is None:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s:%(lineno)s - %(funcName)s() | %(message)s")
        )
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.debug(f"Added logging handler {handler} to logger: {__name__}")
