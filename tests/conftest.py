import numpy as np
import pytest
from sklearn.datasets import load_iris


@pytest.fixture(scope="session")
def iris() -> np.ndarray:
    """The 150 x 4 Iris measurements (sepal length/width, petal length/width)."""
    return load_iris().data.astype(np.float64)


@pytest.fixture(scope="session")
def iris_weights(iris) -> np.ndarray:
    """Deterministic fractional weights in [0, 1), one per Iris row."""
    x = np.pi * (np.arange(iris.shape[0]) + np.pi)
    return x - np.trunc(x)
