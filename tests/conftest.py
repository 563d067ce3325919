"""
Pytest configuration and fixtures for minicnn tests
"""
import os

# Device tests run on numba's CUDA simulator unless a real GPU is chosen.
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from minicnn import Format, Tensor  # noqa: E402


@pytest.fixture
def rng():
    """A seeded generator so random tests are reproducible"""
    return np.random.default_rng(42)


@pytest.fixture
def make_tensor():
    """Build a host tensor from values in storage order"""

    def make(values, width, height=1, depth=1):
        return Tensor.make(values, Format(width, height, depth))

    return make


@pytest.fixture
def device_copy():
    """Build an owning device copy of a host tensor"""

    def copy(t):
        out = Tensor.make(t.to_numpy().reshape(-1), t.format)
        out.enable_device()
        return out

    return copy
