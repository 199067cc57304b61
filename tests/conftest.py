import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from scipy.ndimage import gaussian_filter

from sift3d.Geometry.icosahedron import Mesh


@pytest.fixture(scope="session")
def mesh():
    return Mesh()


def make_blob(sigma, n=64):
    """n^3 volume with a single Gaussian blob centred on voxel (n // 2, n // 2, n // 2)."""
    c = n // 2
    idx = np.arange(n, dtype=np.float64)
    x, y, z = np.meshgrid(idx, idx, idx, indexing="ij")
    sq = (x - c) ** 2 + (y - c) ** 2 + (z - c) ** 2
    return np.exp(-0.5 * sq / sigma ** 2).astype(np.float32)


@pytest.fixture
def blob_volume():
    return make_blob(3.0)


@pytest.fixture
def blob():
    return make_blob


def make_smooth_noise(shape, seed=0, sigma=2.0):
    rng = np.random.default_rng(seed)
    return gaussian_filter(rng.normal(size=shape), sigma).astype(np.float32)


@pytest.fixture
def smooth_noise():
    return make_smooth_noise


def quadric_volume(shape, center, coeffs):
    """f = sum_i coeffs[i] * (p_i - center_i)^2 sampled at voxel centres i + 0.5."""
    axes = [np.arange(n, dtype=np.float64) + 0.5 for n in shape]
    x, y, z = np.meshgrid(*axes, indexing="ij")
    return (coeffs[0] * (x - center[0]) ** 2 +
            coeffs[1] * (y - center[1]) ** 2 +
            coeffs[2] * (z - center[2]) ** 2)


@pytest.fixture
def quadric():
    return quadric_volume
