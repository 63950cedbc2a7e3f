"""
Pytest configuration and fixtures.

Synthetic images carry signal-dependent Gaussian noise with a known
noise level function: variance = a + b * clean.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from nlfdenoise.backend import TileScheduler
from nlfdenoise.statistics import SampleSet


@pytest.fixture
def noisy_ramp():
    """Create a horizontal intensity ramp with known signal-dependent noise."""
    def _create(height=256, width=512, a=(2e-4,), b=(2e-3,), low=0.02, high=0.45, seed=42):
        """
        Return (clean, noisy) float32 arrays of shape (height, width, C).

        C is the length of ``a``/``b``. The ramp is shallow enough that
        its contribution to the 9x9 window variance is negligible.
        """
        rng = np.random.default_rng(seed)
        a = np.asarray(a, dtype=np.float64)
        b = np.asarray(b, dtype=np.float64)
        ramp = np.linspace(low, high, width)
        clean = np.broadcast_to(ramp[np.newaxis, :, np.newaxis], (height, width, a.size)).copy()
        noisy = clean + rng.standard_normal(clean.shape) * np.sqrt(a + b * clean)
        return clean.astype(np.float32), noisy.astype(np.float32)

    return _create


@pytest.fixture
def flat_noisy():
    """Create a flat field with known signal-dependent noise."""
    def _create(height=64, width=64, channels=1, level=0.2, a=1e-4, b=1e-3, seed=0):
        rng = np.random.default_rng(seed)
        clean = np.full((height, width, channels), level, dtype=np.float64)
        noisy = clean + rng.standard_normal(clean.shape) * np.sqrt(a + b * level)
        return clean.astype(np.float32), noisy.astype(np.float32)

    return _create


@pytest.fixture
def linear_samples():
    """Create a SampleSet scattered around a known linear model."""
    def _create(n=2000, a=1e-4, b=1e-3, scatter=0.05, low=0.01, high=0.4, seed=7):
        """
        Means uniform in [low, high]; variance = (a + b * mean) * (1 + scatter * N(0, 1)).
        """
        rng = np.random.default_rng(seed)
        mean = rng.uniform(low, high, n)
        variance = (a + b * mean) * (1.0 + scatter * rng.standard_normal(n))
        return SampleSet(mean, variance)

    return _create


@pytest.fixture
def step_image():
    """Create a vertical step edge with noise."""
    def _create(height=64, width=64, low=0.1, high=0.4, a=1e-5, b=1e-4, seed=3):
        rng = np.random.default_rng(seed)
        clean = np.full((height, width, 1), low, dtype=np.float64)
        clean[:, width // 2:, :] = high
        noisy = clean + rng.standard_normal(clean.shape) * np.sqrt(a + b * clean)
        return clean.astype(np.float32), noisy.astype(np.float32)

    return _create


@pytest.fixture
def scheduler():
    """Small-tile, multi-worker scheduler exercising tile stitching."""
    return TileScheduler(workers=4, tile_rows=16)
