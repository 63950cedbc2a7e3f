"""
Tests for local statistics collection.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from nlfdenoise.backend import TileScheduler
from nlfdenoise.config import NoiseConfig
from nlfdenoise.statistics import (
    Sample,
    SampleSet,
    collect_luma_statistics,
    collect_raw_statistics,
    collect_samples,
    collect_statistics,
)


class TestSampleSet:
    """Tests for the SampleSet container."""

    def test_from_flat_samples(self):
        """A flat Sample list should give a single-channel set."""
        samples = SampleSet.from_samples([Sample(0.1, 1e-4), Sample(0.2, 2e-4)])
        assert samples.n_samples == 2
        assert samples.n_channels == 1
        assert samples.kurtosis is None

    def test_from_nested_samples(self):
        """Nested sequences should give one column per channel."""
        rows = [(Sample(0.1, 1e-4, 0.0), Sample(0.2, 2e-4, 0.1))] * 3
        samples = SampleSet.from_samples(rows)
        assert samples.mean.shape == (3, 2)
        np.testing.assert_allclose(samples.kurtosis[:, 1], 0.1)

    def test_read_only(self):
        """Sample arrays should not be writable."""
        samples = SampleSet(np.array([0.1, 0.2]), np.array([1e-4, 2e-4]))
        with pytest.raises(ValueError):
            samples.mean[0] = 1.0

    def test_shape_mismatch_raises(self):
        """Mean and variance of different shapes should raise ValueError."""
        with pytest.raises(ValueError):
            SampleSet(np.zeros(3), np.zeros(4))

    def test_iteration(self):
        """Iterating should yield per-channel Sample tuples."""
        samples = SampleSet(np.array([0.1, 0.2]), np.array([1e-4, 2e-4]))
        rows = list(samples)
        assert rows[1] == (Sample(0.2, 2e-4, None),)


class TestCollectStatistics:
    """Tests for per-channel window statistics."""

    def test_one_sample_per_pixel(self, flat_noisy):
        """Every pixel should yield one sample per channel."""
        _, noisy = flat_noisy(height=40, width=30, channels=3)
        samples = collect_statistics(noisy)
        assert samples.mean.shape == (40 * 30, 3)
        assert samples.kurtosis.shape == (40 * 30, 3)

    def test_flat_field_moments(self, flat_noisy):
        """Mean and variance should match the generating noise."""
        _, noisy = flat_noisy(height=128, width=128, level=0.2, a=1e-4, b=1e-3)
        samples = collect_statistics(noisy)
        assert np.mean(samples.mean) == pytest.approx(0.2, abs=1e-3)
        assert np.mean(samples.variance) == pytest.approx(3e-4, rel=0.05)
        assert abs(np.nanmean(samples.kurtosis)) < 0.3

    def test_constant_image(self):
        """A constant image should give zero variance and NaN kurtosis."""
        samples = collect_statistics(np.full((16, 16), 0.3, dtype=np.float32))
        np.testing.assert_allclose(samples.mean, 0.3, rtol=1e-6)
        np.testing.assert_allclose(samples.variance, 0.0, atol=1e-12)
        assert np.all(np.isnan(samples.kurtosis))

    def test_without_kurtosis(self, flat_noisy):
        """with_kurtosis=False should skip the fourth moment."""
        _, noisy = flat_noisy()
        assert collect_statistics(noisy, with_kurtosis=False).kurtosis is None

    def test_even_window_raises(self, flat_noisy):
        """Even window sizes should raise ValueError."""
        _, noisy = flat_noisy()
        with pytest.raises(ValueError):
            collect_statistics(noisy, window=8)

    @pytest.mark.parametrize("window", [1, -1])
    def test_window_below_three_raises(self, flat_noisy, window):
        """Windows below 3 should be rejected like NoiseConfig.validate() does."""
        _, noisy = flat_noisy()
        with pytest.raises(ValueError):
            collect_statistics(noisy, window=window)
        with pytest.raises(ValueError):
            NoiseConfig(window=window).validate()

    def test_gradient_gating(self, flat_noisy):
        """Pixels above the gradient threshold should get NaN variance."""
        _, noisy = flat_noisy(height=32, width=32)
        gradient = np.zeros((32, 32), dtype=np.float32)
        gradient[:, :8] = 1.0
        samples = collect_statistics(noisy, gradient=gradient, gradient_threshold=0.5)
        variance = samples.variance[:, 0].reshape(32, 32)
        assert np.all(np.isnan(variance[:, :8]))
        assert np.all(np.isfinite(variance[:, 8:]))

    def test_tiled_matches_single_tile(self, flat_noisy, scheduler):
        """Tiled collection should match a single-tile run."""
        _, noisy = flat_noisy(height=70, width=50, channels=2)
        tiled = collect_statistics(noisy, scheduler=scheduler)
        whole = collect_statistics(noisy, scheduler=TileScheduler(workers=1, tile_rows=1000))
        np.testing.assert_allclose(tiled.mean, whole.mean, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(tiled.variance, whole.variance, rtol=1e-8, atol=1e-12)


class TestCollectionModes:
    """Tests for luma and raw Bayer statistics."""

    def test_luma_shares_abscissa(self, flat_noisy):
        """Every channel should use the channel 0 mean."""
        _, noisy = flat_noisy(channels=3)
        noisy[:, :, 1] -= 0.15
        samples = collect_luma_statistics(noisy)
        np.testing.assert_array_equal(samples.mean[:, 1], samples.mean[:, 0])
        np.testing.assert_array_equal(samples.mean[:, 2], samples.mean[:, 0])

    def test_raw_block_statistics(self):
        """Raw mode should give one sample per 2x2 block and four planes."""
        rng = np.random.default_rng(1)
        bayer = np.zeros((64, 48), dtype=np.float32)
        bayer[0::2, 0::2] = 0.1
        bayer[0::2, 1::2] = 0.2
        bayer[1::2, 0::2] = 0.2
        bayer[1::2, 1::2] = 0.05
        bayer += rng.normal(0, 0.005, bayer.shape).astype(np.float32)

        samples = collect_raw_statistics(bayer, pattern="RGGB")

        assert samples.mean.shape == (32 * 24, 4)
        np.testing.assert_allclose(samples.mean.mean(axis=0), [0.1, 0.2, 0.2, 0.05], atol=2e-3)

    def test_collect_samples_dispatch(self, flat_noisy):
        """collect_samples should honour the configured layout."""
        _, noisy = flat_noisy(channels=3)
        samples = collect_samples(noisy, NoiseConfig(statistics="luma", with_kurtosis=False))
        np.testing.assert_array_equal(samples.mean[:, 2], samples.mean[:, 0])
        assert samples.kurtosis is None
