"""
Tests for the single-level denoiser and the guided filter.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from nlfdenoise.config import DenoiseConfig
from nlfdenoise.denoise import (
    confidence_mask,
    denoise_level,
    despeckle,
    guided_filter,
    guided_filter_coefficients,
)
from nlfdenoise.nlf import NoiseModel
from nlfdenoise.pyramid import compute_gradient


class TestGuidedFilter:
    """Tests for guided filter primitives."""

    def test_degenerate_falls_back_to_unity_gain(self):
        """A flat guide with eps=0 should pass the guide through."""
        rng = np.random.default_rng(0)
        guide = np.full((20, 20), 0.4, dtype=np.float32)
        src = rng.uniform(0, 1, (20, 20)).astype(np.float32)
        a, b = guided_filter_coefficients(guide, src, radius=2, eps=0.0)
        np.testing.assert_allclose(a, 1.0)
        np.testing.assert_allclose(b, 0.0)
        np.testing.assert_allclose(guided_filter(guide, src, 2, 0.0), guide, atol=1e-7)

    def test_self_guided_smooths_noise(self, flat_noisy):
        """Self-guided filtering with eps = noise variance should reduce noise."""
        _, noisy = flat_noisy(height=64, width=64, a=1e-4, b=1e-3)
        x = noisy[:, :, 0]
        out = guided_filter(x, x, radius=3, eps=3e-4)
        assert out.std() < 0.7 * x.std()

    def test_shape_mismatch_raises(self):
        """Guide and source of different shapes should raise ValueError."""
        with pytest.raises(ValueError):
            guided_filter_coefficients(np.zeros((4, 4)), np.zeros((4, 5)), 1, 1e-3)

    def test_per_pixel_eps(self, flat_noisy):
        """eps may be a per-pixel map."""
        _, noisy = flat_noisy(height=32, width=32)
        x = noisy[:, :, 0]
        eps = np.full(x.shape, 3e-4)
        np.testing.assert_allclose(guided_filter(x, x, 2, eps), guided_filter(x, x, 2, 3e-4), rtol=1e-6)


class TestConfidenceMask:
    """Tests for the structure confidence mask."""

    def test_range(self, step_image):
        """The mask should lie in [0, 1]."""
        _, noisy = step_image()
        mask = confidence_mask(noisy[:, :, 0], radius=2, eps=1e-4)
        assert mask.min() >= 0.0 and mask.max() <= 1.0

    def test_high_on_edges_low_on_flat(self, step_image):
        """Structure should get high confidence, flat areas low confidence."""
        clean, _ = step_image()
        mask = confidence_mask(clean[:, :, 0], radius=2, eps=1e-4)
        assert mask[32, 32] > 0.7
        assert mask[32, 5] < 0.1


class TestDenoiseLevel:
    """Tests for denoise_level()."""

    @pytest.mark.parametrize("method", ["bilateral", "guided"])
    def test_flat_field_is_noop(self, method):
        """A noise-free flat field should be returned unchanged."""
        image = np.full((40, 40, 3), 0.25, dtype=np.float32)
        model = NoiseModel.constant(1e-4, 1e-3, n_channels=3)
        result = denoise_level(image, compute_gradient(image), model, DenoiseConfig(method=method))
        np.testing.assert_allclose(result.image, image, atol=1e-6)

    @pytest.mark.parametrize("method", ["bilateral", "guided"])
    def test_reduces_noise(self, flat_noisy, method):
        """Noise on a flat field should be reduced."""
        clean, noisy = flat_noisy(height=64, width=64, a=1e-4, b=1e-3)
        model = NoiseModel.constant(1e-4, 1e-3)
        result = denoise_level(noisy, compute_gradient(noisy), model, DenoiseConfig(method=method))
        assert np.std(result.image - clean) < 0.7 * np.std(noisy - clean)

    def test_preserves_step_edge(self, step_image):
        """A step much larger than the noise should survive denoising."""
        clean, noisy = step_image(low=0.1, high=0.4)
        model = NoiseModel.constant(1e-5, 1e-4)
        result = denoise_level(noisy, compute_gradient(noisy), model, DenoiseConfig(radius=2))
        out = result.image[:, :, 0]
        np.testing.assert_allclose(out[:, 29].mean(), 0.1, atol=0.01)
        np.testing.assert_allclose(out[:, 34].mean(), 0.4, atol=0.01)

    def test_zero_boost_is_identity(self, flat_noisy):
        """A zero boost gives a vanishing range threshold, so nothing is smoothed."""
        _, noisy = flat_noisy()
        model = NoiseModel.constant(1e-4, 1e-3)
        result = denoise_level(noisy, None, model, DenoiseConfig(luma_boost=0.0))
        np.testing.assert_allclose(result.image, noisy, atol=1e-6)

    def test_with_confidence(self, step_image):
        """with_confidence=True should return a mask of the image size."""
        _, noisy = step_image()
        model = NoiseModel.constant(1e-5, 1e-4)
        result = denoise_level(noisy, None, model, with_confidence=True)
        assert result.confidence.shape == noisy.shape[:2]

    def test_channel_mismatch_raises(self, flat_noisy):
        """A model with the wrong channel count should raise ValueError."""
        _, noisy = flat_noisy(channels=3)
        with pytest.raises(ValueError):
            denoise_level(noisy, None, NoiseModel.constant(1e-4, 1e-3, n_channels=1))

    def test_tiled_matches_single_tile(self, flat_noisy, scheduler):
        """Tiled processing should match a single-tile run."""
        from nlfdenoise.backend import TileScheduler

        _, noisy = flat_noisy(height=70, width=40)
        model = NoiseModel.constant(1e-4, 1e-3)
        gradient = compute_gradient(noisy)
        for method in ("bilateral", "guided"):
            config = DenoiseConfig(method=method)
            tiled = denoise_level(noisy, gradient, model, config, scheduler=scheduler)
            whole = denoise_level(
                noisy, gradient, model, config, scheduler=TileScheduler(workers=1, tile_rows=1000),
            )
            np.testing.assert_allclose(tiled.image, whole.image, atol=1e-6)

    def test_despeckle_prepass(self, flat_noisy):
        """despeckle=True should remove a hot pixel the smoother alone leaves behind."""
        _, noisy = flat_noisy(height=48, width=48)
        noisy[20, 20, 0] = 1.0
        model = NoiseModel.constant(1e-4, 1e-3)
        plain = denoise_level(noisy, None, model, DenoiseConfig())
        cleaned = denoise_level(noisy, None, model, DenoiseConfig(despeckle=True))
        assert plain.image[20, 20, 0] > 0.6
        assert cleaned.image[20, 20, 0] < 0.3


class TestDespeckle:
    """Tests for impulse outlier removal."""

    def test_removes_hot_pixels_only(self, flat_noisy):
        """Isolated outliers are replaced; ordinary noise is kept."""
        _, noisy = flat_noisy(height=64, width=64, channels=2)
        hot = [(5, 7, 0), (30, 40, 1), (63, 0, 0)]
        for y, x, c in hot:
            noisy[y, x, c] = 0.9
        out = despeckle(noisy, NoiseModel.constant(1e-4, 1e-3, n_channels=2), threshold=4.0)

        for y, x, c in hot:
            assert out[y, x, c] < 0.3
        changed = out != noisy
        for y, x, c in hot:
            changed[y, x, c] = False
        assert changed.mean() < 0.01

    def test_keeps_layout(self, flat_noisy):
        """A 2D input comes back 2D."""
        _, noisy = flat_noisy(height=16, width=16)
        out = despeckle(noisy[:, :, 0], NoiseModel.constant(1e-4, 1e-3))
        assert out.shape == (16, 16)
        assert out.dtype == np.float32

    def test_tiled_matches_single_tile(self, flat_noisy, scheduler):
        """The one-row halo makes tiling exact."""
        from nlfdenoise.backend import TileScheduler

        _, noisy = flat_noisy(height=50, width=20)
        noisy[16, 3, 0] = 0.8
        model = NoiseModel.constant(1e-4, 1e-3)
        tiled = despeckle(noisy, model, scheduler=scheduler)
        whole = despeckle(noisy, model, scheduler=TileScheduler(workers=1, tile_rows=1000))
        np.testing.assert_array_equal(tiled, whole)

    def test_channel_mismatch_raises(self, flat_noisy):
        """A model with the wrong channel count should raise ValueError."""
        _, noisy = flat_noisy(channels=3)
        with pytest.raises(ValueError):
            despeckle(noisy, NoiseModel.constant(1e-4, 1e-3, n_channels=2))


class TestGuidedLevel:
    """Tests for denoise_level() with an external guide."""

    @staticmethod
    def _two_channel_step(size=64, seed=5):
        rng = np.random.default_rng(seed)
        step = np.full((size, size), 0.1)
        step[:, size // 2:] = 0.4
        image = np.empty((size, size, 2))
        image[:, :, 0] = 0.25 + 0.006 * rng.standard_normal((size, size))
        image[:, :, 1] = step + 0.006 * rng.standard_normal((size, size))
        return image.astype(np.float32), step.astype(np.float32)

    def test_chroma_follows_guide_edges(self):
        """A guide carrying the edge keeps it in a channel whose own channel 0 is flat."""
        image, step = self._two_channel_step()
        model = NoiseModel.constant(1e-5, 1e-4, n_channels=2)
        config = DenoiseConfig(method="guided")
        unguided = denoise_level(image, None, model, config).image[:, :, 1]
        guided = denoise_level(image, None, model, config, guide=step).image[:, :, 1]
        assert abs(guided[:, 31].mean() - 0.1) < 0.02
        assert unguided[:, 31].mean() - 0.1 > 0.05

    def test_confidence_read_on_guide(self):
        """With a guide, the confidence mask sees the guide's edge."""
        image, step = self._two_channel_step()
        model = NoiseModel.constant(1e-5, 1e-4, n_channels=2)
        result = denoise_level(image, None, model, DenoiseConfig(method="guided"), with_confidence=True, guide=step)
        assert result.confidence[32, 32] > 0.7
        assert result.confidence[32, 5] < 0.1

    def test_guide_shape_mismatch_raises(self):
        """A guide of the wrong size should raise ValueError."""
        image, _ = self._two_channel_step()
        model = NoiseModel.constant(1e-5, 1e-4, n_channels=2)
        with pytest.raises(ValueError):
            denoise_level(image, None, model, guide=np.zeros((10, 10), np.float32))
