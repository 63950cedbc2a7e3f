"""
Tests for the backend module (fusion accumulator device and tile scheduling).

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest
from scipy import ndimage

from nlfdenoise.backend import (
    ArrayBackend,
    Stage,
    TileScheduler,
    get_backend_summary,
    is_gpu_available,
)


class TestDevice:
    """Tests for device detection."""

    def test_is_gpu_available_returns_bool(self):
        """is_gpu_available should return a boolean."""
        assert isinstance(is_gpu_available(), bool)

    def test_summary_matches_device(self):
        """The summary names the CPU path when no GPU answers."""
        summary = get_backend_summary()
        if is_gpu_available():
            assert summary.startswith("CuPy/GPU")
        else:
            assert summary == "NumPy/CPU"


class TestArrayBackend:
    """Tests for the fusion accumulator backend."""

    def test_cpu_backend(self):
        """use_gpu=False should hold planes in NumPy."""
        backend = ArrayBackend(use_gpu=False)
        assert backend.xp is np
        assert not backend.use_gpu

    def test_upload_casts_to_float64(self):
        """Planes are blended in float64."""
        backend = ArrayBackend(use_gpu=False)
        fused, weights = backend.upload(np.ones((2, 2, 1), np.float32), np.ones((2, 2), np.float32))
        assert fused.dtype == np.float64
        assert weights.shape == (2, 2)

    def test_download_returns_float32(self):
        """Planes come back to the host in float32."""
        backend = ArrayBackend(use_gpu=False)
        out = backend.download(np.array([0.5, 1.5], dtype=np.float64))
        assert isinstance(out, np.ndarray)
        assert out.dtype == np.float32

    def test_gpu_request_without_gpu(self):
        """Requesting the GPU should silently fall back when none is present."""
        backend = ArrayBackend(use_gpu=True)
        assert backend.use_gpu == is_gpu_available()
        (x,) = backend.upload(np.array([1.0, 2.0]))
        np.testing.assert_array_equal(backend.download(x * 2), [2.0, 4.0])


def _blur(image, size):
    return ndimage.uniform_filter(image, size=size, mode="nearest")


def _split(image):
    return image * 2.0, image + 1.0


class TestTileScheduler:
    """Tests for TileScheduler."""

    def test_tile_bounds_cover_rows(self):
        """Tiles should cover every row exactly once."""
        scheduler = TileScheduler(workers=2, tile_rows=16)
        assert scheduler.tile_bounds(40) == [(0, 16), (16, 32), (32, 40)]

    def test_invalid_tile_rows_raises(self):
        """tile_rows < 1 should raise ValueError."""
        with pytest.raises(ValueError):
            TileScheduler(tile_rows=0)

    def test_halo_gives_exact_result(self):
        """A stage with the right halo should match the untiled computation."""
        rng = np.random.default_rng(0)
        image = rng.uniform(0, 1, (70, 33)).astype(np.float32)
        stage = Stage("blur", _blur, halo=2)
        out = TileScheduler(workers=4, tile_rows=8).run(stage, image, size=5)
        np.testing.assert_allclose(out, _blur(image, 5), rtol=1e-6)

    def test_tuple_outputs(self):
        """Stages returning tuples should be stitched per output."""
        image = np.arange(30, dtype=np.float32).reshape(10, 3)
        doubled, shifted = TileScheduler(workers=3, tile_rows=4).run(Stage("split", _split), image)
        np.testing.assert_array_equal(doubled, image * 2)
        np.testing.assert_array_equal(shifted, image + 1)

    def test_none_inputs_pass_through(self):
        """None inputs should reach the transform unchanged."""
        seen = []

        def transform(x, y):
            seen.append(y)
            return x

        image = np.ones((12, 4))
        TileScheduler(workers=2, tile_rows=5).run(Stage("record", transform), image, None)
        assert seen == [None, None, None]

    def test_sequential_matches_parallel(self):
        """workers=1 should give the same result as a thread pool."""
        rng = np.random.default_rng(1)
        image = rng.uniform(0, 1, (50, 20))
        stage = Stage("blur", _blur, halo=1)
        seq = TileScheduler(workers=1, tile_rows=7).run(stage, image, size=3)
        par = TileScheduler(workers=4, tile_rows=7).run(stage, image, size=3)
        np.testing.assert_array_equal(seq, par)

    def test_row_mismatch_raises(self):
        """Inputs with different row counts should raise ValueError."""
        with pytest.raises(ValueError):
            TileScheduler().run(Stage("id", lambda a, b: a), np.zeros((4, 4)), np.zeros((5, 4)))

    def test_no_array_raises(self):
        """A stage needs at least one array input."""
        with pytest.raises(ValueError):
            TileScheduler().run(Stage("id", lambda a: a), None)
