"""
Tests for the burst fusion accumulator.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from nlfdenoise.config import FusionConfig
from nlfdenoise.events import EventKind, EventRecorder
from nlfdenoise.fusion import AccumulatorState, FrameFuser, warp_to_reference
from nlfdenoise.nlf import NoiseModel


@pytest.fixture
def model():
    return NoiseModel.constant(1e-4, 1e-3)


def _noisy_frames(n, shape=(48, 48), level=0.2, a=1e-4, b=1e-3, seed=5):
    rng = np.random.default_rng(seed)
    sigma = np.sqrt(a + b * level)
    return [
        (level + sigma * rng.standard_normal(shape)).astype(np.float32)
        for _ in range(n)
    ]


class TestStateMachine:
    """Tests for the accumulator lifecycle."""

    def test_starts_empty(self, model):
        """A new fuser should be EMPTY with zero frames."""
        fuser = FrameFuser(model)
        assert fuser.state == AccumulatorState.EMPTY
        assert fuser.frame_count == 0
        assert fuser.snapshot().state == AccumulatorState.EMPTY

    def test_finalize_empty_raises(self, model):
        """Finalizing without any frame should raise ValueError."""
        with pytest.raises(ValueError):
            FrameFuser(model).finalize()

    def test_first_frame_is_reference(self, model):
        """The first frame should be copied into the accumulator."""
        frame = _noisy_frames(1)[0]
        fuser = FrameFuser(model)
        contribution = fuser.add_frame(frame)
        assert contribution.index == 0
        assert fuser.state == AccumulatorState.ACCUMULATING
        np.testing.assert_array_equal(fuser.finalize(), frame)
        assert fuser.finalize().shape == frame.shape

    def test_reset(self, model):
        """reset() should return to EMPTY and emit BURST_RESET."""
        recorder = EventRecorder()
        fuser = FrameFuser(model, observer=recorder)
        for frame in _noisy_frames(2):
            fuser.add_frame(frame)
        fuser.reset()
        assert fuser.state == AccumulatorState.EMPTY
        assert recorder.of_kind(EventKind.BURST_RESET)
        with pytest.raises(ValueError):
            fuser.variance_map()

    def test_finalize_returns_copy(self, model):
        """Mutating the finalized image should not touch the accumulator."""
        fuser = FrameFuser(model)
        fuser.add_frame(np.full((8, 8), 0.2, dtype=np.float32))
        out = fuser.finalize()
        out[:] = 0.0
        assert fuser.finalize()[0, 0] == pytest.approx(0.2)


class TestWeighting:
    """Tests for noise-aware per-pixel weights."""

    def test_identical_frames(self, model):
        """N identical frames should give full weights and a variance falling as v/N."""
        frame = _noisy_frames(1)[0]
        fuser = FrameFuser(model)
        fuser.add_frame(frame)
        single = fuser.estimated_variance()
        previous = single
        for n in range(2, 6):
            contribution = fuser.add_frame(frame)
            assert contribution.mean_weight == pytest.approx(1.0)
            current = fuser.estimated_variance()
            assert current < previous
            assert current == pytest.approx(single / n, rel=1e-5)
            previous = current
        state = fuser.snapshot()
        np.testing.assert_allclose(state.weight_sum, 5.0)
        np.testing.assert_allclose(fuser.finalize(), frame, atol=1e-6)

    def test_noise_averaging(self, model):
        """Independent noisy frames should average down the noise."""
        frames = _noisy_frames(8)
        fuser = FrameFuser(model)
        for frame in frames:
            fuser.add_frame(frame)
        assert np.std(fuser.finalize()) < 0.5 * np.std(frames[0])

    def test_ghost_down_weighted(self, model):
        """A moving bright square should be mostly rejected."""
        frames = _noisy_frames(4)
        for frame in frames[1:]:
            frame[16:24, 16:24] = 0.8
        recorder = EventRecorder()
        fuser = FrameFuser(model, observer=recorder)
        for frame in frames:
            fuser.add_frame(frame)
        fused = fuser.finalize()
        assert fused[16:24, 16:24].mean() < 0.35
        assert not recorder.of_kind(EventKind.MISALIGNED_FRAME)

    def test_misaligned_frame(self, model):
        """A frame disagreeing everywhere should be flagged but still counted."""
        recorder = EventRecorder()
        fuser = FrameFuser(model, FusionConfig(misaligned_frame_weight=0.1), observer=recorder)
        fuser.add_frame(np.full((32, 32), 0.2, dtype=np.float32))
        contribution = fuser.add_frame(np.full((32, 32), 0.6, dtype=np.float32))
        assert contribution.misaligned
        assert contribution.outlier_fraction == pytest.approx(1.0)
        assert contribution.mean_weight == pytest.approx(0.05 * 0.1)
        assert fuser.frame_count == 2
        assert len(recorder.of_kind(EventKind.MISALIGNED_FRAME)) == 1

    def test_exposure_multiplier(self, model):
        """A half-exposure frame with multiplier 2 should agree but weigh 1/4."""
        fuser = FrameFuser(model)
        fuser.add_frame(np.full((16, 16), 0.3, dtype=np.float32))
        contribution = fuser.add_frame(np.full((16, 16), 0.15, dtype=np.float32), exposure_multiplier=2.0)
        assert contribution.exposure_weight == pytest.approx(0.25)
        assert contribution.mean_weight == pytest.approx(0.25)
        np.testing.assert_allclose(fuser.snapshot().weight_sum, 1.25)
        np.testing.assert_allclose(fuser.finalize(), 0.3, rtol=1e-6)

    def test_gained_frame_lowers_variance(self, model):
        """A short exposure brought up by gain 3 should still reduce the noise."""
        rng = np.random.default_rng(11)
        shape, level, m = (64, 64), 0.2, 3.0
        v = 1e-4 + 1e-3 * level
        reference = (level + np.sqrt(v) * rng.standard_normal(shape)).astype(np.float32)
        # After the gain the short frame carries m^2 times the reference variance
        short = ((level + m * np.sqrt(v) * rng.standard_normal(shape)) / m).astype(np.float32)

        fuser = FrameFuser(model)
        fuser.add_frame(reference)
        single = fuser.estimated_variance()
        fuser.add_frame(short, exposure_multiplier=m)
        fused = fuser.finalize()

        assert np.var(fused) < np.var(reference)
        assert fuser.estimated_variance() < single
        assert fuser.estimated_variance() == pytest.approx(np.var(fused), rel=0.15)

    def test_invalid_exposure_multiplier_raises(self, model):
        """Non-positive exposure multipliers should raise ValueError."""
        fuser = FrameFuser(model)
        with pytest.raises(ValueError):
            fuser.add_frame(np.zeros((8, 8)), exposure_multiplier=0.0)

    def test_channel_mismatch_raises(self, model):
        """Frames must match the model channel count."""
        with pytest.raises(ValueError):
            FrameFuser(model).add_frame(np.zeros((8, 8, 3)))

    def test_gpu_request_falls_back(self, model):
        """use_gpu=True should work on CPU-only systems."""
        fuser = FrameFuser(model, FusionConfig(use_gpu=True))
        for frame in _noisy_frames(3):
            fuser.add_frame(frame)
        assert fuser.finalize().shape == (48, 48)


class TestRegistration:
    """Tests for homography warping in the accumulator."""

    def test_translation_coverage(self, model):
        """A 3-pixel shift should leave the first 3 reference columns uncovered."""
        frame = np.full((20, 30), 0.25, dtype=np.float32)
        shift = np.array([[1.0, 0.0, 3.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        fuser = FrameFuser(model)
        fuser.add_frame(frame)
        contribution = fuser.add_frame(frame, shift)
        weight_sum = fuser.snapshot().weight_sum
        np.testing.assert_allclose(weight_sum[:, :3], 1.0)
        np.testing.assert_allclose(weight_sum[:, 4:], 2.0, atol=1e-5)
        assert contribution.coverage == pytest.approx(27 / 30)

    def test_warp_identity(self):
        """The identity homography should reproduce the frame."""
        rng = np.random.default_rng(2)
        frame = rng.uniform(0, 1, (10, 12, 2)).astype(np.float32)
        warped, valid = warp_to_reference(frame, np.eye(3), (10, 12))
        assert valid.all()
        np.testing.assert_allclose(warped, frame, atol=1e-6)

    def test_bad_homography_raises(self):
        """Non 3x3 homographies should raise ValueError."""
        with pytest.raises(ValueError):
            warp_to_reference(np.zeros((8, 8, 1)), np.eye(2), (8, 8))


class TestConcurrency:
    """Tests for thread-safe accumulation."""

    def test_parallel_add_frame(self, model):
        """Concurrent add_frame calls should all be counted."""
        frame = np.full((32, 32), 0.2, dtype=np.float32)
        fuser = FrameFuser(model)
        fuser.add_frame(frame)
        with ThreadPoolExecutor(max_workers=4) as executor:
            list(executor.map(lambda _: fuser.add_frame(frame), range(8)))
        assert fuser.frame_count == 9
        np.testing.assert_allclose(fuser.snapshot().weight_sum, 9.0)
