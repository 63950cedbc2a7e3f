"""
Burst fusion accumulator.

Frames of a burst are registered to the first (reference) frame through a
homography and merged into a running weighted mean. Each pixel is weighted
by how well the new frame agrees with the current estimate, measured in
units of the predicted noise sigma of the difference, and by the inverse
noise of the frame relative to the reference:

    v_x = m^2 * v(f)                      noise of the gained frame
    z   = rms_c(|x - f| / sqrt(v_x + V))  V = variance of the estimate
    w   = (1 - (1 - min_weight) * smoothstep(t_low, t_high, z)) / m^2

so that moving subjects (ghosts) are down-weighted instead of averaged in,
and short exposures brought up by a gain m > 1 count for less. The
variance of the estimate is carried along the running mean:

    V <- (W^2 V + w^2 v_x) / (W + w)^2

State machine:

    EMPTY --add_frame--> ACCUMULATING --add_frame--> ACCUMULATING
      ^                       |
      +--------reset----------+

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum

import numpy as np
from skimage.transform import ProjectiveTransform, warp

from .backend import ArrayBackend, Stage, TileScheduler
from .config import FusionConfig
from .events import EventKind, EventSink, PipelineEvent, emit
from .nlf import NoiseModel
from .utils import as_channels, smoothstep

logger = logging.getLogger(__name__)


class AccumulatorState(Enum):
    """Lifecycle of a FrameFuser."""

    EMPTY = "empty"
    ACCUMULATING = "accumulating"


@dataclass
class FusionState:
    """Snapshot of the accumulator."""

    fused_image: np.ndarray | None = None
    """(H, W, C) float32 running estimate at reference resolution."""

    frame_count: int = 0
    """Frames added since the last reset (down-weighted frames included)."""

    weight_sum: np.ndarray | None = None
    """(H, W) accumulated per-pixel weight."""

    variance: np.ndarray | None = None
    """(H, W, C) predicted variance of the running estimate."""

    @property
    def state(self) -> AccumulatorState:
        return AccumulatorState.EMPTY if self.frame_count == 0 else AccumulatorState.ACCUMULATING


@dataclass
class FrameContribution:
    """Per-frame diagnostics returned by FrameFuser.add_frame()."""

    index: int
    """0-based position of the frame in the burst."""

    mean_weight: float = 1.0
    """Average weight over covered pixels (agreement times exposure factor)."""

    exposure_weight: float = 1.0
    """Inverse relative noise of the frame, 1 / m^2."""

    coverage: float = 1.0
    """Fraction of reference pixels with source data."""

    outlier_fraction: float = 0.0
    """Fraction of covered pixels with z > t_high."""

    misaligned: bool = False


def warp_to_reference(
    frame: np.ndarray,
    homography: np.ndarray,
    output_shape: tuple[int, int],
) -> tuple[np.ndarray, np.ndarray]:
    """
    Resample a frame onto the reference pixel grid.

    Parameters
    ----------
    frame : np.ndarray
        (h, w, C) frame.
    homography : np.ndarray
        3x3 matrix mapping frame (x, y, 1) to reference coordinates.
    output_shape : tuple[int, int]
        Reference (H, W).

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (warped, valid): (H, W, C) float32 frame and (H, W) bool mask of
        reference pixels that received source data.

    Notes
    -----
    The image is warped with bilinear interpolation; the validity mask
    with nearest-neighbor (order=0) so its boundary stays binary.
    """
    homography = np.asarray(homography, dtype=np.float64)
    if homography.shape != (3, 3):
        raise ValueError(f"Homography must be 3x3, got shape {homography.shape}")

    # warp() needs the reference -> frame mapping
    inverse = ProjectiveTransform(matrix=homography).inverse

    source_mask = np.ones(frame.shape[:2], dtype=np.float32)
    valid = warp(
        source_mask,
        inverse,
        output_shape=output_shape,
        preserve_range=True,
        order=0,
        cval=0.0,
    ) > 0.5

    warped = np.empty((output_shape[0], output_shape[1], frame.shape[2]), dtype=np.float32)
    for c in range(frame.shape[2]):
        warped[:, :, c] = warp(
            frame[:, :, c],
            inverse,
            output_shape=output_shape,
            preserve_range=True,
            order=1,
            cval=0.0,
        )
    return warped, valid


def _pixel_weights(
    fused: np.ndarray,
    frame: np.ndarray,
    valid: np.ndarray,
    fused_variance: np.ndarray,
    a: np.ndarray,
    b: np.ndarray,
    t_low: float,
    t_high: float,
    min_weight: float,
):
    """Normalized difference z, agreement weight w and frame variance of a tile."""
    frame_variance = a + b * np.maximum(fused, 0.0)
    ratio = (frame - fused) ** 2 / (frame_variance + fused_variance)
    z = np.sqrt(np.mean(ratio, axis=2))
    w = 1.0 - (1.0 - min_weight) * smoothstep(t_low, t_high, z)
    w = np.where(valid, w, 0.0)
    return z.astype(np.float32), w.astype(np.float32), frame_variance.astype(np.float32)


class FrameFuser:
    """
    Running, noise-aware merge of an aligned burst.

    Parameters
    ----------
    noise_model : NoiseModel
        Noise model of the reference exposure (exposure multiplier 1).
    config : FusionConfig, optional
        Weighting thresholds and misalignment policy.
    observer : EventSink, optional
        Event callback.
    scheduler : TileScheduler, optional
        Tile scheduler for the per-pixel weight computation.

    Examples
    --------
    >>> fuser = FrameFuser(model)
    >>> for frame, h in zip(frames, homographies):
    ...     fuser.add_frame(frame, h)
    >>> merged = fuser.finalize()

    Notes
    -----
    add_frame() is serialized by a lock: a single writer mutates the
    accumulator, parallelism happens inside a frame over row tiles.
    """

    def __init__(
        self,
        noise_model: NoiseModel,
        config: FusionConfig | None = None,
        observer: EventSink | None = None,
        scheduler: TileScheduler | None = None,
    ):
        self.noise_model = noise_model
        self.config = config or FusionConfig()
        self.config.validate()
        self.observer = observer
        self.scheduler = scheduler or TileScheduler()
        self.backend = ArrayBackend(use_gpu=self.config.use_gpu)
        self._lock = threading.Lock()
        self._fused: np.ndarray | None = None
        self._weight_sum: np.ndarray | None = None
        self._variance: np.ndarray | None = None
        self._frame_count = 0
        self._squeeze = False

    @property
    def state(self) -> AccumulatorState:
        return AccumulatorState.EMPTY if self._frame_count == 0 else AccumulatorState.ACCUMULATING

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def reset(self) -> None:
        """Drop the accumulated burst and return to EMPTY."""
        with self._lock:
            count = self._frame_count
            self._fused = None
            self._weight_sum = None
            self._variance = None
            self._frame_count = 0
        emit(
            self.observer,
            PipelineEvent(EventKind.BURST_RESET, "fusion", f"dropped {count} frames"),
            level=logging.DEBUG,
        )

    def add_frame(
        self,
        frame: np.ndarray,
        homography: np.ndarray | None = None,
        exposure_multiplier: float = 1.0,
    ) -> FrameContribution:
        """
        Merge one frame into the running estimate.

        Parameters
        ----------
        frame : np.ndarray
            (h, w) or (h, w, C) frame.
        homography : np.ndarray, optional
            3x3 frame -> reference mapping. Ignored for the first frame;
            None means identity.
        exposure_multiplier : float, default 1.0
            Gain bringing this frame to the reference exposure.

        Returns
        -------
        FrameContribution
            Diagnostics of the merge.

        Raises
        ------
        ValueError
            On channel count mismatch with the noise model or the reference.
        """
        if exposure_multiplier <= 0:
            raise ValueError(f"exposure_multiplier must be positive, got {exposure_multiplier}")
        x = as_channels(frame)
        if x.shape[2] != self.noise_model.n_channels:
            raise ValueError(
                f"Frame has {x.shape[2]} channels, noise model has {self.noise_model.n_channels}"
            )

        with self._lock:
            if self._frame_count == 0:
                return self._start(x, frame.ndim == 2)
            return self._merge(x, homography, exposure_multiplier)

    def _start(self, x: np.ndarray, squeeze: bool) -> FrameContribution:
        self._fused = x.copy()
        self._weight_sum = np.ones(x.shape[:2], dtype=np.float32)
        self._variance = self.noise_model.variance(x).astype(np.float32)
        self._frame_count = 1
        self._squeeze = squeeze
        emit(
            self.observer,
            PipelineEvent(EventKind.FRAME_FUSED, "fusion", f"reference frame {x.shape[1]}x{x.shape[0]}", {"index": 0}),
            level=logging.DEBUG,
        )
        return FrameContribution(index=0)

    def _merge(self, x: np.ndarray, homography: np.ndarray | None, m: float) -> FrameContribution:
        cfg = self.config
        if x.shape[2] != self._fused.shape[2]:
            raise ValueError(f"Frame has {x.shape[2]} channels, reference has {self._fused.shape[2]}")

        x = x * np.float32(m)
        if homography is None and x.shape == self._fused.shape:
            valid = np.ones(x.shape[:2], dtype=bool)
        else:
            h = np.eye(3) if homography is None else homography
            x, valid = warp_to_reference(x, h, self._fused.shape[:2])

        stage = Stage("fusion_weights", _pixel_weights)
        z, w, frame_variance = self.scheduler.run(
            stage, self._fused, x, valid, self._variance,
            a=self.noise_model.a * m * m,
            b=self.noise_model.b * m * m,
            t_low=cfg.t_low,
            t_high=cfg.t_high,
            min_weight=cfg.min_weight,
        )

        n_valid = int(np.count_nonzero(valid))
        outlier_fraction = float(np.count_nonzero((z > cfg.t_high) & valid)) / max(n_valid, 1)
        misaligned = n_valid > 0 and outlier_fraction > cfg.misalignment_fraction
        index = self._frame_count
        if misaligned:
            w = w * np.float32(cfg.misaligned_frame_weight)
            emit(
                self.observer,
                PipelineEvent(
                    EventKind.MISALIGNED_FRAME, "fusion",
                    f"frame {index}: {100 * outlier_fraction:.1f}% of pixels above t_high, "
                    f"down-weighted by {cfg.misaligned_frame_weight}",
                    {"index": index, "outlier_fraction": outlier_fraction},
                ),
                level=logging.WARNING,
            )

        # Gained frames carry m^2 times the reference noise
        exposure_weight = 1.0 / (m * m)
        w = w * np.float32(exposure_weight)

        self._blend(x, w, frame_variance)
        self._frame_count += 1

        contribution = FrameContribution(
            index=index,
            mean_weight=float(w[valid].mean()) if n_valid else 0.0,
            exposure_weight=exposure_weight,
            coverage=n_valid / valid.size,
            outlier_fraction=outlier_fraction,
            misaligned=misaligned,
        )
        emit(
            self.observer,
            PipelineEvent(
                EventKind.FRAME_FUSED, "fusion",
                f"frame {index}: mean weight {contribution.mean_weight:.3f}, coverage {100 * contribution.coverage:.1f}%",
                {"index": index, "mean_weight": contribution.mean_weight},
            ),
            level=logging.DEBUG,
        )
        return contribution

    def _blend(self, x: np.ndarray, w: np.ndarray, frame_variance: np.ndarray) -> None:
        """
        Running weighted mean and its variance.

        f += w (x - f) / (W + w),  V = (W^2 V + w^2 v_x) / (W + w)^2,  W += w
        """
        f, var, ws, xg, wg, vx = self.backend.upload(
            self._fused, self._variance, self._weight_sum, x, w, frame_variance
        )
        total = ws + wg
        f = f + (wg / total)[:, :, None] * (xg - f)
        var = ((ws * ws)[:, :, None] * var + (wg * wg)[:, :, None] * vx) / (total * total)[:, :, None]
        self._fused = self.backend.download(f)
        self._variance = self.backend.download(var)
        self._weight_sum = self.backend.download(total)

    def snapshot(self) -> FusionState:
        """Copy of the current accumulator state."""
        with self._lock:
            if self._frame_count == 0:
                return FusionState()
            return FusionState(
                self._fused.copy(), self._frame_count, self._weight_sum.copy(), self._variance.copy(),
            )

    def finalize(self) -> np.ndarray:
        """
        Return the fused image (a copy, in the layout of the first frame).

        The accumulator stays usable; further frames keep refining it.
        """
        with self._lock:
            if self._frame_count == 0:
                raise ValueError("No frame added")
            out = self._fused.copy()
        return out[:, :, 0] if self._squeeze else out

    def variance_map(self) -> np.ndarray:
        """
        Predicted per-pixel, per-channel variance of the fused estimate.

        Equal to v(f) / N for N identical unit-exposure frames.
        """
        with self._lock:
            if self._frame_count == 0:
                raise ValueError("No frame added")
            return self._variance.copy()

    def estimated_variance(self) -> float:
        """Mean of variance_map()."""
        return float(np.mean(self.variance_map()))
