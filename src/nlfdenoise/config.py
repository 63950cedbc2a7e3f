"""
Configuration dataclasses for the nlfdenoise pipeline.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal

import numpy as np

if TYPE_CHECKING:
    from .events import PipelineEvent
    from .nlf import NoiseModel


class FitStatus(Enum):
    """Outcome codes for a noise model fit."""

    OK = "ok"
    DEGRADED_FIT = "degraded_fit"  # Second pass rejected, first pass kept
    SINGULAR_MODEL = "singular_model"  # Regression denominator ~ 0, floor applied
    PRIOR = "prior"  # No fit possible, caller prior used


@dataclass
class NoiseConfig:
    """
    Configuration for statistics collection and noise model fitting.

    Defaults come from empirical tuning on reference captures and may be
    recalibrated per sensor.
    """

    # --- Statistics collection ---
    window: int = 9
    """Side of the square neighborhood used for local statistics (odd)."""

    border: Literal["nearest", "reflect", "mirror"] = "nearest"
    """Border policy for neighborhoods crossing the image edge ('nearest' = clamp)."""

    with_kurtosis: bool = True
    """Compute local excess kurtosis alongside mean and variance."""

    statistics: Literal["channel", "luma", "raw"] = "channel"
    """Sample layout: 'channel' (per-channel mean), 'luma' (channel 0 mean for
    every channel, YCbCr style) or 'raw' (2x2 Bayer blocks, one plane per channel)."""

    bayer_pattern: Literal["RGGB", "BGGR", "GRBG", "GBRG"] = "RGGB"
    """CFA layout used when statistics='raw'."""

    gradient_threshold: float | None = None
    """Discard samples whose gradient magnitude exceeds this value (None = keep all)."""

    # --- Linear regime filter ---
    min_value: float = 0.001
    """Lowest mean intensity considered linear (normalized [0, 1] scale)."""

    max_value: float = 0.5
    """Highest mean intensity considered linear."""

    variance_max: float = 0.001
    """A-priori ceiling on sample variance."""

    kurtosis_range: tuple[float, float] | None = None
    """Accepted (min, max) excess kurtosis, exclusive. None disables the test."""

    # --- Fitting ---
    fitter: Literal["two_pass", "lmeds"] = "two_pass"
    """Fitting strategy: closed-form two-pass least squares or LMedS consensus."""

    outlier_multiplier: float = 0.5
    """Second pass keeps samples with residual^2 <= outlier_multiplier * MSE."""

    lmeds_iterations: int = 100
    """Number of random 2-sample subsets tried by the LMedS fitter."""

    lmeds_seed: int | None = 0
    """Seed for the LMedS subset generator (None = nondeterministic)."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.window < 3 or self.window % 2 == 0:
            raise ValueError(f"window must be an odd integer >= 3, got {self.window}")
        if not 0.0 <= self.min_value < self.max_value:
            raise ValueError(
                f"min_value/max_value must satisfy 0 <= min < max, got {self.min_value}/{self.max_value}"
            )
        if self.variance_max <= 0:
            raise ValueError(f"variance_max must be positive, got {self.variance_max}")
        if self.outlier_multiplier <= 0:
            raise ValueError(f"outlier_multiplier must be positive, got {self.outlier_multiplier}")
        if self.lmeds_iterations < 1:
            raise ValueError(f"lmeds_iterations must be >= 1, got {self.lmeds_iterations}")
        if self.kurtosis_range is not None and self.kurtosis_range[0] >= self.kurtosis_range[1]:
            raise ValueError(f"kurtosis_range must be (min, max) with min < max, got {self.kurtosis_range}")


@dataclass
class DenoiseConfig:
    """
    Configuration for the multiscale denoiser.

    Per-level sequences are ordered finest (level 0) to coarsest.
    """

    # --- Pyramid ---
    levels: int = 3
    """Number of pyramid levels (level 0 = full resolution)."""

    detail_weights: tuple[float, ...] | None = None
    """Detail gain per band, one entry per level except the coarsest. None = all 1.0."""

    level_nlf: Literal["scaled", "measured"] = "scaled"
    """Per-level noise model: scaled from the base model or re-measured on each level."""

    # --- Level denoiser ---
    method: Literal["bilateral", "guided"] = "bilateral"
    """Smoothing kernel: noise-bounded range filter or noise-adaptive guided filter."""

    radius: int = 2
    """Half-size of the range filter window."""

    threshold_multiplier: float = 2.0
    """Range threshold in units of the predicted noise sigma."""

    luma_boost: float = 1.0
    """Denoise strength multiplier for channel 0."""

    chroma_boost: float = 1.0
    """Denoise strength multiplier for channels 1..C-1."""

    gradient_threshold: float = 4.0
    """Gradient magnitude (in noise sigmas) above which edges are protected."""

    gradient_boost: float = 0.75
    """Fraction of the correction withheld on fully detected edges (0-1)."""

    despeckle: bool = False
    """Replace impulse outliers by their 3x3 median before smoothing."""

    despeckle_threshold: float = 3.0
    """Deviation from the median, in noise sigmas, that marks a speckle."""

    # --- Guided filter ---
    guide: Literal["luma_first", "rgb"] = "luma_first"
    """Guide derivation: channel 0 ('luma_first') or BT.601 luma of an RGB image ('rgb')."""

    eps: float = 1e-4
    """Guided filter regularization for the confidence mask."""

    guided_radius: int = 2
    """Box radius of the guided filter."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.levels < 1:
            raise ValueError(f"levels must be >= 1, got {self.levels}")
        if self.detail_weights is not None and len(self.detail_weights) != self.levels - 1:
            raise ValueError(
                f"detail_weights needs {self.levels - 1} entries for {self.levels} levels, "
                f"got {len(self.detail_weights)}"
            )
        if self.radius < 1:
            raise ValueError(f"radius must be >= 1, got {self.radius}")
        if self.guided_radius < 1:
            raise ValueError(f"guided_radius must be >= 1, got {self.guided_radius}")
        if self.threshold_multiplier <= 0:
            raise ValueError(f"threshold_multiplier must be positive, got {self.threshold_multiplier}")
        if self.luma_boost < 0 or self.chroma_boost < 0:
            raise ValueError("luma_boost and chroma_boost must be >= 0")
        if self.gradient_threshold <= 0:
            raise ValueError(f"gradient_threshold must be positive, got {self.gradient_threshold}")
        if not 0.0 <= self.gradient_boost <= 1.0:
            raise ValueError(f"gradient_boost must be in [0, 1], got {self.gradient_boost}")
        if self.eps < 0:
            raise ValueError(f"eps must be >= 0, got {self.eps}")
        if self.despeckle_threshold <= 0:
            raise ValueError(f"despeckle_threshold must be positive, got {self.despeckle_threshold}")
        if self.guide not in ("luma_first", "rgb"):
            raise ValueError(f"Unknown guide: {self.guide}")

    def weights(self) -> tuple[float, ...]:
        """Return the effective detail weights (one per non-coarsest level)."""
        if self.detail_weights is None:
            return (1.0,) * (self.levels - 1)
        return tuple(float(w) for w in self.detail_weights)


@dataclass
class FusionConfig:
    """
    Configuration for the burst fusion accumulator.

    Thresholds are expressed in units of the predicted standard deviation
    of the difference between a new frame and the running estimate.
    """

    t_low: float = 2.0
    """Normalized difference below which a pixel gets full weight."""

    t_high: float = 4.0
    """Normalized difference above which a pixel gets min_weight."""

    min_weight: float = 0.05
    """Weight floor for pixels flagged as ghosting candidates."""

    misalignment_fraction: float = 0.5
    """Fraction of covered pixels above t_high that flags the whole frame."""

    misaligned_frame_weight: float = 0.1
    """Extra multiplier applied to every weight of a flagged frame."""

    use_gpu: bool = False
    """Run the blend on CuPy when available."""

    denoise_after: bool = True
    """Run the multiscale denoiser on the fused result."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if not 0.0 <= self.t_low < self.t_high:
            raise ValueError(f"Need 0 <= t_low < t_high, got {self.t_low}/{self.t_high}")
        if not 0.0 < self.min_weight <= 1.0:
            raise ValueError(f"min_weight must be in (0, 1], got {self.min_weight}")
        if not 0.0 < self.misalignment_fraction <= 1.0:
            raise ValueError(
                f"misalignment_fraction must be in (0, 1], got {self.misalignment_fraction}"
            )
        if not 0.0 < self.misaligned_frame_weight <= 1.0:
            raise ValueError(
                f"misaligned_frame_weight must be in (0, 1], got {self.misaligned_frame_weight}"
            )


@dataclass
class PipelineResult:
    """
    Result of a denoise or fusion run.

    Contains everything needed to understand and reproduce the output.
    """

    mode: Literal["denoise", "fuse"]
    """Which path produced the image."""

    image: np.ndarray
    """Output image at reference resolution (same layout as the input)."""

    noise_model: NoiseModel | None = None
    """Noise model of the (reference) input frame."""

    fit_status: FitStatus = FitStatus.OK
    """Outcome of the noise model fit."""

    frame_count: int = 1
    """Frames accumulated into the result."""

    inputs: list[str] = field(default_factory=list)
    """Input identifiers (paths when run from files)."""

    outputs: dict[str, str] = field(default_factory=dict)
    """Map of output type to path."""

    stats: dict[str, float] = field(default_factory=dict)
    """Computed statistics (e.g., 'fit_mse', 'estimated_variance')."""

    events: list[PipelineEvent] = field(default_factory=list)
    """Events recorded during the run."""

    noise_config: NoiseConfig | None = None
    denoise_config: DenoiseConfig | None = None
    fusion_config: FusionConfig | None = None

    # --- Metadata ---
    version: str = ""
    """Library version."""

    timestamp: str = ""
    """ISO format timestamp of run completion."""

    platform: str = ""
    """Platform information."""
