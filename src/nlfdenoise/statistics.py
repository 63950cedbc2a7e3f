"""
Local pixel statistics for noise model estimation.

Reduces an image into per-pixel samples (local mean, variance and excess
kurtosis over a square window) for every channel. The fitter consumes the
resulting SampleSet.

Border policy: neighborhoods crossing the image edge are completed by
clamping to the edge pixel ('nearest'), so every pixel yields exactly one
sample computed from window x window values.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import ndimage

from .backend import Stage, TileScheduler
from .channels import extract_bayer_planes
from .config import NoiseConfig
from .utils import as_channels

logger = logging.getLogger(__name__)

# Relative rounding error of the one-pass variance
CANCELLATION_RTOL = 1e-12


@dataclass(frozen=True)
class Sample:
    """Statistics of one channel over one neighborhood."""

    mean: float
    variance: float
    kurtosis: float | None = None


@dataclass(frozen=True)
class SampleSet:
    """
    Immutable collection of samples.

    Arrays have shape (N, C): one row per spatial unit, one column per
    channel. ``kurtosis`` is None when it was not collected.
    """

    mean: np.ndarray
    variance: np.ndarray
    kurtosis: np.ndarray | None = None

    def __post_init__(self):
        mean = _as_columns(self.mean)
        variance = _as_columns(self.variance)
        if mean.shape != variance.shape:
            raise ValueError(f"mean/variance shape mismatch: {mean.shape} vs {variance.shape}")
        kurtosis = None
        if self.kurtosis is not None:
            kurtosis = _as_columns(self.kurtosis)
            if kurtosis.shape != mean.shape:
                raise ValueError(f"kurtosis shape mismatch: {kurtosis.shape} vs {mean.shape}")
            kurtosis.flags.writeable = False
        mean.flags.writeable = False
        variance.flags.writeable = False
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "variance", variance)
        object.__setattr__(self, "kurtosis", kurtosis)

    @property
    def n_samples(self) -> int:
        return self.mean.shape[0]

    @property
    def n_channels(self) -> int:
        return self.mean.shape[1]

    def channel(self, c: int) -> tuple[np.ndarray, np.ndarray, np.ndarray | None]:
        """Return (mean, variance, kurtosis) 1D arrays for channel c."""
        kurt = None if self.kurtosis is None else self.kurtosis[:, c]
        return self.mean[:, c], self.variance[:, c], kurt

    @classmethod
    def from_samples(cls, samples: Sequence[Sample] | Sequence[Sequence[Sample]]) -> SampleSet:
        """
        Build a SampleSet from Sample records.

        Parameters
        ----------
        samples : sequence of Sample, or sequence of per-channel Sample sequences
            A flat sequence gives a single-channel set; nested sequences
            give one row per spatial unit with one Sample per channel.
        """
        if len(samples) == 0:
            raise ValueError("Empty sample list")
        rows = [[s] if isinstance(s, Sample) else list(s) for s in samples]
        n_channels = len(rows[0])
        if any(len(r) != n_channels for r in rows):
            raise ValueError("All rows must have the same number of channels")

        mean = np.array([[s.mean for s in r] for r in rows], dtype=np.float64)
        variance = np.array([[s.variance for s in r] for r in rows], dtype=np.float64)
        if all(s.kurtosis is None for r in rows for s in r):
            kurtosis = None
        else:
            kurtosis = np.array(
                [[np.nan if s.kurtosis is None else s.kurtosis for s in r] for r in rows],
                dtype=np.float64,
            )
        return cls(mean, variance, kurtosis)

    def __iter__(self):
        """Iterate over rows as tuples of per-channel Sample records."""
        for i in range(self.n_samples):
            yield tuple(
                Sample(
                    float(self.mean[i, c]),
                    float(self.variance[i, c]),
                    None if self.kurtosis is None else float(self.kurtosis[i, c]),
                )
                for c in range(self.n_channels)
            )


def _as_columns(values: np.ndarray) -> np.ndarray:
    arr = np.array(values, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr[:, np.newaxis]
    if arr.ndim != 2:
        raise ValueError(f"Expected (N,) or (N, C) array, got shape {arr.shape}")
    return arr


def _local_moments(
    tile: np.ndarray,
    gradient: np.ndarray | None = None,
    window: int = 9,
    border: str = "nearest",
    with_kurtosis: bool = True,
    gradient_threshold: float | None = None,
):
    """Local mean, variance and excess kurtosis of an (h, w, C) tile."""
    x = tile.astype(np.float64)
    size = (window, window, 1)

    m1 = ndimage.uniform_filter(x, size=size, mode=border)
    m2 = ndimage.uniform_filter(x * x, size=size, mode=border)
    var = m2 - m1 * m1
    # Below the cancellation error of E[x^2] - E[x]^2 the window is flat
    var = np.where(var > CANCELLATION_RTOL * m2, var, 0.0)

    kurt = None
    if with_kurtosis:
        m3 = ndimage.uniform_filter(x ** 3, size=size, mode=border)
        m4 = ndimage.uniform_filter(x ** 4, size=size, mode=border)
        mu4 = m4 - 4.0 * m1 * m3 + 6.0 * m1 * m1 * m2 - 3.0 * m1 ** 4
        with np.errstate(divide="ignore", invalid="ignore"):
            kurt = np.where(var > 0, mu4 / (var * var) - 3.0, np.nan)

    if gradient is not None and gradient_threshold is not None:
        # Edge pixels do not measure noise
        edges = (gradient > gradient_threshold)[:, :, np.newaxis]
        var = np.where(edges, np.nan, var)

    if kurt is None:
        return m1, var
    return m1, var, kurt


def collect_statistics(
    image: np.ndarray,
    window: int = 9,
    border: str = "nearest",
    with_kurtosis: bool = True,
    gradient: np.ndarray | None = None,
    gradient_threshold: float | None = None,
    scheduler: TileScheduler | None = None,
) -> SampleSet:
    """
    Compute one sample per pixel and channel from local statistics.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) image, normalized intensities.
    window : int, default 9
        Side of the square neighborhood (odd).
    border : str, default "nearest"
        scipy.ndimage border mode; 'nearest' clamps to the edge pixel.
    with_kurtosis : bool, default True
        Also compute local excess kurtosis.
    gradient : np.ndarray, optional
        (H, W) gradient magnitude used to exclude edge pixels.
    gradient_threshold : float, optional
        Pixels with gradient above this value yield NaN variance.
    scheduler : TileScheduler, optional
        Tile scheduler (default: auto-detected workers).

    Returns
    -------
    SampleSet
        H*W samples with C channels.

    Notes
    -----
    Variance is the biased window variance E[x^2] - E[x]^2, zeroed when it
    falls below the rounding error of E[x^2].
    Zero-variance windows (flat areas, clipped highlights) get NaN kurtosis
    and are rejected by the fitter when kurtosis is used.
    """
    if window < 3 or window % 2 == 0:
        raise ValueError(f"window must be an odd integer >= 3, got {window}")

    data = as_channels(image)
    if gradient is not None and gradient.shape != data.shape[:2]:
        raise ValueError(f"gradient shape {gradient.shape} does not match image {data.shape[:2]}")

    scheduler = scheduler or TileScheduler()
    stage = Stage("noise_statistics", _local_moments, halo=window // 2)
    result = scheduler.run(
        stage,
        data,
        gradient,
        window=window,
        border=border,
        with_kurtosis=with_kurtosis,
        gradient_threshold=gradient_threshold,
    )

    n_channels = data.shape[2]
    mean = result[0].reshape(-1, n_channels)
    variance = result[1].reshape(-1, n_channels)
    kurtosis = result[2].reshape(-1, n_channels) if with_kurtosis else None

    logger.debug(
        "Collected %d samples x %d channels (window=%d, border=%s)",
        mean.shape[0], n_channels, window, border,
    )
    return SampleSet(mean, variance, kurtosis)


def collect_luma_statistics(
    image: np.ndarray,
    window: int = 9,
    border: str = "nearest",
    with_kurtosis: bool = True,
    gradient: np.ndarray | None = None,
    gradient_threshold: float | None = None,
    scheduler: TileScheduler | None = None,
) -> SampleSet:
    """
    Collect statistics using the channel 0 (luma) mean for every channel.

    Suited to YCbCr-like inputs where chroma noise depends on luma
    intensity rather than on the (signed) chroma value.
    """
    samples = collect_statistics(
        image, window=window, border=border, with_kurtosis=with_kurtosis,
        gradient=gradient, gradient_threshold=gradient_threshold, scheduler=scheduler,
    )
    mean = np.repeat(samples.mean[:, :1], samples.n_channels, axis=1)
    return SampleSet(mean, samples.variance, samples.kurtosis)


def collect_raw_statistics(
    bayer: np.ndarray,
    pattern: str = "RGGB",
    window: int = 9,
    border: str = "nearest",
    with_kurtosis: bool = True,
    scheduler: TileScheduler | None = None,
) -> SampleSet:
    """
    Collect statistics on a Bayer mosaic, one sample per 2x2 block.

    The mosaic is split into its four half-resolution planes (R, G1, G2, B)
    and each plane is treated as a channel.
    """
    planes = extract_bayer_planes(bayer, pattern=pattern)
    return collect_statistics(
        planes, window=window, border=border, with_kurtosis=with_kurtosis, scheduler=scheduler,
    )


def collect_samples(
    image: np.ndarray,
    config: NoiseConfig | None = None,
    gradient: np.ndarray | None = None,
    scheduler: TileScheduler | None = None,
) -> SampleSet:
    """
    Collect samples according to a NoiseConfig.

    Dispatches on ``config.statistics`` ('channel', 'luma' or 'raw').
    """
    if config is None:
        config = NoiseConfig()
    config.validate()

    if config.statistics == "raw":
        return collect_raw_statistics(
            image, pattern=config.bayer_pattern, window=config.window, border=config.border,
            with_kurtosis=config.with_kurtosis, scheduler=scheduler,
        )

    collector = collect_luma_statistics if config.statistics == "luma" else collect_statistics
    return collector(
        image,
        window=config.window,
        border=config.border,
        with_kurtosis=config.with_kurtosis,
        gradient=gradient,
        gradient_threshold=config.gradient_threshold,
        scheduler=scheduler,
    )
