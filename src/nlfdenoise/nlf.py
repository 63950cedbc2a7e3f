"""
Noise-Level-Function (NLF) estimation.

Fits a per-channel linear noise model

    variance = A + B * mean

to local pixel statistics. Two interchangeable fitting strategies are
provided:

- TwoPassFitter: closed-form least squares on the linear regime of the
  sensor, followed by a second pass restricted to samples that fit the
  first model well (outlier pruning).
- LMedSFitter: random 2-sample consensus with a least-median-of-squares
  objective, for sample sets with gross outliers (moving subjects).

Both return the same NoiseModel, floored at NLF_FLOOR so the downstream
denoise strength is never zero or negative.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

import numpy as np

from .backend import TileScheduler
from .config import FitStatus, NoiseConfig
from .events import EventKind, EventSink, PipelineEvent, emit
from .statistics import SampleSet, collect_samples

logger = logging.getLogger(__name__)

# Lower bound on A and B
NLF_FLOOR = 1e-8

# Relative size of the regression denominator below which the fit is singular
SINGULAR_RTOL = 1e-12

# First-pass MSE below which the fit is exact and pruning is skipped
EXACT_FIT_MSE = 1e-30

# Excess kurtosis accepted on raw Bayer blocks (near-Gaussian windows)
RAW_KURTOSIS_RANGE = (-1.0, 1.0)


class InsufficientSamplesError(ValueError):
    """No sample survived filtering; no noise model can be fitted."""

    def __init__(self, message: str, channel: int | None = None):
        super().__init__(message)
        self.channel = channel


@dataclass(frozen=True)
class NoiseModel:
    """
    Per-channel linear noise model: variance = a + b * mean.

    ``a`` and ``b`` are stored as read-only float64 vectors, floored at
    NLF_FLOOR.
    """

    a: np.ndarray
    b: np.ndarray

    def __post_init__(self):
        a = np.maximum(np.atleast_1d(np.array(self.a, dtype=np.float64)), NLF_FLOOR)
        b = np.maximum(np.atleast_1d(np.array(self.b, dtype=np.float64)), NLF_FLOOR)
        if a.ndim != 1 or a.shape != b.shape:
            raise ValueError(f"a and b must be vectors of equal length, got {a.shape} and {b.shape}")
        if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
            raise ValueError(f"Noise model parameters must be finite, got a={a}, b={b}")
        a.flags.writeable = False
        b.flags.writeable = False
        object.__setattr__(self, "a", a)
        object.__setattr__(self, "b", b)

    @classmethod
    def constant(cls, a: float, b: float, n_channels: int = 1) -> NoiseModel:
        """Model with the same (a, b) on every channel, e.g. a calibration prior."""
        return cls(np.full(n_channels, a), np.full(n_channels, b))

    @property
    def n_channels(self) -> int:
        return self.a.shape[0]

    def variance(self, mean: np.ndarray) -> np.ndarray:
        """
        Predicted noise variance at the given intensities.

        Parameters
        ----------
        mean : np.ndarray
            Intensities with the channel axis last (..., C). Negative
            values are treated as 0.
        """
        return self.a + self.b * np.maximum(mean, 0.0)

    def sigma(self, mean: np.ndarray) -> np.ndarray:
        """Predicted noise standard deviation at the given intensities."""
        return np.sqrt(self.variance(mean))

    def scaled(self, exposure_multiplier: float) -> NoiseModel:
        """Model for data multiplied by ``exposure_multiplier`` (variance x m^2)."""
        factor = float(exposure_multiplier) ** 2
        return NoiseModel(self.a * factor, self.b * factor)

    def for_level(self, level: int) -> NoiseModel:
        """Model after ``level`` successive 2x2 block-mean reductions."""
        return self.scaled(0.5 ** level)

    def is_floor_pinned(self, tolerance: float = 1e-3) -> np.ndarray:
        """Per-channel flag: a or b sits at the floor (unreliable input)."""
        limit = NLF_FLOOR * (1.0 + tolerance)
        return (self.a <= limit) | (self.b <= limit)

    def to_dict(self) -> dict[str, list[float]]:
        return {"a": self.a.tolist(), "b": self.b.tolist()}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> NoiseModel:
        return cls(np.asarray(d["a"], dtype=np.float64), np.asarray(d["b"], dtype=np.float64))

    def __repr__(self) -> str:
        a = ", ".join(f"{v:.4e}" for v in self.a)
        b = ", ".join(f"{v:.4e}" for v in self.b)
        return f"NoiseModel(a=[{a}], b=[{b}])"


@dataclass(frozen=True)
class TwoPassFitter:
    """Closed-form least squares with one outlier-pruning pass."""

    min_value: float = 0.001
    max_value: float = 0.5
    variance_max: float = 0.001
    outlier_multiplier: float = 0.5
    kurtosis_range: tuple[float, float] | None = None

    name = "two_pass"

    @classmethod
    def from_config(cls, config: NoiseConfig) -> TwoPassFitter:
        kurtosis_range = config.kurtosis_range
        if kurtosis_range is None and config.statistics == "raw" and config.with_kurtosis:
            kurtosis_range = RAW_KURTOSIS_RANGE
        return cls(
            min_value=config.min_value,
            max_value=config.max_value,
            variance_max=config.variance_max,
            outlier_multiplier=config.outlier_multiplier,
            kurtosis_range=kurtosis_range,
        )


@dataclass(frozen=True)
class LMedSFitter:
    """Least-median-of-squares consensus over random 2-sample subsets."""

    min_value: float = 0.001
    max_value: float = 0.5
    iterations: int = 100
    seed: int | None = 0
    inlier_multiplier: float = 2.5
    """Inliers lie within inlier_multiplier robust sigmas of the best line."""

    name = "lmeds"

    @classmethod
    def from_config(cls, config: NoiseConfig) -> LMedSFitter:
        return cls(
            min_value=config.min_value,
            max_value=config.max_value,
            iterations=config.lmeds_iterations,
            seed=config.lmeds_seed,
        )


ModelFitter = Union[TwoPassFitter, LMedSFitter]


def fitter_from_config(config: NoiseConfig) -> ModelFitter:
    """Build the fitter selected by ``config.fitter``."""
    if config.fitter == "two_pass":
        return TwoPassFitter.from_config(config)
    elif config.fitter == "lmeds":
        return LMedSFitter.from_config(config)
    raise ValueError(f"Unknown fitter: {config.fitter}")


@dataclass
class ChannelFit:
    """Fit outcome for a single channel."""

    a: float
    b: float
    mse: float
    n_samples: int
    n_discarded: int = 0
    status: FitStatus = FitStatus.OK


@dataclass
class FitReport:
    """Result of a noise model fit."""

    model: NoiseModel
    status: FitStatus
    fitter: str
    mse: np.ndarray = field(default_factory=lambda: np.zeros(0))
    """Mean squared residual per channel."""
    n_samples: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    """Samples used by the retained model, per channel."""
    n_discarded: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    """Samples pruned as outliers, per channel."""
    channel_status: list[FitStatus] = field(default_factory=list)


def _least_squares(x: np.ndarray, y: np.ndarray) -> tuple[float, float, bool]:
    """Closed-form line fit y = a + b x; returns (a, b, singular), floored."""
    n = float(x.size)
    s_x = float(np.sum(x))
    s_y = float(np.sum(y))
    s_xx = float(np.dot(x, x))
    s_xy = float(np.dot(x, y))

    denom = n * s_xx - s_x * s_x
    if abs(denom) <= SINGULAR_RTOL * max(n * s_xx, np.finfo(np.float64).tiny):
        b = NLF_FLOOR
        singular = True
    else:
        b = max((n * s_xy - s_x * s_y) / denom, NLF_FLOOR)
        singular = False
    a = max((s_y - b * s_x) / n, NLF_FLOOR)
    return a, b, singular


def _mse(a: float, b: float, x: np.ndarray, y: np.ndarray) -> float:
    diff = a + b * x - y
    return float(np.mean(diff * diff))


def _valid_mask(
    mean: np.ndarray,
    var: np.ndarray,
    kurt: np.ndarray | None,
    min_value: float,
    max_value: float,
    variance_max: float | None = None,
    kurtosis_range: tuple[float, float] | None = None,
) -> np.ndarray:
    """Finite samples inside the linear regime of the sensor."""
    valid = np.isfinite(mean) & np.isfinite(var)
    if kurt is not None:
        valid &= np.isfinite(kurt)
        if kurtosis_range is not None:
            valid &= (kurt > kurtosis_range[0]) & (kurt < kurtosis_range[1])
    with np.errstate(invalid="ignore"):
        valid &= (mean >= min_value) & (mean <= max_value)
        if variance_max is not None:
            valid &= var <= variance_max
    return valid


def _fit_two_pass_channel(
    mean: np.ndarray,
    var: np.ndarray,
    kurt: np.ndarray | None,
    fitter: TwoPassFitter,
    channel: int,
) -> ChannelFit:
    valid = _valid_mask(
        mean, var, kurt, fitter.min_value, fitter.max_value,
        fitter.variance_max, fitter.kurtosis_range,
    )
    x = mean[valid]
    y = var[valid]
    if x.size == 0:
        raise InsufficientSamplesError(
            f"No valid samples in channel {channel} after filtering "
            f"(mean in [{fitter.min_value}, {fitter.max_value}], variance <= {fitter.variance_max})",
            channel=channel,
        )

    # First pass on the whole linear regime
    a1, b1, singular = _least_squares(x, y)
    err2 = _mse(a1, b1, x, y)
    status = FitStatus.SINGULAR_MODEL if singular else FitStatus.OK

    if singular or err2 <= EXACT_FIT_MSE:
        return ChannelFit(a1, b1, err2, int(x.size), 0, status)

    # Second pass restricted to samples that fit the first model well
    residual2 = (a1 + b1 * x - y) ** 2
    keep = residual2 <= fitter.outlier_multiplier * err2
    n_kept = int(np.count_nonzero(keep))
    if n_kept == 0:
        return ChannelFit(a1, b1, err2, int(x.size), 0, FitStatus.DEGRADED_FIT)

    a2, b2, singular2 = _least_squares(x[keep], y[keep])
    new_err2 = _mse(a2, b2, x[keep], y[keep])

    if singular2 or new_err2 > err2:
        return ChannelFit(a1, b1, err2, int(x.size), 0, FitStatus.DEGRADED_FIT)

    return ChannelFit(a2, b2, new_err2, n_kept, int(x.size) - n_kept, FitStatus.OK)


def _fit_lmeds_channel(
    mean: np.ndarray,
    var: np.ndarray,
    kurt: np.ndarray | None,
    fitter: LMedSFitter,
    channel: int,
    rng: np.random.Generator,
) -> ChannelFit:
    valid = _valid_mask(mean, var, kurt, fitter.min_value, fitter.max_value)
    x = mean[valid]
    y = var[valid]
    n = x.size
    if n == 0:
        raise InsufficientSamplesError(
            f"No valid samples in channel {channel} after filtering "
            f"(mean in [{fitter.min_value}, {fitter.max_value}])",
            channel=channel,
        )
    if n < 3:
        a, b, singular = _least_squares(x, y)
        status = FitStatus.SINGULAR_MODEL if singular else FitStatus.OK
        return ChannelFit(a, b, _mse(a, b, x, y), int(n), 0, status)

    pairs = rng.integers(0, n, size=(fitter.iterations, 2))
    dx = x[pairs[:, 1]] - x[pairs[:, 0]]
    usable = np.abs(dx) > 1e-12
    if not np.any(usable):
        a, b, _ = _least_squares(x, y)
        return ChannelFit(a, b, _mse(a, b, x, y), int(n), 0, FitStatus.SINGULAR_MODEL)

    pairs = pairs[usable]
    slopes = (y[pairs[:, 1]] - y[pairs[:, 0]]) / dx[usable]
    intercepts = y[pairs[:, 0]] - slopes * x[pairs[:, 0]]

    best_loss = np.inf
    best_a = best_b = 0.0
    for a_c, b_c in zip(intercepts, slopes):
        loss = float(np.median((a_c + b_c * x - y) ** 2))
        if loss < best_loss:
            best_loss, best_a, best_b = loss, float(a_c), float(b_c)

    # Rousseeuw's robust scale estimate of the LMedS residuals
    scale = 1.4826 * (1.0 + 5.0 / (n - 2)) * np.sqrt(best_loss)
    residual2 = (best_a + best_b * x - y) ** 2
    inliers = residual2 <= (fitter.inlier_multiplier * scale) ** 2
    n_in = int(np.count_nonzero(inliers))

    if n_in >= 2:
        a, b, singular = _least_squares(x[inliers], y[inliers])
        mse = _mse(a, b, x[inliers], y[inliers])
    else:
        a, b, singular = max(best_a, NLF_FLOOR), max(best_b, NLF_FLOOR), False
        mse = best_loss
    status = FitStatus.SINGULAR_MODEL if singular else FitStatus.OK
    logger.debug("LMedS channel %d: loss=%.4e, %d/%d inliers", channel, best_loss, n_in, n)
    return ChannelFit(a, b, mse, max(n_in, 1), int(n) - n_in, status)


def _overall_status(statuses: list[FitStatus]) -> FitStatus:
    if FitStatus.SINGULAR_MODEL in statuses:
        return FitStatus.SINGULAR_MODEL
    if FitStatus.DEGRADED_FIT in statuses:
        return FitStatus.DEGRADED_FIT
    return FitStatus.OK


def fit_noise_model(
    samples: SampleSet,
    fitter: ModelFitter | None = None,
    exposure_multiplier: float = 1.0,
    observer: EventSink | None = None,
) -> FitReport:
    """
    Fit a per-channel NoiseModel to a SampleSet.

    Parameters
    ----------
    samples : SampleSet
        Local statistics (mean, variance, optional kurtosis).
    fitter : TwoPassFitter or LMedSFitter, optional
        Fitting strategy. Default: TwoPassFitter with default bounds.
    exposure_multiplier : float, default 1.0
        Gain of this exposure relative to the reference; the fitted model
        is scaled by its square.
    observer : EventSink, optional
        Receives fit events (degraded fit, singular model, result).

    Returns
    -------
    FitReport
        Fitted model, status and per-channel diagnostics.

    Raises
    ------
    InsufficientSamplesError
        If any channel has no valid sample after filtering. Callers should
        fall back to a prior model.

    Notes
    -----
    Channels are fitted independently. The fitter keeps no state between
    calls, so it can be re-invoked for every frame or exposure change.
    """
    if fitter is None:
        fitter = TwoPassFitter()
    if exposure_multiplier <= 0:
        raise ValueError(f"exposure_multiplier must be positive, got {exposure_multiplier}")

    rng = None
    if isinstance(fitter, LMedSFitter):
        rng = np.random.default_rng(fitter.seed)
    elif not isinstance(fitter, TwoPassFitter):
        raise TypeError(f"Unsupported fitter: {type(fitter).__name__}")

    fits: list[ChannelFit] = []
    for c in range(samples.n_channels):
        mean, var, kurt = samples.channel(c)
        try:
            if rng is not None:
                fits.append(_fit_lmeds_channel(mean, var, kurt, fitter, c, rng))
            else:
                fits.append(_fit_two_pass_channel(mean, var, kurt, fitter, c))
        except InsufficientSamplesError as e:
            emit(
                observer,
                PipelineEvent(EventKind.INSUFFICIENT_SAMPLES, "nlf", str(e), {"channel": c}),
                level=logging.WARNING,
            )
            raise

    model = NoiseModel(
        np.array([f.a for f in fits]),
        np.array([f.b for f in fits]),
    ).scaled(exposure_multiplier)

    statuses = [f.status for f in fits]
    report = FitReport(
        model=model,
        status=_overall_status(statuses),
        fitter=fitter.name,
        mse=np.array([f.mse for f in fits]),
        n_samples=np.array([f.n_samples for f in fits], dtype=np.int64),
        n_discarded=np.array([f.n_discarded for f in fits], dtype=np.int64),
        channel_status=statuses,
    )

    for c, f in enumerate(fits):
        if f.status == FitStatus.DEGRADED_FIT:
            emit(
                observer,
                PipelineEvent(
                    EventKind.DEGENERATE_FIT, "nlf",
                    f"channel {c}: second pass is worse, keeping first pass (MSE {np.sqrt(f.mse):.4e})",
                    {"channel": c, "mse": f.mse},
                ),
                level=logging.WARNING,
            )
        elif f.status == FitStatus.SINGULAR_MODEL:
            emit(
                observer,
                PipelineEvent(
                    EventKind.SINGULAR_MODEL, "nlf",
                    f"channel {c}: constant sample intensities, model pinned at the floor",
                    {"channel": c},
                ),
                level=logging.WARNING,
            )

    fraction = 100.0 * float(np.mean(report.n_samples)) / max(samples.n_samples, 1)
    emit(
        observer,
        PipelineEvent(
            EventKind.NOISE_MODEL_FITTED, "nlf",
            f"{fitter.name} NLF A: {np.array2string(model.a, precision=4)}, "
            f"B: {np.array2string(model.b, precision=4)}, "
            f"MSE: {np.array2string(np.sqrt(report.mse), precision=4)} on {fraction:.1f}% samples",
            {"a": model.a.tolist(), "b": model.b.tolist(), "status": report.status.value},
        ),
    )
    return report


def estimate_noise_model(
    image: np.ndarray,
    config: NoiseConfig | None = None,
    exposure_multiplier: float = 1.0,
    prior: NoiseModel | None = None,
    gradient: np.ndarray | None = None,
    observer: EventSink | None = None,
    scheduler: TileScheduler | None = None,
) -> FitReport:
    """
    Collect statistics from an image and fit its noise model.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) image; a Bayer mosaic when config.statistics='raw'.
    config : NoiseConfig, optional
        Statistics and fitting parameters.
    exposure_multiplier : float, default 1.0
        Exposure gain relative to the reference frame.
    prior : NoiseModel, optional
        Model returned (status PRIOR) when the image yields no usable sample.
    gradient : np.ndarray, optional
        Gradient magnitude used with config.gradient_threshold.
    observer : EventSink, optional
        Event callback.
    scheduler : TileScheduler, optional
        Tile scheduler for statistics collection.

    Returns
    -------
    FitReport

    Raises
    ------
    InsufficientSamplesError
        If no sample is usable and no prior was supplied.
    """
    if config is None:
        config = NoiseConfig()
    config.validate()

    samples = collect_samples(image, config, gradient=gradient, scheduler=scheduler)
    try:
        return fit_noise_model(
            samples,
            fitter=fitter_from_config(config),
            exposure_multiplier=exposure_multiplier,
            observer=observer,
        )
    except InsufficientSamplesError:
        if prior is None:
            raise
        emit(
            observer,
            PipelineEvent(EventKind.PRIOR_MODEL_USED, "nlf", f"falling back to prior {prior!r}"),
            level=logging.WARNING,
        )
        return FitReport(
            model=prior,
            status=FitStatus.PRIOR,
            fitter="prior",
            mse=np.full(prior.n_channels, np.nan),
            n_samples=np.zeros(prior.n_channels, dtype=np.int64),
            n_discarded=np.zeros(prior.n_channels, dtype=np.int64),
            channel_status=[FitStatus.PRIOR] * prior.n_channels,
        )
