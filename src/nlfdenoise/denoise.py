"""
Single-level, noise-model-aware denoising.

Two smoothing kernels driven by the predicted noise sigma of each pixel:

- 'bilateral': windowed range filter. A neighbor contributes with weight
  spatial * max(0, 1 - (delta / t)^2), t = threshold_multiplier * boost * sigma,
  so differences larger than the expected noise are treated as signal.
- 'guided': guided filter steered by a single-channel guide (luma by
  default), with a regularization equal to the predicted noise variance
  of the guide. Luma is self-guided, chroma follows the luma structure.

Both are followed by edge protection: the correction is attenuated where
the gradient magnitude, in noise sigmas, exceeds gradient_threshold.
An optional despeckle pre-pass replaces isolated pixels lying more than
despeckle_threshold sigmas away from their 3x3 median.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import ndimage

from .backend import Stage, TileScheduler
from .channels import guide_from_image
from .config import DenoiseConfig
from .nlf import NoiseModel
from .utils import as_channels, restore_layout, smoothstep

logger = logging.getLogger(__name__)

# Guard against zero thresholds and zero guided filter denominators
TINY = 1e-12


@dataclass
class LevelResult:
    """Output of denoise_level()."""

    image: np.ndarray
    """Denoised (H, W, C) float32 image."""

    confidence: np.ndarray | None = None
    """(H, W) structure confidence in [0, 1], when requested."""


def _box_mean(x: np.ndarray, radius: int) -> np.ndarray:
    return ndimage.uniform_filter(x, size=2 * radius + 1, mode="nearest")


def guided_filter_coefficients(
    guide: np.ndarray,
    src: np.ndarray,
    radius: int,
    eps: float | np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Box-averaged linear coefficients of the guided filter.

    Within each window the output is modeled as a * guide + b, with

        a = cov(guide, src) / (var(guide) + eps)
        b = mean(src) - a * mean(guide)

    Parameters
    ----------
    guide : np.ndarray
        (H, W) guide image.
    src : np.ndarray
        (H, W) image to filter.
    radius : int
        Box radius.
    eps : float or np.ndarray
        Regularization; scalar or per-pixel (H, W).

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        Box means of (a, b), float64.

    Notes
    -----
    Windows with var + eps <= TINY (flat guide, zero regularization) use
    unity gain (a = 1, b = 0), so the output passes the guide through.
    """
    if guide.shape != src.shape or guide.ndim != 2:
        raise ValueError(f"guide and src must be 2D of equal shape, got {guide.shape} and {src.shape}")

    g = guide.astype(np.float64)
    p = src.astype(np.float64)

    mean_g = _box_mean(g, radius)
    mean_p = _box_mean(p, radius)
    var_g = np.maximum(_box_mean(g * g, radius) - mean_g * mean_g, 0.0)
    cov_gp = _box_mean(g * p, radius) - mean_g * mean_p

    denom = var_g + eps
    degenerate = denom <= TINY
    with np.errstate(divide="ignore", invalid="ignore"):
        a = np.where(degenerate, 1.0, cov_gp / np.where(degenerate, 1.0, denom))
    b = np.where(degenerate, 0.0, mean_p - a * mean_g)

    return _box_mean(a, radius), _box_mean(b, radius)


def guided_filter(
    guide: np.ndarray,
    src: np.ndarray,
    radius: int,
    eps: float | np.ndarray,
) -> np.ndarray:
    """Edge-preserving guided filter of ``src`` steered by ``guide`` (float32)."""
    a, b = guided_filter_coefficients(guide, src, radius, eps)
    return (a * guide + b).astype(np.float32)


def confidence_mask(guide: np.ndarray, radius: int = 2, eps: float = 1e-4) -> np.ndarray:
    """
    Structure confidence from the self-guided filter gain.

    The self-guided coefficient a = var / (var + eps) is close to 1 on
    structure (variance well above eps) and close to 0 on flat areas.

    Returns
    -------
    np.ndarray
        (H, W) float32 mask in [0, 1].
    """
    a, _ = guided_filter_coefficients(guide, guide, radius, eps)
    return np.clip(a, 0.0, 1.0).astype(np.float32)


def _despeckle_tile(tile: np.ndarray, a: np.ndarray, b: np.ndarray, threshold: float) -> np.ndarray:
    x = tile.astype(np.float32)
    median = ndimage.median_filter(x, size=(3, 3, 1), mode="nearest")
    sigma = np.sqrt(a + b * np.maximum(median, 0.0))
    return np.where(np.abs(x - median) > threshold * sigma, median, x)


def despeckle(
    image: np.ndarray,
    model: NoiseModel,
    threshold: float = 3.0,
    scheduler: TileScheduler | None = None,
) -> np.ndarray:
    """
    Replace impulse outliers by their 3x3 median.

    Only pixels deviating from the median by more than ``threshold``
    predicted noise sigmas are replaced, so ordinary noise and structure
    wider than one pixel are left untouched.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) image.
    model : NoiseModel
        Noise model, one (a, b) per channel.
    threshold : float, default 3.0
        Deviation, in sigmas of the model at the median, above which a
        pixel is replaced.
    scheduler : TileScheduler, optional
        Tile scheduler (default: auto-detected workers).

    Returns
    -------
    np.ndarray
        Despeckled float32 image, same layout as the input.
    """
    x = as_channels(image)
    if model.n_channels != x.shape[2]:
        raise ValueError(f"Noise model has {model.n_channels} channels, image has {x.shape[2]}")

    scheduler = scheduler or TileScheduler()
    stage = Stage("despeckle", _despeckle_tile, halo=1)
    out = scheduler.run(stage, x, a=model.a, b=model.b, threshold=threshold).astype(np.float32)

    replaced = int(np.count_nonzero(out != x))
    if replaced:
        logger.debug("Despeckle: %d of %d values replaced", replaced, x.size)
    return restore_layout(out, image)


def _channel_boosts(n_channels: int, luma_boost: float, chroma_boost: float) -> np.ndarray:
    boosts = np.full(n_channels, chroma_boost, dtype=np.float64)
    boosts[0] = luma_boost
    return boosts


def _edge_strength(
    image: np.ndarray,
    gradient: np.ndarray | None,
    a0: float,
    b0: float,
    gradient_threshold: float,
    gradient_boost: float,
) -> np.ndarray | float:
    """Fraction of the correction applied per pixel (1 = full, lower on edges)."""
    if gradient is None or gradient_boost == 0:
        return 1.0
    sigma0 = np.sqrt(a0 + b0 * np.maximum(image[:, :, 0], 0.0))
    edge = smoothstep(gradient_threshold, 2.0 * gradient_threshold, gradient / sigma0)
    return (1.0 - gradient_boost * edge)[:, :, np.newaxis]


def _range_filter_tile(
    tile: np.ndarray,
    gradient: np.ndarray | None,
    a: np.ndarray,
    b: np.ndarray,
    radius: int,
    threshold_multiplier: float,
    boosts: np.ndarray,
    gradient_threshold: float,
    gradient_boost: float,
) -> np.ndarray:
    x = tile.astype(np.float32)
    h, w, _ = x.shape

    sigma = np.sqrt(a + b * np.maximum(x, 0.0))
    threshold = np.maximum(threshold_multiplier * boosts * sigma, TINY).astype(np.float32)
    inv_threshold = 1.0 / threshold

    padded = np.pad(x, ((radius, radius), (radius, radius), (0, 0)), mode="edge")
    acc = x.copy()
    weight_sum = np.ones_like(x)

    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            if dy == 0 and dx == 0:
                continue
            spatial = np.float32(np.exp(-(dy * dy + dx * dx) / (2.0 * radius * radius)))
            neighbor = padded[radius + dy:radius + dy + h, radius + dx:radius + dx + w]
            rel = (neighbor - x) * inv_threshold
            wgt = spatial * np.maximum(0.0, 1.0 - rel * rel)
            acc += wgt * neighbor
            weight_sum += wgt

    filtered = acc / weight_sum
    strength = _edge_strength(x, gradient, a[0], b[0], gradient_threshold, gradient_boost)
    return x + strength * (filtered - x)


def _guided_tile(
    tile: np.ndarray,
    gradient: np.ndarray | None,
    guide: np.ndarray | None,
    a: np.ndarray,
    b: np.ndarray,
    radius: int,
    boosts: np.ndarray,
    gradient_threshold: float,
    gradient_boost: float,
) -> np.ndarray:
    x = tile.astype(np.float32)
    g = x[:, :, 0] if guide is None else guide.astype(np.float32)
    # The guide carries the noise of channel 0
    guide_variance = a[0] + b[0] * np.maximum(_box_mean(g.astype(np.float64), radius), 0.0)
    filtered = np.empty_like(x)
    for c in range(x.shape[2]):
        filtered[:, :, c] = guided_filter(g, x[:, :, c], radius, boosts[c] ** 2 * guide_variance)

    strength = _edge_strength(x, gradient, a[0], b[0], gradient_threshold, gradient_boost)
    return x + strength * (filtered - x)


def denoise_level(
    image: np.ndarray,
    gradient: np.ndarray | None,
    model: NoiseModel,
    config: DenoiseConfig | None = None,
    with_confidence: bool = False,
    scheduler: TileScheduler | None = None,
    guide: np.ndarray | None = None,
) -> LevelResult:
    """
    Denoise one pyramid level with the noise model of that level.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) image.
    gradient : np.ndarray or None
        (H, W) gradient magnitude (per-pixel difference units). None
        disables edge protection.
    model : NoiseModel
        Noise model at this level's scale, one (a, b) per channel.
    config : DenoiseConfig, optional
        Kernel and strength parameters.
    with_confidence : bool, default False
        Also compute the structure confidence mask.
    scheduler : TileScheduler, optional
        Tile scheduler (default: auto-detected workers).
    guide : np.ndarray, optional
        (H, W) guide for the guided filter and the confidence mask,
        assumed to carry the noise of channel 0. None = channel 0 of
        the image.

    Returns
    -------
    LevelResult
        Denoised (H, W, C) float32 image and optional confidence.

    Raises
    ------
    ValueError
        If the model channel count or the guide shape does not match the image.
    """
    if config is None:
        config = DenoiseConfig()
    config.validate()

    x = as_channels(image)
    if model.n_channels != x.shape[2]:
        raise ValueError(
            f"Noise model has {model.n_channels} channels, image has {x.shape[2]}"
        )
    if gradient is not None and gradient.shape != x.shape[:2]:
        raise ValueError(f"gradient shape {gradient.shape} does not match image {x.shape[:2]}")
    if guide is not None and guide.shape != x.shape[:2]:
        raise ValueError(f"guide shape {guide.shape} does not match image {x.shape[:2]}")

    scheduler = scheduler or TileScheduler()
    if config.despeckle:
        x = as_channels(despeckle(x, model, config.despeckle_threshold, scheduler))

    boosts = _channel_boosts(x.shape[2], config.luma_boost, config.chroma_boost)
    common = dict(
        a=model.a,
        b=model.b,
        boosts=boosts,
        gradient_threshold=config.gradient_threshold,
        gradient_boost=config.gradient_boost,
    )

    if config.method == "bilateral":
        stage = Stage("range_filter", _range_filter_tile, halo=config.radius)
        out = scheduler.run(
            stage, x, gradient,
            radius=config.radius, threshold_multiplier=config.threshold_multiplier, **common,
        )
    elif config.method == "guided":
        # Box of box: coefficients need twice the radius of context
        stage = Stage("guided_filter", _guided_tile, halo=2 * config.guided_radius)
        out = scheduler.run(stage, x, gradient, guide, radius=config.guided_radius, **common)
    else:
        raise ValueError(f"Unknown denoise method: {config.method}")

    out = out.astype(np.float32)
    confidence = None
    if with_confidence:
        if guide is None:
            mask_guide = guide_from_image(out)
        else:
            # Structure is read on the guide after the same noise-level smoothing as luma
            g = guide.astype(np.float64)
            guide_variance = model.a[0] + model.b[0] * np.maximum(_box_mean(g, config.guided_radius), 0.0)
            mask_guide = guided_filter(g, g, config.guided_radius, config.luma_boost ** 2 * guide_variance)
        confidence = confidence_mask(mask_guide, config.guided_radius, config.eps)

    logger.debug(
        "Level denoise (%s) %dx%dx%d: mean correction %.3e",
        config.method, x.shape[0], x.shape[1], x.shape[2], float(np.mean(np.abs(out - x))),
    )
    return LevelResult(out, confidence)
