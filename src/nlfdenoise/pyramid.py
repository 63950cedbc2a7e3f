"""
Multiscale (pyramid) denoising.

The image is reduced by successive 2x2 block means into a Gaussian-style
pyramid. Each level is denoised independently with the noise model of its
scale, then the levels are recombined strictly from the coarsest to the
finest:

    r[L-1] = den[L-1]
    r[i]   = up(r[i+1]) + gain[i] * (den[i] - up(g[i+1]))

where g are the noisy pyramid levels and gain[i] = 1 + (w[i] - 1) * mask[i]
boosts (w > 1) or attenuates (w < 1) detail where the confidence mask
detects structure.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from scipy import ndimage
from skimage.transform import resize

from .backend import TileScheduler
from .channels import guide_from_image
from .config import DenoiseConfig, NoiseConfig
from .denoise import denoise_level
from .events import EventKind, EventSink, PipelineEvent, emit
from .nlf import NoiseModel, estimate_noise_model
from .utils import as_channels, restore_layout

logger = logging.getLogger(__name__)

# Smallest side allowed for the coarsest level
MIN_LEVEL_SIZE = 4


@dataclass
class PyramidLevel:
    """One level of the image pyramid."""

    image: np.ndarray
    """(h, w, C) float32 image at this scale."""

    scale: int
    """Level index; the image is 2**scale times smaller than level 0."""

    gradient: np.ndarray | None = None
    """(h, w) gradient magnitude of the guide (channel 0 when there is none)."""

    guide: np.ndarray | None = None
    """(h, w) block-mean reduced guide image, when one was supplied."""


@dataclass
class PyramidResult:
    """Output of PyramidDenoiser.denoise()."""

    image: np.ndarray
    """Recombined result, same layout as the input."""

    levels: list[PyramidLevel] = field(default_factory=list)
    denoised: list[np.ndarray] = field(default_factory=list)
    masks: list[np.ndarray | None] = field(default_factory=list)
    models: list[NoiseModel] = field(default_factory=list)
    """Noise model used on each level."""


def downsample(image: np.ndarray) -> np.ndarray:
    """
    Halve resolution by 2x2 block means.

    A trailing odd row or column is dropped, so the result is
    (h // 2, w // 2, C).
    """
    x = as_channels(image)
    h2, w2 = x.shape[0] // 2, x.shape[1] // 2
    if h2 == 0 or w2 == 0:
        raise ValueError(f"Image too small to downsample: {x.shape[:2]}")
    blocks = x[:h2 * 2, :w2 * 2].reshape(h2, 2, w2, 2, x.shape[2])
    return blocks.mean(axis=(1, 3), dtype=np.float64).astype(np.float32)


def upsample(image: np.ndarray, shape: tuple[int, int]) -> np.ndarray:
    """Bilinear resize to ``shape`` (h, w) with edge clamping."""
    x = as_channels(image)
    out = resize(
        x,
        (shape[0], shape[1], x.shape[2]),
        order=1,
        mode="edge",
        anti_aliasing=False,
        preserve_range=True,
    )
    return out.astype(np.float32)


def compute_gradient(image: np.ndarray) -> np.ndarray:
    """
    Sobel gradient magnitude of channel 0, in per-pixel difference units.

    A ramp of slope s per pixel yields s (the Sobel response is divided by
    its gain of 8).
    """
    luma = as_channels(image)[:, :, 0].astype(np.float64)
    gx = ndimage.sobel(luma, axis=1, mode="nearest")
    gy = ndimage.sobel(luma, axis=0, mode="nearest")
    return (np.hypot(gx, gy) / 8.0).astype(np.float32)


def _make_level(image: np.ndarray, scale: int, guide: np.ndarray | None) -> PyramidLevel:
    return PyramidLevel(image, scale, compute_gradient(image if guide is None else guide), guide)


def build_pyramid(
    image: np.ndarray,
    levels: int = 3,
    observer: EventSink | None = None,
    guide: np.ndarray | None = None,
) -> list[PyramidLevel]:
    """
    Build a Gaussian-style pyramid with per-level gradient maps.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) image.
    levels : int, default 3
        Requested number of levels, including full resolution.
    observer : EventSink, optional
        Receives a PYRAMID_CLAMPED event when the image is too small.
    guide : np.ndarray, optional
        (H, W) guide image, reduced alongside the image. Gradients are
        taken on the guide when given.

    Returns
    -------
    list[PyramidLevel]
        Levels ordered finest (index 0) to coarsest.
    """
    if levels < 1:
        raise ValueError(f"levels must be >= 1, got {levels}")

    current = as_channels(image)
    if guide is not None:
        if guide.shape != current.shape[:2]:
            raise ValueError(f"guide shape {guide.shape} does not match image {current.shape[:2]}")
        guide = guide.astype(np.float32)
    pyramid = [_make_level(current, 0, guide)]

    for scale in range(1, levels):
        h, w = current.shape[:2]
        if min(h // 2, w // 2) < MIN_LEVEL_SIZE:
            emit(
                observer,
                PipelineEvent(
                    EventKind.PYRAMID_CLAMPED, "pyramid",
                    f"image {image.shape[:2]} supports {scale} of {levels} levels",
                    {"requested": levels, "built": scale},
                ),
                level=logging.WARNING,
            )
            break
        current = downsample(current)
        if guide is not None:
            guide = downsample(guide)[:, :, 0]
        pyramid.append(_make_level(current, scale, guide))

    logger.debug("Pyramid: %s", " -> ".join(f"{lv.image.shape[1]}x{lv.image.shape[0]}" for lv in pyramid))
    return pyramid


def compose_pyramid(
    levels: Sequence[PyramidLevel],
    denoised: Sequence[np.ndarray],
    masks: Sequence[np.ndarray | None] | None = None,
    detail_weights: Sequence[float] | None = None,
) -> np.ndarray:
    """
    Recombine denoised levels from the coarsest to the finest.

    Parameters
    ----------
    levels : sequence of PyramidLevel
        Noisy pyramid, finest first.
    denoised : sequence of np.ndarray
        Denoised (h, w, C) image for each level.
    masks : sequence of np.ndarray or None, optional
        (h, w) confidence mask per level. Only read where the detail
        weight differs from 1.
    detail_weights : sequence of float, optional
        Detail gain per level except the coarsest. None = all 1.0.

    Returns
    -------
    np.ndarray
        (H, W, C) float32 full-resolution result.

    Notes
    -----
    A weight of exactly 1 contributes the detail band unchanged, so the
    result does not depend on the corresponding mask.
    """
    n = len(levels)
    if len(denoised) != n:
        raise ValueError(f"Got {len(denoised)} denoised images for {n} levels")
    if detail_weights is None:
        detail_weights = (1.0,) * (n - 1)
    if len(detail_weights) < n - 1:
        raise ValueError(f"Need {n - 1} detail weights, got {len(detail_weights)}")
    if masks is None:
        masks = [None] * n

    result = as_channels(denoised[-1])
    for i in range(n - 2, -1, -1):
        shape = levels[i].image.shape[:2]
        detail = as_channels(denoised[i]) - upsample(levels[i + 1].image, shape)
        weight = float(detail_weights[i])
        if weight != 1.0:
            if masks[i] is None:
                gain = weight
            else:
                gain = (1.0 + (weight - 1.0) * masks[i])[:, :, np.newaxis]
            detail = gain * detail
        result = upsample(result, shape) + detail

    return result.astype(np.float32)


class PyramidDenoiser:
    """
    Multiscale denoiser.

    Parameters
    ----------
    config : DenoiseConfig, optional
        Pyramid and level denoiser parameters.
    noise_config : NoiseConfig, optional
        Used to re-measure the noise model on each level when
        config.level_nlf == 'measured'.
    scheduler : TileScheduler, optional
        Tile scheduler shared by all levels.
    observer : EventSink, optional
        Event callback.

    Examples
    --------
    >>> denoiser = PyramidDenoiser(DenoiseConfig(levels=4, luma_boost=1.5))
    >>> result = denoiser.denoise(image, model)
    >>> clean = result.image
    """

    def __init__(
        self,
        config: DenoiseConfig | None = None,
        noise_config: NoiseConfig | None = None,
        scheduler: TileScheduler | None = None,
        observer: EventSink | None = None,
    ):
        self.config = config or DenoiseConfig()
        self.config.validate()
        self.noise_config = noise_config or NoiseConfig()
        self.scheduler = scheduler or TileScheduler()
        self.observer = observer

    def level_model(self, level: PyramidLevel, model: NoiseModel) -> NoiseModel:
        """Noise model for one level: scaled from the base, or re-measured."""
        scaled = model.for_level(level.scale)
        if self.config.level_nlf == "scaled" or level.scale == 0:
            return scaled
        report = estimate_noise_model(
            level.image,
            self.noise_config,
            prior=scaled,
            observer=self.observer,
            scheduler=self.scheduler,
        )
        return report.model

    def denoise(
        self,
        image: np.ndarray,
        model: NoiseModel,
        guide: np.ndarray | None = None,
    ) -> PyramidResult:
        """
        Denoise an image.

        Parameters
        ----------
        image : np.ndarray
            (H, W) or (H, W, C) image.
        model : NoiseModel
            Full-resolution noise model, one (a, b) per channel.
        guide : np.ndarray, optional
            (H, W) full-resolution guide, reduced per level with the
            image. None = derived from the image per config.guide
            ('luma_first' uses channel 0 directly).

        Returns
        -------
        PyramidResult
        """
        x = as_channels(image)
        if model.n_channels != x.shape[2]:
            raise ValueError(f"Noise model has {model.n_channels} channels, image has {x.shape[2]}")

        t0 = time.perf_counter()
        if guide is None and self.config.guide == "rgb":
            guide = guide_from_image(x, layout="rgb")
        levels = build_pyramid(x, self.config.levels, observer=self.observer, guide=guide)
        weights = self.config.weights()

        denoised: list[np.ndarray] = []
        masks: list[np.ndarray | None] = []
        models: list[NoiseModel] = []
        for level in levels:
            level_model = self.level_model(level, model)
            # Masks are only needed where the detail gain differs from 1
            needs_mask = level.scale < len(levels) - 1 and weights[level.scale] != 1.0
            res = denoise_level(
                level.image, level.gradient, level_model, self.config,
                with_confidence=needs_mask, scheduler=self.scheduler, guide=level.guide,
            )
            denoised.append(res.image)
            masks.append(res.confidence)
            models.append(level_model)

        composed = compose_pyramid(levels, denoised, masks, weights)
        logger.info(
            "Pyramid denoise: %d levels (%s) in %.2fs",
            len(levels), self.config.method, time.perf_counter() - t0,
        )
        return PyramidResult(
            image=restore_layout(composed, image),
            levels=levels,
            denoised=denoised,
            masks=masks,
            models=models,
        )
