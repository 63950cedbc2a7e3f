"""
End-to-end orchestration of the two processing paths.

- denoise_image(): estimate the noise model of a single image (unless one
  is supplied) and run the multiscale denoiser. Bayer mosaics go through
  denoise_mosaic(), which works on the four 2x2 block planes.
- fuse_burst(): estimate the noise model of the reference frame, merge
  the registered burst with the fusion accumulator, then optionally
  denoise the merged result with the residual noise model.

Both return a PipelineResult carrying the image, the model, the fit
status, the recorded events and run metadata.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Sequence

import numpy as np

from .backend import TileScheduler
from .channels import extract_bayer_planes, rebuild_bayer_from_planes
from .config import DenoiseConfig, FitStatus, FusionConfig, NoiseConfig, PipelineResult
from .events import EventRecorder, EventSink, PipelineEvent
from .fusion import FrameFuser
from .nlf import NoiseModel, estimate_noise_model
from .pyramid import PyramidDenoiser
from .utils import get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)


def _tee(recorder: EventRecorder, observer: EventSink | None) -> EventSink:
    """Forward events to the recorder and to the caller's observer."""
    def sink(event: PipelineEvent) -> None:
        recorder(event)
        if observer is not None:
            observer(event)
    return sink


def _resolve_model(
    image: np.ndarray,
    model: NoiseModel | None,
    noise_config: NoiseConfig,
    prior: NoiseModel | None,
    observer: EventSink,
    scheduler: TileScheduler,
) -> tuple[NoiseModel, FitStatus, dict[str, float]]:
    if model is not None:
        return model, FitStatus.OK, {}
    report = estimate_noise_model(image, noise_config, prior=prior, observer=observer, scheduler=scheduler)
    stats = {}
    if report.status != FitStatus.PRIOR:
        stats["fit_rmse"] = float(np.sqrt(np.mean(report.mse)))
        stats["fit_samples"] = float(np.mean(report.n_samples))
    return report.model, report.status, stats


def denoise_mosaic(
    bayer: np.ndarray,
    model: NoiseModel,
    denoise_config: DenoiseConfig | None = None,
    noise_config: NoiseConfig | None = None,
    pattern: str = "RGGB",
    observer: EventSink | None = None,
    scheduler: TileScheduler | None = None,
) -> np.ndarray:
    """
    Denoise a raw Bayer mosaic in the 2x2 block domain.

    The mosaic is split into its R, G1, G2, B half-resolution planes, the
    planes are denoised as a 4-channel image guided by their mean, and the
    mosaic is rebuilt. All planes use ``luma_boost``.

    Parameters
    ----------
    bayer : np.ndarray
        (H, W) mosaic.
    model : NoiseModel
        4-channel model of the planes (raw statistics).
    denoise_config : DenoiseConfig, optional
        Multiscale denoiser parameters.
    noise_config : NoiseConfig, optional
        Used to re-measure per-level models (level_nlf='measured').
    pattern : str, default "RGGB"
        CFA layout of the top-left 2x2 cell.

    Returns
    -------
    np.ndarray
        (H, W) float32 mosaic. A trailing odd row or column is passed
        through unchanged.
    """
    if bayer.ndim != 2:
        raise ValueError(f"Expected a 2D Bayer mosaic, got shape {bayer.shape}")
    if model.n_channels != 4:
        raise ValueError(f"Raw denoising needs a 4-channel model, got {model.n_channels}")
    denoise_config = denoise_config or DenoiseConfig()
    noise_config = noise_config or NoiseConfig()

    planes = extract_bayer_planes(bayer, pattern=pattern)
    plane_config = replace(denoise_config, chroma_boost=denoise_config.luma_boost, guide="luma_first")
    # Planes are re-measured as ordinary channels
    plane_noise_config = replace(noise_config, statistics="channel")
    denoiser = PyramidDenoiser(plane_config, plane_noise_config, scheduler, observer)
    denoised = denoiser.denoise(planes, model, guide=planes.mean(axis=2)).image

    out = bayer.astype(np.float32)
    h2, w2 = planes.shape[:2]
    out[:2 * h2, :2 * w2] = rebuild_bayer_from_planes(denoised, pattern=pattern)
    return out


def denoise_image(
    image: np.ndarray,
    model: NoiseModel | None = None,
    noise_config: NoiseConfig | None = None,
    denoise_config: DenoiseConfig | None = None,
    prior: NoiseModel | None = None,
    observer: EventSink | None = None,
    scheduler: TileScheduler | None = None,
) -> PipelineResult:
    """
    Denoise a single image.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) normalized image, or an (H, W) Bayer mosaic.
    model : NoiseModel, optional
        Known noise model. Estimated from the image when omitted.
        A 4-channel model on a 2D image selects the raw mosaic path.
    noise_config : NoiseConfig, optional
        Estimation parameters. statistics='raw' denoises the image as a
        Bayer mosaic (see denoise_mosaic).
    denoise_config : DenoiseConfig, optional
        Multiscale denoiser parameters.
    prior : NoiseModel, optional
        Fallback model when the image yields no usable sample.
    observer : EventSink, optional
        Event callback (events are also collected in the result).
    scheduler : TileScheduler, optional
        Shared tile scheduler.

    Returns
    -------
    PipelineResult
    """
    noise_config = noise_config or NoiseConfig()
    denoise_config = denoise_config or DenoiseConfig()
    scheduler = scheduler or TileScheduler()
    recorder = EventRecorder()
    sink = _tee(recorder, observer)

    t0 = time.perf_counter()
    raw = noise_config.statistics == "raw" or (
        model is not None and model.n_channels == 4 and np.ndim(image) == 2
    )
    model, status, stats = _resolve_model(image, model, noise_config, prior, sink, scheduler)
    if raw:
        out = denoise_mosaic(
            image, model, denoise_config, noise_config,
            pattern=noise_config.bayer_pattern, observer=sink, scheduler=scheduler,
        )
    else:
        out = PyramidDenoiser(denoise_config, noise_config, scheduler, sink).denoise(image, model).image
    stats["duration_s"] = time.perf_counter() - t0
    stats["mean_correction"] = float(np.mean(np.abs(out - image)))

    logger.info(
        "Denoised %s %s in %.2fs",
        "x".join(map(str, image.shape)), "mosaic" if raw else "image", stats["duration_s"],
    )
    return PipelineResult(
        mode="denoise",
        image=out,
        noise_model=model,
        fit_status=status,
        frame_count=1,
        stats=stats,
        events=recorder.events,
        noise_config=noise_config,
        denoise_config=denoise_config,
        version=get_version(),
        timestamp=get_timestamp_iso(),
        platform=get_platform_info(),
    )


def fuse_burst(
    frames: Sequence[np.ndarray],
    homographies: Sequence[np.ndarray | None] | None = None,
    exposure_multipliers: Sequence[float] | None = None,
    model: NoiseModel | None = None,
    noise_config: NoiseConfig | None = None,
    fusion_config: FusionConfig | None = None,
    denoise_config: DenoiseConfig | None = None,
    prior: NoiseModel | None = None,
    observer: EventSink | None = None,
    scheduler: TileScheduler | None = None,
    progress: bool = False,
) -> PipelineResult:
    """
    Merge a registered burst into one image.

    Parameters
    ----------
    frames : sequence of np.ndarray
        Frames; the first one is the reference.
    homographies : sequence of 3x3 arrays, optional
        Frame -> reference mapping per frame (the reference entry is
        ignored). None = frames are already aligned.
    exposure_multipliers : sequence of float, optional
        Gain bringing each frame to the reference exposure. None = all 1.
    model : NoiseModel, optional
        Noise model of the reference. Estimated from frame 0 when omitted.
    noise_config, fusion_config, denoise_config : optional
        Stage parameters.
    prior : NoiseModel, optional
        Fallback model when the reference yields no usable sample.
    observer : EventSink, optional
        Event callback.
    scheduler : TileScheduler, optional
        Shared tile scheduler.
    progress : bool, default False
        Show a progress bar over frames.

    Returns
    -------
    PipelineResult
        ``stats`` holds 'estimated_variance' (tracked variance of the merge),
        'misaligned_frames' and 'mean_weight'.
    """
    if len(frames) == 0:
        raise ValueError("Empty burst")
    n = len(frames)
    if homographies is not None and len(homographies) != n:
        raise ValueError(f"Got {len(homographies)} homographies for {n} frames")
    if exposure_multipliers is not None and len(exposure_multipliers) != n:
        raise ValueError(f"Got {len(exposure_multipliers)} exposure multipliers for {n} frames")
    if noise_config is not None and noise_config.statistics == "raw":
        raise ValueError("Burst fusion works on demosaiced frames; raw statistics are for denoise_image()")

    noise_config = noise_config or NoiseConfig()
    fusion_config = fusion_config or FusionConfig()
    denoise_config = denoise_config or DenoiseConfig()
    scheduler = scheduler or TileScheduler()
    recorder = EventRecorder()
    sink = _tee(recorder, observer)

    t0 = time.perf_counter()
    model, status, stats = _resolve_model(frames[0], model, noise_config, prior, sink, scheduler)
    fuser = FrameFuser(model, fusion_config, observer=sink, scheduler=scheduler)

    from .cli_output import create_progress_bar

    misaligned = 0
    weights = []
    with create_progress_bar(n, "Fusing", unit="frame", disable=not progress) as pbar:
        for i, frame in enumerate(frames):
            contribution = fuser.add_frame(
                frame,
                None if homographies is None else homographies[i],
                1.0 if exposure_multipliers is None else exposure_multipliers[i],
            )
            misaligned += int(contribution.misaligned)
            if i > 0:
                weights.append(contribution.mean_weight)
            pbar.update(1)

    fused = fuser.finalize()
    state = fuser.snapshot()
    stats["estimated_variance"] = fuser.estimated_variance()
    stats["misaligned_frames"] = float(misaligned)
    stats["mean_weight"] = float(np.mean(weights)) if weights else 1.0

    if fusion_config.denoise_after:
        # Residual noise of the merge: the model shrunk by the per-channel variance reduction
        reduction = state.variance.mean(axis=(0, 1)) / model.variance(state.fused_image).mean(axis=(0, 1))
        residual = NoiseModel(model.a * reduction, model.b * reduction)
        fused = PyramidDenoiser(denoise_config, noise_config, scheduler, sink).denoise(fused, residual).image

    stats["duration_s"] = time.perf_counter() - t0
    logger.info(
        "Fused %d frames (%d misaligned) in %.2fs, estimated variance %.3e",
        n, misaligned, stats["duration_s"], stats["estimated_variance"],
    )
    return PipelineResult(
        mode="fuse",
        image=fused,
        noise_model=model,
        fit_status=status,
        frame_count=state.frame_count,
        stats=stats,
        events=recorder.events,
        noise_config=noise_config,
        denoise_config=denoise_config if fusion_config.denoise_after else None,
        fusion_config=fusion_config,
        version=get_version(),
        timestamp=get_timestamp_iso(),
        platform=get_platform_info(),
    )
