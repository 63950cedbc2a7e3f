"""
nlfdenoise - Noise-Level-Function estimation, multiscale denoising and burst fusion.

Estimates a per-channel linear noise model (variance = A + B * mean) from
local image statistics and uses it to drive a multiscale denoiser and a
noise-aware burst fusion accumulator.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com

Example
-------
>>> from nlfdenoise import denoise_image, DenoiseConfig
>>> result = denoise_image(image, denoise_config=DenoiseConfig(levels=4))
>>> print(result.noise_model, result.fit_status)

Example (burst)
---------------
>>> from nlfdenoise import fuse_burst
>>> result = fuse_burst(frames, homographies=homographies)
>>> print(result.frame_count, result.stats["estimated_variance"])
"""

from .config import (
    DenoiseConfig,
    FitStatus,
    FusionConfig,
    NoiseConfig,
    PipelineResult,
)
from .utils import __version__, __version_info__, get_version_banner

# Events
from .events import EventKind, EventRecorder, EventSink, PipelineEvent

# Statistics
from .statistics import (
    Sample,
    SampleSet,
    collect_luma_statistics,
    collect_raw_statistics,
    collect_samples,
    collect_statistics,
)

# Noise model
from .nlf import (
    NLF_FLOOR,
    FitReport,
    InsufficientSamplesError,
    LMedSFitter,
    ModelFitter,
    NoiseModel,
    TwoPassFitter,
    estimate_noise_model,
    fit_noise_model,
    fitter_from_config,
)

# Denoising
from .denoise import (
    LevelResult,
    confidence_mask,
    denoise_level,
    despeckle,
    guided_filter,
    guided_filter_coefficients,
)
from .pyramid import (
    PyramidDenoiser,
    PyramidLevel,
    PyramidResult,
    build_pyramid,
    compose_pyramid,
    compute_gradient,
    downsample,
    upsample,
)

# Fusion
from .fusion import (
    AccumulatorState,
    FrameContribution,
    FrameFuser,
    FusionState,
    warp_to_reference,
)

# Primary entry points
from .pipeline import denoise_image, denoise_mosaic, fuse_burst

# I/O functions
from .io import (
    list_frames,
    load_homographies,
    load_noise_model,
    read_image,
    save_homographies,
    save_noise_model,
    write_image,
)

# Backend
from .backend import Stage, TileScheduler, get_backend_summary, is_gpu_available

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Config
    "NoiseConfig",
    "DenoiseConfig",
    "FusionConfig",
    "PipelineResult",
    "FitStatus",
    # Events
    "EventKind",
    "EventRecorder",
    "EventSink",
    "PipelineEvent",
    # Statistics
    "Sample",
    "SampleSet",
    "collect_statistics",
    "collect_luma_statistics",
    "collect_raw_statistics",
    "collect_samples",
    # Noise model
    "NLF_FLOOR",
    "NoiseModel",
    "TwoPassFitter",
    "LMedSFitter",
    "ModelFitter",
    "FitReport",
    "InsufficientSamplesError",
    "fit_noise_model",
    "fitter_from_config",
    "estimate_noise_model",
    # Denoising
    "LevelResult",
    "guided_filter_coefficients",
    "guided_filter",
    "confidence_mask",
    "denoise_level",
    "despeckle",
    "PyramidLevel",
    "PyramidResult",
    "PyramidDenoiser",
    "downsample",
    "upsample",
    "compute_gradient",
    "build_pyramid",
    "compose_pyramid",
    # Fusion
    "AccumulatorState",
    "FusionState",
    "FrameContribution",
    "FrameFuser",
    "warp_to_reference",
    # Pipeline
    "denoise_image",
    "denoise_mosaic",
    "fuse_burst",
    # I/O
    "read_image",
    "write_image",
    "list_frames",
    "save_homographies",
    "load_homographies",
    "save_noise_model",
    "load_noise_model",
    # Backend
    "Stage",
    "TileScheduler",
    "get_backend_summary",
    "is_gpu_available",
]
