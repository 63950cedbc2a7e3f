"""
Utility functions for the nlfdenoise pipeline.

Includes:
- Channel layout helpers (2D <-> (H, W, C))
- Smooth interpolation ramps shared by the denoiser and the fuser
- Output conversion helpers
- Version info

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import platform
import sys
from datetime import datetime, timezone

import numpy as np

__version__ = "0.4.0-beta"
__version_info__ = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-19",
}


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"nlfdenoise v{__version__} | NLF estimation, multiscale denoise and burst fusion"


def get_version() -> str:
    """Return the library version string."""
    return __version__


def get_platform_info() -> str:
    """Return platform information string."""
    return f"{platform.system()} {platform.release()} / Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def get_timestamp_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def as_channels(image: np.ndarray) -> np.ndarray:
    """
    Return the image as a float32 (H, W, C) array.

    Parameters
    ----------
    image : np.ndarray
        2D (H, W) or 3D (H, W, C) image.

    Returns
    -------
    np.ndarray
        Float32 array with an explicit channel axis. 2D inputs get C = 1.
    """
    data = np.asarray(image, dtype=np.float32)
    if data.ndim == 2:
        return data[:, :, np.newaxis]
    if data.ndim == 3:
        return data
    raise ValueError(f"Expected 2D or 3D image, got shape {data.shape}")


def restore_layout(image: np.ndarray, like: np.ndarray) -> np.ndarray:
    """Drop the channel axis again if the reference input was 2D."""
    if np.ndim(like) == 2:
        return image[:, :, 0]
    return image


def smoothstep(edge0: float, edge1: float, x: np.ndarray) -> np.ndarray:
    """
    Hermite ramp from 0 (x <= edge0) to 1 (x >= edge1).

    Parameters
    ----------
    edge0, edge1 : float
        Ramp bounds, edge1 > edge0.
    x : np.ndarray
        Input values.

    Returns
    -------
    np.ndarray
        3t^2 - 2t^3 with t = clip((x - edge0) / (edge1 - edge0), 0, 1).
    """
    t = np.clip((x - edge0) / (edge1 - edge0), 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def to_uint8(data: np.ndarray) -> np.ndarray:
    """
    Convert normalized [0,1] float array to uint8 [0,255].

    Parameters
    ----------
    data : np.ndarray
        Input array with values in [0, 1] range.

    Returns
    -------
    np.ndarray
        Output array with dtype uint8.
    """
    return np.round(np.clip(data, 0, 1) * 255).astype(np.uint8)


def to_uint16(data: np.ndarray) -> np.ndarray:
    """
    Convert normalized [0,1] float array to uint16 [0,65535].

    Parameters
    ----------
    data : np.ndarray
        Input array with values in [0, 1] range.

    Returns
    -------
    np.ndarray
        Output array with dtype uint16.
    """
    return np.round(np.clip(data, 0, 1) * 65535).astype(np.uint16)


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable form.

    Parameters
    ----------
    seconds : float
        Duration in seconds.

    Returns
    -------
    str
        Formatted string like "2h 15m 30s" or "45.2s".
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.0f}s"
