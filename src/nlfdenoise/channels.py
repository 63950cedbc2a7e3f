"""
Channel helpers for nlfdenoise.

Bayer plane splitting (2x2 block statistics) and luminance guides for the
guided filter. Demosaicing itself is done upstream.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from typing import Literal

import numpy as np

logger = logging.getLogger(__name__)

# (row, col) offset of R, G1, G2, B inside the 2x2 CFA cell
BAYER_OFFSETS = {
    "RGGB": ((0, 0), (0, 1), (1, 0), (1, 1)),
    "BGGR": ((1, 1), (0, 1), (1, 0), (0, 0)),
    "GRBG": ((0, 1), (0, 0), (1, 1), (1, 0)),
    "GBRG": ((1, 0), (0, 0), (1, 1), (0, 1)),
}


def extract_bayer_planes(
    bayer: np.ndarray,
    pattern: Literal["RGGB", "BGGR", "GRBG", "GBRG"] = "RGGB",
) -> np.ndarray:
    """
    Extract the four color planes from a Bayer mosaic.

    Each plane is half-resolution (H//2, W//2); a trailing odd row or
    column is dropped.

    Parameters
    ----------
    bayer : np.ndarray
        2D raw Bayer mosaic image (H, W).
    pattern : {"RGGB", "BGGR", "GRBG", "GBRG"}, default "RGGB"
        CFA layout of the top-left 2x2 cell.

    Returns
    -------
    np.ndarray
        (H//2, W//2, 4) float32 array with planes ordered R, G1, G2, B.

    Notes
    -----
    RGGB pattern layout:
        R   G1
        G2  B
    """
    if bayer.ndim != 2:
        raise ValueError(f"Expected 2D Bayer array, got shape {bayer.shape}")
    if pattern not in BAYER_OFFSETS:
        raise ValueError(f"Unknown Bayer pattern: {pattern}")

    h, w = bayer.shape
    h2, w2 = h // 2, w // 2
    bayer_f = bayer.astype(np.float32)

    planes = np.empty((h2, w2, 4), dtype=np.float32)
    for c, (dy, dx) in enumerate(BAYER_OFFSETS[pattern]):
        planes[:, :, c] = bayer_f[dy:h2 * 2:2, dx:w2 * 2:2]

    logger.debug("Bayer plane extraction (%s): %s -> %s", pattern, bayer.shape, planes.shape)
    return planes


def rebuild_bayer_from_planes(
    planes: np.ndarray,
    pattern: Literal["RGGB", "BGGR", "GRBG", "GBRG"] = "RGGB",
) -> np.ndarray:
    """
    Rebuild a Bayer mosaic from four color planes.

    This is the inverse of extract_bayer_planes().

    Parameters
    ----------
    planes : np.ndarray
        (H/2, W/2, 4) planes ordered R, G1, G2, B.
    pattern : {"RGGB", "BGGR", "GRBG", "GBRG"}, default "RGGB"
        CFA layout of the top-left 2x2 cell.

    Returns
    -------
    np.ndarray
        Reconstructed Bayer mosaic with shape (H, W), dtype float32.
    """
    if planes.ndim != 3 or planes.shape[2] != 4:
        raise ValueError(f"Expected (H, W, 4) planes, got shape {planes.shape}")

    h2, w2, _ = planes.shape
    bayer = np.zeros((h2 * 2, w2 * 2), dtype=np.float32)
    for c, (dy, dx) in enumerate(BAYER_OFFSETS[pattern]):
        bayer[dy::2, dx::2] = planes[:, :, c]
    return bayer


def luminance_from_rgb(
    rgb: np.ndarray,
    method: Literal["average", "weighted"] = "weighted",
) -> np.ndarray:
    """
    Convert RGB image to luminance.

    Parameters
    ----------
    rgb : np.ndarray
        RGB image with shape (H, W, 3).
    method : {"average", "weighted"}, default "weighted"
        - "average": Simple mean of R, G, B
        - "weighted": ITU-R BT.601 weighted sum

    Returns
    -------
    np.ndarray
        Luminance image with shape (H, W), dtype float32.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected (H, W, 3) array, got shape {rgb.shape}")

    if method == "average":
        return np.mean(rgb, axis=2).astype(np.float32)
    elif method == "weighted":
        # ITU-R BT.601
        return (0.299 * rgb[:, :, 0] +
                0.587 * rgb[:, :, 1] +
                0.114 * rgb[:, :, 2]).astype(np.float32)
    else:
        raise ValueError(f"Unknown method: {method}")


def guide_from_image(
    image: np.ndarray,
    layout: Literal["luma_first", "rgb"] = "luma_first",
) -> np.ndarray:
    """
    Derive a single-channel guide image.

    Parameters
    ----------
    image : np.ndarray
        (H, W, C) image.
    layout : {"luma_first", "rgb"}, default "luma_first"
        'luma_first' takes channel 0 (YCbCr-style inputs, mono images);
        'rgb' computes BT.601 luminance from a 3-channel image.

    Returns
    -------
    np.ndarray
        (H, W) float32 guide.
    """
    if image.ndim == 2:
        return image.astype(np.float32)
    if layout == "rgb":
        return luminance_from_rgb(image)
    return image[:, :, 0].astype(np.float32)
