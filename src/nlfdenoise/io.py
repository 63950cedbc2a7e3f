"""
I/O operations for nlfdenoise.

Handles:
- Image reading (FITS through astropy, PNG/TIFF/JPEG through imageio)
  with integer data normalized to [0, 1]
- Image writing (FITS float32, 16-bit TIFF, 8-bit PNG/JPEG)
- Burst frame discovery
- JSON persistence of homographies and noise models

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import imageio.v3 as iio
import numpy as np
from astropy.io import fits

from .nlf import NoiseModel
from .utils import get_timestamp_iso, get_version, to_uint8, to_uint16

logger = logging.getLogger(__name__)

FITS_SUFFIXES = {".fits", ".fit", ".fts"}
IMAGE_SUFFIXES = FITS_SUFFIXES | {".png", ".tif", ".tiff", ".jpg", ".jpeg"}


def _normalize(data: np.ndarray) -> np.ndarray:
    """Map integer data to [0, 1] float32; float data is passed through."""
    if np.issubdtype(data.dtype, np.integer):
        return (data.astype(np.float32) / np.float32(np.iinfo(data.dtype).max))
    return data.astype(np.float32)


def read_image(path: str | Path) -> np.ndarray:
    """
    Read an image as normalized float32.

    Parameters
    ----------
    path : str or Path
        FITS, PNG, TIFF or JPEG file.

    Returns
    -------
    np.ndarray
        (H, W) or (H, W, C) float32 array.

    Notes
    -----
    FITS data is read with BZERO/BSCALE applied by astropy, so unsigned
    16-bit frames stored as BITPIX=16 + BZERO=32768 come back in
    [0, 65535] and are divided by 65535. Alpha channels are dropped.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Image not found: {path}")

    if path.suffix.lower() in FITS_SUFFIXES:
        with fits.open(path) as hdul:
            raw = hdul[0].data
            bitpix = hdul[0].header.get("BITPIX")
            if raw is None:
                raise ValueError(f"No image data in primary HDU of {path}")
            data = raw.astype(np.float32)
        if bitpix in (8, 16):
            data = data / np.float32(255.0 if bitpix == 8 else 65535.0)
        # FITS cubes are stored channel-first
        if data.ndim == 3 and data.shape[0] in (3, 4) and data.shape[2] not in (3, 4):
            data = np.moveaxis(data, 0, -1)
    else:
        data = _normalize(iio.imread(path))

    if data.ndim == 3 and data.shape[2] == 4:
        data = data[:, :, :3]

    logger.debug("Read %s: shape=%s", path.name, data.shape)
    return data


def write_image(
    path: str | Path,
    data: np.ndarray,
    header: fits.Header | None = None,
    overwrite: bool = True,
) -> Path:
    """
    Write a normalized float image.

    Parameters
    ----------
    path : str or Path
        Output path; the suffix selects the format.
    data : np.ndarray
        (H, W) or (H, W, C) image, nominally in [0, 1].
    header : fits.Header, optional
        Extra FITS header (FITS output only).
    overwrite : bool, default True
        Whether to overwrite an existing file.

    Returns
    -------
    Path
        The written path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()

    if suffix in FITS_SUFFIXES:
        out = data.astype(np.float32)
        if out.ndim == 3:
            out = np.moveaxis(out, -1, 0)
        hdr = fits.Header() if header is None else header.copy()
        hdr["CREATOR"] = f"nlfdenoise {get_version()}"
        hdr["DATE"] = get_timestamp_iso()
        fits.PrimaryHDU(data=out, header=hdr).writeto(path, overwrite=overwrite)
    elif suffix in (".tif", ".tiff"):
        if path.exists() and not overwrite:
            raise FileExistsError(f"Output exists: {path}")
        iio.imwrite(path, to_uint16(data))
    elif suffix in (".png", ".jpg", ".jpeg"):
        if path.exists() and not overwrite:
            raise FileExistsError(f"Output exists: {path}")
        iio.imwrite(path, to_uint8(data))
    else:
        raise ValueError(f"Unsupported output format: {suffix}")

    logger.info("Wrote image: %s", path)
    return path


def list_frames(
    directory: str | Path,
    pattern: str = "*",
) -> list[Path]:
    """
    Discover burst frames in a directory.

    Parameters
    ----------
    directory : str or Path
        Folder containing the frames.
    pattern : str, default "*"
        Glob pattern; only files with a supported image suffix are kept.

    Returns
    -------
    list[Path]
        Frames sorted by name (capture order for timestamped names).
    """
    folder = Path(directory)
    if not folder.is_dir():
        raise ValueError(f"Frame path is not a directory: {folder}")

    frames = sorted(
        p for p in folder.glob(pattern)
        if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
    )
    logger.info("Discovered %d frames in %s", len(frames), folder.name)
    return frames


def save_homographies(
    path: str | Path,
    homographies: list[np.ndarray | None],
    exposure_multipliers: list[float] | None = None,
    frames: list[str] | None = None,
) -> Path:
    """
    Save per-frame registration data as JSON.

    The file holds one entry per frame with its 3x3 frame -> reference
    matrix (null for the reference), exposure multiplier and optional
    frame name.
    """
    n = len(homographies)
    if exposure_multipliers is None:
        exposure_multipliers = [1.0] * n
    entries = []
    for i, h in enumerate(homographies):
        entry: dict[str, Any] = {
            "homography": None if h is None else np.asarray(h, dtype=np.float64).tolist(),
            "exposure_multiplier": float(exposure_multipliers[i]),
        }
        if frames is not None:
            entry["frame"] = frames[i]
        entries.append(entry)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({"version": get_version(), "frames": entries}, f, indent=2)
    logger.debug("Saved %d homographies to %s", n, path)
    return path


def load_homographies(path: str | Path) -> tuple[list[np.ndarray | None], list[float]]:
    """
    Load registration data written by save_homographies().

    Returns
    -------
    tuple[list, list[float]]
        (homographies, exposure_multipliers). Reference entries are None.

    Raises
    ------
    ValueError
        If a matrix is not 3x3.
    """
    with open(path, "r") as f:
        content = json.load(f)

    homographies: list[np.ndarray | None] = []
    multipliers: list[float] = []
    for i, entry in enumerate(content["frames"]):
        h = entry.get("homography")
        if h is not None:
            h = np.asarray(h, dtype=np.float64)
            if h.shape != (3, 3):
                raise ValueError(f"Entry {i} of {path}: homography must be 3x3, got {h.shape}")
        homographies.append(h)
        multipliers.append(float(entry.get("exposure_multiplier", 1.0)))
    return homographies, multipliers


def save_noise_model(path: str | Path, model: NoiseModel, **metadata: Any) -> Path:
    """Save a NoiseModel (plus free-form metadata) as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = {"version": get_version(), "model": model.to_dict(), **metadata}
    with open(path, "w") as f:
        json.dump(content, f, indent=2)
    logger.info("Saved noise model: %s", path)
    return path


def load_noise_model(path: str | Path) -> NoiseModel:
    """Load a NoiseModel written by save_noise_model()."""
    with open(path, "r") as f:
        content = json.load(f)
    return NoiseModel.from_dict(content["model"])
