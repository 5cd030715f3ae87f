"""Convolution kernels."""

import logging
import math
from pathlib import Path
from typing import Optional, Union

import numpy as np

from astromesh.data import DataBuffer, DataType, allocate, as_buffer
from astromesh.errors import ParameterRangeError

__all__ = ['gaussian_kernel', 'normalize_kernel', 'read_kernel', 'check_kernel_shape']

logger = logging.getLogger(__name__)

FWHM_TO_SIGMA = 1 / (2 * math.sqrt(2 * math.log(2)))


def check_kernel_shape(kernel) -> None:
    """Kernels must be non-empty and odd along every axis."""
    shape = as_buffer(kernel).shape
    if not shape or any(s == 0 for s in shape):
        raise ParameterRangeError(f"Kernel is empty: shape {shape}")
    if any(s % 2 == 0 for s in shape):
        raise ParameterRangeError(f"Kernel size must be odd along every axis, got {shape}")


def normalize_kernel(kernel) -> DataBuffer:
    """Copy of ``kernel`` divided by its sum (as float32)."""
    buf = as_buffer(kernel, name="kernel")
    check_kernel_shape(buf)
    values = np.asarray(buf.array, dtype=np.float64)
    total = np.nansum(values)
    if total == 0:
        raise ParameterRangeError("Kernel sums to zero and cannot be normalized")
    out = allocate(DataType.FLOAT32, buf.shape, name=buf.name or "kernel")
    out.array[...] = np.nan_to_num(values / total)
    return out


def gaussian_kernel(fwhm: float = 2.0, truncation: float = 5.0, ndim: int = 2) -> DataBuffer:
    """Normalized, circularly truncated Gaussian kernel.

    The kernel extends ``truncation * fwhm / 2`` pixels from its centre
    along every axis; pixels further than that from the centre are zero.
    The defaults give the 11x11 kernel used for detection.
    """
    if fwhm <= 0 or truncation <= 0:
        raise ParameterRangeError(f"FWHM and truncation must be positive, got {fwhm}, {truncation}")
    if ndim not in (1, 2, 3):
        raise ParameterRangeError(f"Kernels are built for 1 to 3 dimensions, got {ndim}")

    radius = truncation * fwhm / 2
    half = max(int(math.floor(radius)), 0)
    sigma = fwhm * FWHM_TO_SIGMA
    axis = np.arange(-half, half + 1, dtype=np.float64)
    grids = np.meshgrid(*([axis] * ndim), indexing="ij")
    r2 = sum(g * g for g in grids)
    values = np.exp(-r2 / (2 * sigma * sigma))
    values[r2 > radius * radius] = 0.0
    kernel = normalize_kernel(values)
    kernel.name = "gaussian"
    logger.debug("Gaussian kernel: fwhm=%g, truncation=%g, shape=%s", fwhm, truncation, kernel.shape)
    return kernel


def read_kernel(path: Union[str, Path], hdu: Optional[Union[int, str]] = None,
                normalize: bool = True) -> DataBuffer:
    """Read a kernel image through the FITS collaborator."""
    from astromesh.io.fits import ImageFile

    with ImageFile.open(path, hdu=hdu) as handle:
        kernel = handle.read_image()
    check_kernel_shape(kernel)
    return normalize_kernel(kernel) if normalize else kernel
