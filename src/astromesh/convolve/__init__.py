"""Spatial convolution with optional device offload."""

from astromesh.convolve.device import (
    KERNEL_SOURCE,
    CupyBackend,
    DeviceBackend,
    SVMBuffer,
    available_backend,
    convolve_on_device,
)
from astromesh.convolve.kernel import check_kernel_shape, gaussian_kernel, normalize_kernel, read_kernel
from astromesh.convolve.spatial import channel_border_tiles, convolve_spatial

__all__ = [
    'KERNEL_SOURCE', 'CupyBackend', 'DeviceBackend', 'SVMBuffer', 'available_backend',
    'convolve_on_device', 'check_kernel_shape', 'gaussian_kernel', 'normalize_kernel',
    'read_kernel', 'channel_border_tiles', 'convolve_spatial',
]
