"""Optional device (GPU) offload for convolution.

A :class:`DeviceBackend` exposes the few primitives the convolution needs:
a context and a command queue, shared buffers mirroring host arrays
(:class:`SVMBuffer`), host/device copies, a kernel-source loader and a
launcher. :class:`CupyBackend` implements them with CuPy. Nothing here is
imported eagerly: without CuPy or a device, :func:`available_backend`
returns None and callers take the CPU path.
"""

import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from astromesh.data import DataBuffer
from astromesh.errors import ShapeMismatchError

__all__ = [
    'KERNEL_SOURCE',
    'SVMBuffer',
    'DeviceBackend',
    'CupyBackend',
    'available_backend',
    'convolve_on_device',
]

logger = logging.getLogger(__name__)

KERNEL_SOURCE = Path(__file__).parent / "kernels" / "convolve.cu"
BLOCK_2D = (16, 16, 1)


class SVMBuffer:
    """Device allocation mirroring a host array (or a DataBuffer's array)."""

    def __init__(self, backend: "DeviceBackend", host: np.ndarray, device: Any):
        self.backend = backend
        self.host = host
        self.device = device

    @property
    def nbytes(self) -> int:
        return int(self.host.nbytes)

    def map_back(self) -> np.ndarray:
        """Copy the device contents into the host array and return it."""
        self.backend.copy_to_host(self)
        return self.host

    def free(self) -> None:
        if self.device is not None:
            self.backend.svm_free(self)


class DeviceBackend(ABC):
    """Interface of a device that can run the convolution kernel."""

    name = "device"

    @abstractmethod
    def create_context(self, device_id: int = 0) -> None:
        ...

    @abstractmethod
    def create_queue(self) -> None:
        ...

    @abstractmethod
    def svm_alloc(self, host) -> SVMBuffer:
        ...

    @abstractmethod
    def svm_free(self, buffer: SVMBuffer) -> None:
        ...

    @abstractmethod
    def copy_to_device(self, buffer: SVMBuffer) -> None:
        ...

    @abstractmethod
    def copy_to_host(self, buffer: SVMBuffer) -> None:
        ...

    @abstractmethod
    def load_kernels(self, source: Path = KERNEL_SOURCE) -> None:
        ...

    @abstractmethod
    def launch(self, kernel_name: str, args: Sequence, grid: Tuple[int, ...],
               block: Tuple[int, ...]) -> None:
        ...


class CupyBackend(DeviceBackend):
    """CUDA backend built on CuPy (``pip install astromesh[gpu]``)."""

    name = "cupy"

    def __init__(self, device_id: int = 0):
        import cupy

        self._cp = cupy
        self.device = None
        self.stream = None
        self.module = None
        self.create_context(device_id)
        self.create_queue()

    def create_context(self, device_id: int = 0) -> None:
        self.device = self._cp.cuda.Device(device_id)
        self.device.use()

    def create_queue(self) -> None:
        self.stream = self._cp.cuda.Stream(non_blocking=True)

    def svm_alloc(self, host) -> SVMBuffer:
        array = host.array if isinstance(host, DataBuffer) else host
        array = np.ascontiguousarray(array)
        return SVMBuffer(self, array, self._cp.empty(array.shape, dtype=array.dtype))

    def svm_free(self, buffer: SVMBuffer) -> None:
        buffer.device = None

    def copy_to_device(self, buffer: SVMBuffer) -> None:
        buffer.device.set(buffer.host, stream=self.stream)

    def copy_to_host(self, buffer: SVMBuffer) -> None:
        buffer.device.get(stream=self.stream, out=buffer.host)
        self.stream.synchronize()

    def load_kernels(self, source: Path = KERNEL_SOURCE) -> None:
        code = Path(source).read_text()
        self.module = self._cp.RawModule(code=code)
        logger.debug("Compiled device kernels from %s", source)

    def launch(self, kernel_name: str, args: Sequence, grid: Tuple[int, ...],
               block: Tuple[int, ...]) -> None:
        if self.module is None:
            self.load_kernels()
        function = self.module.get_function(kernel_name)
        typed = []
        for arg in args:
            if isinstance(arg, SVMBuffer):
                typed.append(arg.device)
            elif isinstance(arg, (bool, int, np.integer)):
                typed.append(np.int32(arg))
            else:
                typed.append(np.float32(arg))
        function(tuple(grid), tuple(block), tuple(typed), stream=self.stream)


def available_backend(device_id: int = 0) -> Optional[DeviceBackend]:
    """A ready device backend, or None when CuPy or a CUDA device is missing."""
    try:
        import cupy
    except ImportError:
        logger.debug("CuPy not installed; convolution runs on the CPU")
        return None
    try:
        if cupy.cuda.runtime.getDeviceCount() <= device_id:
            return None
        return CupyBackend(device_id)
    except cupy.cuda.runtime.CUDARuntimeError as e:
        logger.debug("No usable CUDA device: %s", e)
        return None


def convolve_on_device(backend: DeviceBackend, image: np.ndarray, kernel: np.ndarray,
                       channel_shape: Optional[Tuple[int, int]] = None,
                       edge_correct: bool = True, on_blank: bool = False) -> np.ndarray:
    """Convolve a 2-D float image on ``backend``.

    Blank pixels must already be NaN. With ``channel_shape`` the kernel
    support is restricted to the channel containing each output pixel.
    """
    image = np.ascontiguousarray(image, dtype=np.float32)
    kernel = np.ascontiguousarray(kernel, dtype=np.float32)
    if image.ndim != 2 or kernel.ndim != 2:
        raise ShapeMismatchError("Device convolution is implemented for 2-D images only")
    ny, nx = image.shape
    ky, kx = kernel.shape
    cy, cx = channel_shape if channel_shape is not None else (ny, nx)

    out = np.empty_like(image)
    buffers = [backend.svm_alloc(a) for a in (image, kernel, out)]
    try:
        backend.copy_to_device(buffers[0])
        backend.copy_to_device(buffers[1])
        grid = (math.ceil(nx / BLOCK_2D[0]), math.ceil(ny / BLOCK_2D[1]), 1)
        backend.launch("convolve_2d",
                       [*buffers, ny, nx, ky, kx, cy, cx, int(edge_correct), int(on_blank)],
                       grid, BLOCK_2D)
        out = buffers[2].map_back()
    finally:
        for buffer in buffers:
            buffer.free()
    return out
