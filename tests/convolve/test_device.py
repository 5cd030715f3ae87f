"""Tests for the device-offload interface.

A host-memory backend stands in for a GPU so the buffer and launch plumbing
is exercised everywhere; the real CuPy path runs only where a device exists.
"""

import numpy as np
import pytest
from scipy import ndimage

from astromesh.convolve import (
    KERNEL_SOURCE,
    DeviceBackend,
    SVMBuffer,
    available_backend,
    convolve_on_device,
    convolve_spatial,
)
from astromesh.errors import ShapeMismatchError


class HostBackend(DeviceBackend):
    """Device backend whose "device" memory is ordinary numpy arrays."""

    name = "host"

    def __init__(self):
        self.launches = []
        self.freed = 0
        self.create_context()
        self.create_queue()

    def create_context(self, device_id=0):
        self.context = device_id

    def create_queue(self):
        self.queue = []

    def svm_alloc(self, host):
        return SVMBuffer(self, host, np.empty_like(host))

    def svm_free(self, buffer):
        buffer.device = None
        self.freed += 1

    def copy_to_device(self, buffer):
        buffer.device[...] = buffer.host

    def copy_to_host(self, buffer):
        buffer.host[...] = buffer.device

    def load_kernels(self, source=KERNEL_SOURCE):
        self.source = source

    def launch(self, kernel_name, args, grid, block):
        self.launches.append((kernel_name, grid, block))
        image, kernel, out = args[0].device, args[1].device, args[2].device
        out[...] = ndimage.convolve(np.nan_to_num(image), kernel, mode="constant", cval=0.0)


@pytest.mark.unit
class TestDeviceInterface:

    def test_kernel_source_ships_with_package(self):
        assert KERNEL_SOURCE.exists()
        assert "convolve_2d" in KERNEL_SOURCE.read_text()

    def test_convolve_on_device_round_trip(self):
        backend = HostBackend()
        image = np.arange(25, dtype=np.float32).reshape(5, 5)
        kernel = np.full((3, 3), 1 / 9, dtype=np.float32)

        out = convolve_on_device(backend, image, kernel)

        expected = ndimage.convolve(image, kernel, mode="constant", cval=0.0)
        assert np.allclose(out, expected)
        name, grid, block = backend.launches[0]
        assert name == "convolve_2d"
        assert grid == (1, 1, 1)
        assert block == (16, 16, 1)
        assert backend.freed == 3

    def test_only_two_dimensional(self):
        with pytest.raises(ShapeMismatchError):
            convolve_on_device(HostBackend(), np.ones((3, 3, 3)), np.ones((3, 3, 3)))

    def test_convolve_spatial_uses_backend_instance(self):
        backend = HostBackend()
        out = convolve_spatial(np.ones((20, 20), dtype=np.float32), np.full((3, 3), 1 / 9),
                               backend=backend)
        assert len(backend.launches) == 1
        assert out.shape == (20, 20)
        assert out.array[10, 10] == pytest.approx(1.0)

    def test_three_dimensional_images_stay_on_cpu(self):
        backend = HostBackend()
        convolve_spatial(np.ones((4, 4, 4)), np.ones((3, 3, 3)), backend=backend)
        assert backend.launches == []

    def test_svm_buffer_free_is_idempotent(self):
        backend = HostBackend()
        buffer = backend.svm_alloc(np.zeros(4))
        buffer.free()
        buffer.free()
        assert backend.freed == 1


@pytest.mark.gpu
def test_cupy_matches_cpu():
    pytest.importorskip("cupy")
    backend = available_backend()
    if backend is None:
        pytest.skip("No CUDA device available")

    image = np.random.default_rng(12).normal(0, 1, (64, 64)).astype(np.float32)
    image[10, 10] = np.nan
    kernel = np.full((3, 3), 1 / 9)

    cpu = convolve_spatial(image, kernel, backend="cpu").array
    gpu = convolve_spatial(image, kernel, backend=backend).array
    assert np.allclose(cpu, gpu, atol=1e-5, equal_nan=True)
