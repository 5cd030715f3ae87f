"""End-to-end checks on small synthetic images.

Blank propagation in convolution and sigma-clip convergence on a uniform
sample are covered in tests/convolve/test_spatial.py and
tests/statistics/test_clip.py.
"""

import queue

import numpy as np
import pytest

from astromesh.data import MMAP_DIRNAME, DataBuffer, DataType, RamWithMmapFallback, allocate
from astromesh.detection import estimate_sky
from astromesh.mesh import MeshEngine
from astromesh.pipeline import ImageProcessor
from astromesh.tile import Tessellation


@pytest.mark.unit
def test_sky_of_constant_image():
    image = np.full((256, 256), 1000.0, dtype=np.float32)
    engine = MeshEngine(Tessellation(image.shape, (32, 32), (1, 1)))
    estimate = estimate_sky(engine, image)

    assert estimate.sky.valid.all()
    assert estimate.std.valid.all()
    assert np.allclose(estimate.sky_image.array, 1000.0)
    assert np.all(estimate.std_image.array == 0)
    assert estimate.is_zero_noise


@pytest.mark.slow
def test_sky_of_gaussian_noise():
    image = np.random.default_rng(42).normal(0.0, 5.0, (1024, 1024)).astype(np.float32)
    engine = MeshEngine(Tessellation(image.shape, (64, 64)), num_threads=2)
    estimate = estimate_sky(engine, image)

    assert estimate.sky.valid.all()
    assert abs(float(np.median(estimate.sky_image.array))) < 0.1
    assert float(np.median(estimate.std_image.array)) == pytest.approx(5.0, abs=0.2)


@pytest.mark.pipeline
def test_point_source(point_source_config, point_source_image, output_dirs):
    processor = ImageProcessor(queue.Queue(), point_source_config, output_dirs)
    try:
        products = processor.analyze(DataBuffer(point_source_image, name="INPUT"), "point")
    finally:
        processor.close_database()

    objects = products.catalog.objects
    assert products.segmentation.num_objects == 1
    assert len(objects) == 1
    host = int(products.segmentation.objects[64, 64])
    assert host == 1
    row = objects.set_index("obj_id").loc[host]
    assert row["area"] >= 1
    assert (row["max_x"], row["max_y"]) == (64, 64)
    assert row["x"] == pytest.approx(64.0, abs=0.5)
    assert row["y"] == pytest.approx(64.0, abs=0.5)


@pytest.mark.unit
def test_large_buffer_memory_mapped_and_removed(tmp_path):
    minmapsize = 10_000
    strategy = RamWithMmapFallback(minmapsize=minmapsize, directory=tmp_path)
    buf = allocate(DataType.FLOAT32, minmapsize // 4 + 1, strategy=strategy)

    path = buf.mmap_path
    assert buf.is_mmapped
    assert path.parent == tmp_path / MMAP_DIRNAME
    assert path.exists()

    buf.free()
    assert not path.exists()
    assert strategy.counter.live == 0
