"""Tests for tiled spatial convolution."""

import logging

import numpy as np
import pytest

from astromesh.convolve import channel_border_tiles, convolve_spatial
from astromesh.data import DataType, allocate, as_buffer
from astromesh.errors import MisconfigurationError, ParameterRangeError, ShapeMismatchError
from astromesh.tile import Tessellation

pytestmark = pytest.mark.unit

BOX = np.full((3, 3), 1 / 9)


@pytest.fixture
def blank_centre():
    image = np.ones((5, 5), dtype=np.float32)
    image[2, 2] = np.nan
    return image


class TestBlankHandling:

    def test_blank_spreads_over_kernel_support(self, blank_centre):
        out = convolve_spatial(blank_centre, BOX, edge_correct=True).array

        touched = np.zeros((5, 5), dtype=bool)
        touched[1:4, 1:4] = True
        assert np.all(np.isnan(out[touched]))
        assert np.allclose(out[~touched], 1.0)

    def test_convolve_on_blank_fills(self, blank_centre):
        out = convolve_spatial(blank_centre, BOX, edge_correct=True,
                               convolve_on_blank=True).array
        assert np.all(np.isfinite(out))
        assert np.allclose(out, 1.0)

    def test_integer_blanks(self):
        image = np.full((5, 5), 4, dtype=np.int16)
        image[0, 0] = np.iinfo(np.int16).min
        out = convolve_spatial(image, BOX).array
        assert out.dtype == np.float32
        assert np.isnan(out[1, 1])
        assert out[4, 4] == pytest.approx(4.0)


class TestEdges:

    def test_edge_correct_keeps_constant(self):
        out = convolve_spatial(np.ones((6, 6)), BOX, edge_correct=True).array
        assert np.allclose(out, 1.0)

    def test_without_edge_correct_dims_corners(self):
        out = convolve_spatial(np.ones((6, 6)), BOX, edge_correct=False).array
        assert out[0, 0] == pytest.approx(4 / 9)
        assert out[3, 3] == pytest.approx(1.0)

    def test_output_types(self):
        assert convolve_spatial(np.ones((5, 5), dtype=np.int32), BOX).dtype is DataType.FLOAT32
        assert convolve_spatial(np.ones((5, 5)), BOX).dtype is DataType.FLOAT64


class TestTiling:

    def test_tiled_matches_single_tile(self):
        image = np.random.default_rng(8).normal(0, 1, (32, 32))
        kernel = np.random.default_rng(9).uniform(0, 1, (5, 5))
        whole = convolve_spatial(image, kernel).array
        tiled = convolve_spatial(image, kernel, Tessellation((32, 32), (8, 8)),
                                 num_threads=3).array
        assert np.allclose(whole, tiled)

    def test_over_channels_matches_untiled(self):
        image = np.random.default_rng(10).normal(0, 1, (16, 16))
        tess = Tessellation((16, 16), (4, 4), (2, 2))
        whole = convolve_spatial(image, BOX).array
        tiled = convolve_spatial(image, BOX, tess, num_threads=2,
                                 convolve_over_channels=True).array
        assert np.allclose(whole, tiled)

    def test_channel_borders_not_crossed(self):
        image = np.zeros((16, 16))
        image[:, 8:] = 10.0
        tess = Tessellation((16, 16), (4, 4), (1, 2))

        separate = convolve_spatial(image, BOX, tess).array
        assert separate[8, 7] == pytest.approx(0.0)
        assert separate[8, 8] == pytest.approx(10.0)

        crossing = convolve_spatial(image, BOX, tess, convolve_over_channels=True).array
        assert crossing[8, 7] == pytest.approx(10 / 3)

    def test_channel_border_tiles(self):
        tess = Tessellation((16, 16), (4, 4), (1, 2))
        border = channel_border_tiles(tess)
        assert len(border) == 8
        for tile in border:
            cols = tess.slices[tile][1]
            assert 8 in (cols.start, cols.stop)
        assert channel_border_tiles(Tessellation((16, 16), (4, 4))).size == 0


class TestValidation:

    def test_even_kernel(self):
        with pytest.raises(ParameterRangeError):
            convolve_spatial(np.ones((5, 5)), np.ones((2, 2)))

    def test_empty_kernel(self):
        with pytest.raises(ParameterRangeError):
            convolve_spatial(np.ones((5, 5)), np.ones((0, 3)))

    def test_dimension_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            convolve_spatial(np.ones((5, 5)), np.ones(3))

    def test_tessellation_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            convolve_spatial(np.ones((5, 5)), BOX, Tessellation((6, 6), (3, 3)))

    def test_kernel_larger_than_tile_without_edge_correct(self):
        with pytest.raises(ShapeMismatchError):
            convolve_spatial(np.ones((8, 8)), BOX, Tessellation((8, 8), (2, 2)),
                             edge_correct=False)

    def test_unknown_backend(self):
        with pytest.raises(MisconfigurationError):
            convolve_spatial(np.ones((5, 5)), BOX, backend="opencl")

    def test_gpu_request_falls_back(self, monkeypatch, caplog):
        monkeypatch.setattr("astromesh.convolve.spatial.available_backend", lambda: None)
        with caplog.at_level(logging.WARNING, logger="astromesh.convolve.spatial"):
            out = convolve_spatial(as_buffer(np.ones((5, 5))), BOX, backend="gpu")
        assert np.allclose(out.array, 1.0)
        assert "No GPU backend available" in caplog.text


@pytest.mark.parametrize("dtype", [np.float32, np.float64, np.int16])
@pytest.mark.parametrize("tessellation,edge_correct", [
    (None, True),
    (Tessellation((30, 40), (10, 10), num_channels=(1, 2)), True),
    (Tessellation((30, 40), (10, 10)), False),
])
def test_unit_kernel_is_identity(dtype, tessellation, edge_correct):
    image = np.random.default_rng(5).normal(100.0, 10.0, (30, 40)).astype(dtype)

    out = convolve_spatial(image, np.ones((1, 1)), tessellation, num_threads=2,
                           edge_correct=edge_correct)

    assert np.array_equal(out.array, image.astype(out.array.dtype))


class TestMemoryPolicy:

    def test_explicit_minmapsize_maps_output(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        image = np.ones((100, 100), dtype=np.float32)

        out = convolve_spatial(image, BOX, minmapsize=1000)
        try:
            assert out.is_mmapped
            assert out.minmapsize == 1000
            assert out.mmap_path.parent.resolve() == (tmp_path / "gnuastro_mmap").resolve()
            assert np.allclose(out.array, 1.0)
        finally:
            out.free()

    def test_policy_inherited_from_input(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        image = allocate(DataType.FLOAT32, (100, 100), minmapsize=1000)
        image.array[...] = 2.0

        out = convolve_spatial(image, BOX)
        try:
            assert out.is_mmapped
        finally:
            out.free()
            image.free()

    def test_small_output_stays_in_ram(self):
        out = convolve_spatial(np.ones((10, 10), dtype=np.float32), BOX, minmapsize=10**6)
        assert not out.is_mmapped
