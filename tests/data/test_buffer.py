"""Tests for typed buffers, blanks and conversion."""

import numpy as np
import pytest

from astromesh.data import (
    BLANK_STRING,
    BufferFlag,
    DataBuffer,
    DataType,
    allocate,
    as_buffer,
    blank_value,
    copy,
    copy_as,
    flag_blank,
    is_blank,
)
from astromesh.errors import MisconfigurationError

pytestmark = pytest.mark.unit


class TestBlankValues:

    def test_integer_blanks(self):
        assert blank_value(DataType.UINT8) == 255
        assert blank_value(DataType.INT16) == -32768
        assert blank_value("int32") == np.iinfo(np.int32).min

    def test_float_blank_is_nan(self):
        assert np.isnan(blank_value(np.float32))
        assert is_blank(float("nan"), DataType.FLOAT64)
        assert not is_blank(0.0, DataType.FLOAT64)

    def test_string_blank(self):
        assert blank_value(DataType.STRING) == BLANK_STRING
        assert is_blank("n/a", DataType.STRING)

    def test_bit_has_no_blank(self):
        with pytest.raises(MisconfigurationError):
            blank_value(DataType.BIT)

    def test_unsupported_numpy_type(self):
        with pytest.raises(MisconfigurationError):
            DataType.from_numpy(np.dtype("float16"))


class TestDataBuffer:

    def test_type_inferred_from_array(self):
        buf = as_buffer(np.zeros((3, 4), dtype=np.int16))
        assert buf.dtype is DataType.INT16
        assert buf.shape == (3, 4)
        assert buf.ndim == 2
        assert buf.size == 12
        assert buf.owns_storage

    def test_has_blank_is_cached(self):
        data = np.ones((3, 3), dtype=np.float32)
        data[1, 1] = np.nan
        buf = as_buffer(data)

        assert buf.has_blank()
        assert buf.flag & BufferFlag.BLANK_CHECKED
        # Cached answer survives until the buffer is marked changed
        buf.array[1, 1] = 0
        assert buf.has_blank()
        buf.mark_changed()
        assert not buf.has_blank()

    def test_blank_mask_for_integers(self):
        data = np.array([[1, 255], [3, 4]], dtype=np.uint8)
        mask = as_buffer(data).blank_mask()
        assert mask.tolist() == [[False, True], [False, False]]

    def test_view_shares_storage_with_root(self):
        buf = as_buffer(np.zeros((4, 4), dtype=np.float32), name="INPUT")
        tile = buf.view((slice(0, 2), slice(2, 4)))
        inner = tile.view((slice(1, 2), slice(1, 2)))

        tile.array[:] = 5
        assert buf.array[0, 3] == 5
        assert tile.block is buf
        assert inner.block is buf
        assert not tile.owns_storage
        assert tile.name == "INPUT"

    def test_view_free_is_noop(self):
        buf = as_buffer(np.zeros((4, 4)))
        tile = buf.view((slice(0, 2), slice(0, 2)))
        tile.free()
        assert tile.array is not None
        assert buf.array is not None

    def test_free_releases_array(self):
        buf = allocate(DataType.FLOAT32, (4, 4))
        buf.free()
        assert buf.array is None
        # Freeing twice is harmless
        buf.free()

    def test_iter_chain(self):
        first = as_buffer(np.zeros(2), name="a")
        first.next = as_buffer(np.zeros(2), name="b")
        first.next.next = as_buffer(np.zeros(2), name="c")
        assert [b.name for b in first.iter_chain()] == ["a", "b", "c"]

    def test_context_manager_frees(self):
        with allocate(DataType.INT32, 10) as buf:
            assert buf.shape == (10,)
        assert buf.array is None


class TestAllocate:

    def test_clear_zeroes(self):
        buf = allocate(DataType.FLOAT64, (5, 5), clear=True)
        assert np.all(buf.array == 0)
        assert buf.dtype is DataType.FLOAT64

    def test_string_buffers(self):
        cleared = allocate(DataType.STRING, 3, clear=True)
        plain = allocate(DataType.STRING, 3)
        assert cleared.array.tolist() == ["n/a"] * 3
        assert plain.array.tolist() == [""] * 3

    def test_like_inherits_memory_policy(self):
        parent = allocate(DataType.FLOAT32, (2, 2), minmapsize=10**9, quietmmap=False)
        child = allocate(DataType.INT32, (2, 2), like=parent)
        assert child.minmapsize == 10**9
        assert child.quietmmap is False

    def test_explicit_policy_overrides_like(self):
        parent = allocate(DataType.FLOAT32, (2, 2))
        child = allocate(DataType.FLOAT32, (2, 2), minmapsize=1000, like=parent)
        assert child.minmapsize == 1000
        assert child.quietmmap is parent.quietmmap


class TestCopy:

    def test_copy_of_view_is_contiguous(self):
        buf = as_buffer(np.arange(16, dtype=np.float32).reshape(4, 4))
        tile = buf.view((slice(1, 3), slice(1, 3)))
        out = copy(tile)
        assert out.owns_storage
        assert out.array.tolist() == [[5, 6], [9, 10]]
        out.array[0, 0] = -1
        assert buf.array[1, 1] == 5

    def test_copy_as_maps_blanks(self):
        data = np.array([1.5, np.nan, 3.0], dtype=np.float32)
        out = copy_as(as_buffer(data), DataType.INT16)
        assert out.array.tolist() == [1, -32768, 3]
        assert out.flag & BufferFlag.HAS_BLANK
        assert out.has_blank()

    def test_copy_as_integer_to_float(self):
        data = np.array([1, 255, 3], dtype=np.uint8)
        out = copy_as(as_buffer(data), "float64")
        assert out.array[0] == 1.0
        assert np.isnan(out.array[1])

    def test_copy_as_to_string(self):
        data = np.array([1.0, np.nan])
        out = copy_as(as_buffer(data), DataType.STRING)
        assert out.array[1] == "n/a"

    def test_copy_as_same_type_is_copy(self):
        buf = as_buffer(np.ones(3, dtype=np.int32))
        out = copy_as(buf, DataType.INT32)
        assert out is not buf
        assert out.array.tolist() == [1, 1, 1]


def test_flag_blank_is_uint8():
    data = np.array([[0.0, np.nan], [np.nan, 2.0]])
    mask = flag_blank(data)
    assert mask.dtype == np.uint8
    assert mask.tolist() == [[0, 1], [1, 0]]


def test_as_buffer_returns_existing():
    buf = DataBuffer(np.zeros(2))
    assert as_buffer(buf) is buf


@pytest.mark.parametrize("narrow,wide", [
    (np.uint8, "int16"),
    (np.int16, "int32"),
    (np.int32, "float64"),
    (np.float32, "float64"),
    (np.uint16, "float32"),
])
def test_copy_as_round_trip_through_wider_type(narrow, wide):
    info = np.iinfo(narrow) if np.dtype(narrow).kind in "iu" else np.finfo(narrow)
    data = np.array([info.min, 0, 1, 7, info.max], dtype=narrow)
    if np.dtype(narrow).kind in "iu":
        # The type's blank must survive too
        data[1] = blank_value(np.dtype(narrow))
    src = as_buffer(data)

    back = copy_as(copy_as(src, wide), DataType.from_numpy(np.dtype(narrow)))

    assert back.array.dtype == np.dtype(narrow)
    assert np.array_equal(back.array, data)
