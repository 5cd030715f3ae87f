"""Tests for single-pass and order statistics."""

import numpy as np
import pytest

from astromesh import statistics as stats
from astromesh.data import BufferFlag, as_buffer
from astromesh.errors import MisconfigurationError, ParameterRangeError

pytestmark = pytest.mark.unit


class TestSinglePass:

    def test_blanks_are_ignored(self):
        data = np.array([1.0, np.nan, 3.0])
        assert stats.number(data) == 2
        assert stats.minimum(data) == 1.0
        assert stats.maximum(data) == 3.0
        assert stats.sum(data) == 4.0
        assert stats.mean(data) == 2.0

    def test_integer_blanks_are_ignored(self):
        data = np.array([10, 255, 20], dtype=np.uint8)
        assert stats.number(data) == 2
        assert stats.maximum(data) == 20

    @pytest.mark.parametrize("func", [stats.minimum, stats.maximum, stats.sum,
                                      stats.mean, stats.std, stats.median])
    def test_empty_gives_nan(self, func):
        assert np.isnan(func(np.array([], dtype=np.float32)))
        assert np.isnan(func(np.array([np.nan, np.nan])))

    def test_population_std(self):
        assert stats.std([1.0, 2.0, 3.0, 4.0]) == pytest.approx(np.sqrt(1.25))

    def test_std_with_large_offset(self):
        data = 1e9 + np.array([0.0, 1.0, 2.0])
        m, s = stats.mean_std(data)
        assert m == pytest.approx(1e9 + 1)
        assert s == pytest.approx(np.sqrt(2 / 3), rel=1e-6)

    def test_std_from_sums(self):
        assert stats.std_from_sums(6.0, 14.0, 3) == pytest.approx(np.sqrt(2 / 3))
        assert np.isnan(stats.std_from_sums(0.0, 0.0, 0))

    def test_string_buffer_rejected(self):
        with pytest.raises(MisconfigurationError):
            stats.mean(np.array(["a", "b"]))


class TestSorting:

    def test_is_sorted(self):
        assert stats.is_sorted(np.array([1, 2, 2, 3])) == "increasing"
        assert stats.is_sorted(np.array([3, 2, 1])) == "decreasing"
        assert stats.is_sorted(np.array([1, 3, 2])) is None
        assert stats.is_sorted(np.array([5])) == "increasing"

    def test_is_sorted_records_flag(self):
        buf = as_buffer(np.array([3.0, 2.0, 1.0]))
        stats.is_sorted(buf)
        assert buf.flag & BufferFlag.SORTED_DECREASING
        assert not buf.flag & BufferFlag.SORTED_INCREASING

    def test_sort_decreasing(self):
        out = stats.sort_decreasing(np.array([3, 1, 2]))
        assert out.array.tolist() == [3, 2, 1]
        assert out.flag & BufferFlag.SORTED_DECREASING

    def test_sort_inplace(self):
        buf = as_buffer(np.array([3.0, 1.0, 2.0]))
        out = stats.sort_increasing(buf, inplace=True)
        assert out is buf
        assert buf.array.tolist() == [1.0, 2.0, 3.0]

    def test_no_blank_sorted(self):
        out = stats.no_blank_sorted(np.array([3.0, np.nan, 1.0]))
        assert out.array.tolist() == [1.0, 3.0]
        assert out.flag & BufferFlag.SORTED_INCREASING

    def test_no_blank_sorted_reverses_decreasing(self):
        buf = as_buffer(np.array([3.0, 2.0, 1.0]))
        stats.is_sorted(buf)
        assert stats.no_blank_sorted(buf).array.tolist() == [1.0, 2.0, 3.0]

    @pytest.mark.parametrize("data", [[3.0, 2.0, 1.0], [2.0, 3.0, 1.0]])
    def test_no_blank_sorted_inplace_reuses_buffer(self, data):
        buf = as_buffer(np.array(data))
        stats.is_sorted(buf)
        out = stats.no_blank_sorted(buf, inplace=True)
        assert out is buf
        assert buf.array.tolist() == [1.0, 2.0, 3.0]
        assert buf.flag & BufferFlag.SORTED_INCREASING
        assert not buf.flag & BufferFlag.SORTED_DECREASING


class TestOrderStatistics:

    def test_median_and_mad(self):
        assert stats.median([1.0, 2.0, 3.0, 100.0]) == 2.5
        # MAD is not scaled to a Gaussian sigma
        assert stats.mad([1.0, 2.0, 3.0, 4.0, 100.0]) == 1.0
        assert stats.median_mad([1.0, 2.0, 3.0, 4.0, 100.0]) == (3.0, 1.0)

    def test_quantile_index_rounding(self):
        assert stats.quantile_index(5, 0.5) == 2
        # Exact half rounds down
        assert stats.quantile_index(4, 0.5) == 1
        assert stats.quantile_index(11, 0.26) == 3
        assert stats.quantile_index(11, 0.0) == 0
        assert stats.quantile_index(11, 1.0) == 10

    def test_quantile(self):
        data = np.arange(11, dtype=np.float32)[::-1]
        assert stats.quantile(data, 0.3) == 3.0
        assert stats.quantile(data, 1.0) == 10.0

    @pytest.mark.parametrize("q", [-0.1, 1.5])
    def test_quantile_out_of_range(self, q):
        with pytest.raises(ParameterRangeError):
            stats.quantile(np.arange(5), q)
        with pytest.raises(ParameterRangeError):
            stats.quantile_index(5, q)

    def test_quantile_function_bounds(self):
        data = np.arange(11, dtype=np.float64)
        assert stats.quantile_function(data, -1) == -np.inf
        assert stats.quantile_function(data, 11) == np.inf
        assert stats.quantile_function(data, 5) == 0.5
        assert stats.quantile_function(data, 5.5) == 0.5
        assert np.isnan(stats.quantile_function(data, np.nan))

    def test_quantile_function_run_resolves_to_middle(self):
        assert stats.quantile_function([2.0, 2.0, 2.0], 2.0) == 0.5
        assert stats.quantile_function([4.0], 4.0) == 0.5

    def test_unique(self):
        out = stats.unique(np.array([3.0, 1.0, 3.0, np.nan]))
        assert out.array.tolist() == [1.0, 3.0]

    def test_has_negative(self):
        assert stats.has_negative([1.0, -1.0])
        assert not stats.has_negative([np.nan, 1.0])

    def test_concentration(self):
        assert stats.concentration([0.0, 0.0, 0.0, 10.0], 2.0) == 0.75
        with pytest.raises(ParameterRangeError):
            stats.concentration([1.0], 0)


@pytest.mark.parametrize("data", [
    np.arange(11, dtype=np.float32)[::-1],
    np.array([3.0, np.nan, -2.0, 8.5, np.nan, 0.0]),
    np.array([7, 2, 65535, 9, 4], dtype=np.uint16),
    np.array([[5, -3], [12, 0]], dtype=np.int32),
    np.array([4.25]),
])
def test_quantile_extremes_are_min_and_max(data):
    assert stats.quantile(data, 0.0) == stats.minimum(data)
    assert stats.quantile(data, 1.0) == stats.maximum(data)


class TestSortedShortcuts:

    @pytest.fixture
    def no_copies(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("sorted buffer was copied")
        monkeypatch.setattr(np, "sort", fail)
        monkeypatch.setattr(stats.basic, "allocate", fail)

    @pytest.mark.parametrize("flag,data", [
        (BufferFlag.SORTED_INCREASING, np.arange(1.0, 12.0)),
        (BufferFlag.SORTED_DECREASING, np.arange(11.0, 0.0, -1.0)),
    ])
    def test_flagged_buffer_read_without_copy(self, no_copies, flag, data):
        buf = as_buffer(data)
        buf.flag = BufferFlag.BLANK_CHECKED | flag

        assert stats.median(buf) == 6.0
        assert stats.median_mad(buf) == (6.0, 3.0)
        assert stats.quantile(buf, 0.0) == 1.0
        assert stats.quantile(buf, 1.0) == 11.0
        assert stats.quantile_function(buf, 6.0) == 0.5

    def test_even_count_middle(self, no_copies):
        buf = as_buffer(np.array([1, 2, 4, 9], dtype=np.int16))
        buf.flag = BufferFlag.BLANK_CHECKED | BufferFlag.SORTED_INCREASING
        assert stats.median(buf) == 3.0

    @pytest.mark.parametrize("func,args", [
        (stats.median, ()),
        (stats.mad, ()),
        (stats.quantile, (0.5,)),
        (stats.quantile_function, (0.0,)),
    ])
    def test_inplace_sorts_and_flags_caller_buffer(self, func, args):
        data = np.random.default_rng(5).normal(size=101)
        expected = func(data.copy(), *args)
        buf = as_buffer(data)

        assert func(buf, *args, inplace=True) == expected
        assert buf.array is data
        assert buf.flag & BufferFlag.SORTED_INCREASING
        assert np.all(np.diff(data) >= 0)

    def test_default_leaves_input_untouched(self):
        data = np.array([3.0, 1.0, 2.0])
        buf = as_buffer(data)
        assert stats.median(buf) == 2.0
        assert data.tolist() == [3.0, 1.0, 2.0]
        assert not buf.flag & BufferFlag.SORTED_INCREASING

    def test_inplace_with_blanks_keeps_input(self):
        data = np.array([3.0, np.nan, 1.0, 2.0])
        assert stats.median(data, inplace=True) == 2.0
        assert np.isnan(data[1])
