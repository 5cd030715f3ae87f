"""Single-pass and order statistics on typed buffers.

Every function accepts a :class:`~astromesh.data.DataBuffer` or a numpy
array. Blank elements are removed first; when nothing remains the result is
NaN. Order statistics reuse the ``SORTED_*`` flags of a buffer so a buffer
that is already sorted is never sorted again.
"""

import logging
import math
from typing import Optional, Tuple

import numpy as np

from astromesh.data import BufferFlag, DataBuffer, DataType, allocate, as_buffer
from astromesh.errors import MisconfigurationError, ParameterRangeError

__all__ = [
    'number',
    'minimum',
    'maximum',
    'sum',
    'mean',
    'std',
    'mean_std',
    'std_from_sums',
    'is_sorted',
    'sort_increasing',
    'sort_decreasing',
    'no_blank_sorted',
    'median',
    'mad',
    'median_mad',
    'quantile_index',
    'quantile',
    'quantile_function',
    'unique',
    'has_negative',
    'concentration',
]

logger = logging.getLogger(__name__)

# Relative size of the mean against the std above which the plain
# sum-of-squares formula loses too many digits.
STD_SHIFT_THRESHOLD = 1e6


def _clean(data) -> np.ndarray:
    """Flat array of the non-blank elements."""
    buf = as_buffer(data)
    if buf.dtype is DataType.STRING:
        raise MisconfigurationError("Statistics are not defined on string buffers")
    values = np.asarray(buf.array).reshape(-1)
    if buf.has_blank():
        values = values[~buf.blank_mask().reshape(-1)]
    return values


def number(data) -> int:
    """Number of non-blank elements."""
    return int(_clean(data).size)


def minimum(data) -> float:
    values = _clean(data)
    return float(values.min()) if values.size else np.nan


def maximum(data) -> float:
    values = _clean(data)
    return float(values.max()) if values.size else np.nan


def sum(data) -> float:
    values = _clean(data)
    return float(values.sum(dtype=np.float64)) if values.size else np.nan


def mean(data) -> float:
    values = _clean(data)
    return float(values.mean(dtype=np.float64)) if values.size else np.nan


def std_from_sums(total: float, total_sq: float, num: int) -> float:
    """Standard deviation from the sum, sum of squares and count."""
    if num == 0:
        return np.nan
    m = total / num
    return math.sqrt(max(total_sq / num - m * m, 0.0))


def _mean_std(values: np.ndarray) -> Tuple[float, float]:
    values = values.astype(np.float64, copy=False)
    n = values.size
    if n == 0:
        return np.nan, np.nan
    total = values.sum()
    m = total / n
    s = std_from_sums(total, float(np.dot(values, values)), n)

    # Shift by the mean and correct the residual (compensated summation)
    # when the plain formula cancels catastrophically.
    if s == 0 or abs(m) > STD_SHIFT_THRESHOLD * s:
        d = values - m
        c = d.sum()
        s = math.sqrt(max((np.dot(d, d) - c * c / n) / n, 0.0))
    return float(m), float(s)


def std(data) -> float:
    """Population standard deviation of the non-blank elements."""
    return _mean_std(_clean(data))[1]


def mean_std(data) -> Tuple[float, float]:
    return _mean_std(_clean(data))


# ----------------------------------------------------------------------
# Sorting
# ----------------------------------------------------------------------
def is_sorted(data, update_flags: bool = True) -> Optional[str]:
    """``'increasing'``, ``'decreasing'`` or None.

    With ``update_flags`` the result is recorded in the buffer's flags.
    """
    buf = as_buffer(data)
    if buf.flag & BufferFlag.SORTED_INCREASING:
        return "increasing"
    if buf.flag & BufferFlag.SORTED_DECREASING:
        return "decreasing"

    values = np.asarray(buf.array).reshape(-1)
    result = None
    if values.size < 2 or np.all(values[1:] >= values[:-1]):
        result = "increasing"
    elif np.all(values[1:] <= values[:-1]):
        result = "decreasing"

    if update_flags:
        buf.flag &= ~(BufferFlag.SORTED_INCREASING | BufferFlag.SORTED_DECREASING)
        if result == "increasing":
            buf.flag |= BufferFlag.SORTED_INCREASING
        elif result == "decreasing":
            buf.flag |= BufferFlag.SORTED_DECREASING
    return result


def sort_increasing(data, inplace: bool = False) -> DataBuffer:
    buf = as_buffer(data)
    if inplace and buf.array.ndim == 1:
        buf.array.sort()
        out = buf
    else:
        out = allocate(buf.dtype, (buf.size,), like=buf, name=buf.name)
        out.array[...] = np.sort(np.asarray(buf.array).reshape(-1))
    out.flag = (out.flag & ~BufferFlag.SORTED_DECREASING) | BufferFlag.SORTED_INCREASING
    return out


def sort_decreasing(data, inplace: bool = False) -> DataBuffer:
    out = sort_increasing(data, inplace=inplace)
    out.array[...] = out.array[::-1].copy()
    out.flag = (out.flag & ~BufferFlag.SORTED_INCREASING) | BufferFlag.SORTED_DECREASING
    return out


def no_blank_sorted(data, inplace: bool = False) -> DataBuffer:
    """1-D buffer of the non-blank elements in increasing order.

    Input already flagged as sorted (and free of blanks) is reused as-is
    when ``inplace`` and copied otherwise; decreasing input is reversed.
    With ``inplace`` a 1-D buffer without blanks is sorted in its own
    storage; blanks always force a copy.
    """
    buf = as_buffer(data)
    state = buf.flag & (BufferFlag.SORTED_INCREASING | BufferFlag.SORTED_DECREASING)
    flat = buf.array.ndim == 1

    if state and not buf.has_blank():
        if inplace and flat:
            if state & BufferFlag.SORTED_DECREASING:
                buf.array[...] = buf.array[::-1].copy()
            buf.flag = BufferFlag.BLANK_CHECKED | BufferFlag.SORTED_INCREASING
            return buf
        values = np.asarray(buf.array).reshape(-1)
        out = allocate(buf.dtype, (buf.size,), like=buf)
        out.array[...] = values if state & BufferFlag.SORTED_INCREASING else values[::-1]
        out.flag = BufferFlag.BLANK_CHECKED | BufferFlag.SORTED_INCREASING
        return out

    if inplace and flat and not buf.has_blank():
        buf.array.sort()
        out = buf
    else:
        values = _clean(buf)
        out = allocate(buf.dtype, (values.size,), like=buf)
        out.array[...] = np.sort(values)
    out.flag = BufferFlag.BLANK_CHECKED | BufferFlag.SORTED_INCREASING
    return out


def _ordered(data, inplace: bool = False) -> Optional[np.ndarray]:
    """Increasing non-blank values, without copying when possible.

    A buffer flagged as sorted is read through a (possibly reversed) view.
    Otherwise ``inplace`` sorts the buffer itself; without it ``None`` is
    returned so callers can fall back to selection on a copy.
    """
    buf = as_buffer(data)
    state = buf.flag & (BufferFlag.SORTED_INCREASING | BufferFlag.SORTED_DECREASING)
    if state and not buf.has_blank():
        values = np.asarray(buf.array).reshape(-1)
        return values if state & BufferFlag.SORTED_INCREASING else values[::-1]
    if inplace:
        return np.asarray(no_blank_sorted(buf, inplace=True).array)
    return None


def _sorted_values(data, inplace: bool = False) -> np.ndarray:
    values = _ordered(data, inplace)
    if values is None:
        values = np.sort(_clean(data))
    return values


def _middle(values: np.ndarray) -> float:
    # ``values`` is sorted and not empty.
    half = values.size // 2
    if values.size % 2:
        return float(values[half])
    return (float(values[half - 1]) + float(values[half])) / 2


# ----------------------------------------------------------------------
# Order statistics
# ----------------------------------------------------------------------
def median(data, inplace: bool = False) -> float:
    """Median of the non-blank elements.

    A buffer flagged as sorted is read at its middle without any copy.
    ``inplace`` sorts (and flags) the caller's buffer instead of selecting
    on a copy.
    """
    values = _ordered(data, inplace)
    if values is None:
        values = _clean(data)
        return float(np.median(values)) if values.size else np.nan
    return _middle(values) if values.size else np.nan


def mad(data, inplace: bool = False) -> float:
    """Median absolute deviation from the median (not scaled to sigma)."""
    return median_mad(data, inplace=inplace)[1]


def median_mad(data, inplace: bool = False) -> Tuple[float, float]:
    values = _ordered(data, inplace)
    if values is None:
        values = _clean(data).astype(np.float64, copy=False)
        if values.size == 0:
            return np.nan, np.nan
        med = float(np.median(values))
    elif values.size == 0:
        return np.nan, np.nan
    else:
        med = _middle(values)
    return med, float(np.median(np.abs(values.astype(np.float64, copy=False) - med)))


def quantile_index(size: int, q: float) -> int:
    """Index of quantile ``q`` in a sorted array of ``size`` elements.

    Rounds to the nearest index, with an exact half rounding down.
    """
    if not 0.0 <= q <= 1.0:
        raise ParameterRangeError(f"Quantile must be in [0, 1], got {q}")
    float_index = q * (size - 1)
    index = int(float_index)
    if float_index - index > 0.5:
        index += 1
    return index


def quantile(data, q: float, inplace: bool = False) -> float:
    """Element at quantile ``q`` of the non-blank elements.

    ``q = 0`` is the minimum and ``q = 1`` the maximum. ``inplace`` as in
    :func:`median`.
    """
    if not 0.0 <= q <= 1.0:
        raise ParameterRangeError(f"Quantile must be in [0, 1], got {q}")
    values = _sorted_values(data, inplace)
    if values.size == 0:
        return np.nan
    return float(values[quantile_index(values.size, q)])


def quantile_function(data, value: float, inplace: bool = False) -> float:
    """Quantile of ``value`` within the data.

    The quantile is that of the largest element not exceeding ``value``.
    Below the minimum the result is ``-inf``, above the maximum ``+inf``.
    A run of elements equal to ``value`` resolves to the middle of the run,
    so a constant array gives 0.5 for its own value.
    """
    values = _sorted_values(data, inplace)
    n = values.size
    if n == 0 or value != value:
        return np.nan
    if value < values[0]:
        return -np.inf
    if value > values[-1]:
        return np.inf
    if n == 1:
        return 0.5

    left = int(np.searchsorted(values, value, side="left"))
    right = int(np.searchsorted(values, value, side="right"))
    index = (left + right - 1) / 2 if right > left else right - 1
    return float(index / (n - 1))


def unique(data) -> DataBuffer:
    buf = as_buffer(data)
    values = np.unique(_clean(buf))
    out = allocate(buf.dtype, values.shape, like=buf, name=buf.name)
    out.array[...] = values
    out.flag = BufferFlag.BLANK_CHECKED | BufferFlag.SORTED_INCREASING
    return out


def has_negative(data) -> bool:
    values = _clean(data)
    return bool(values.size and (values < 0).any())


def concentration(data, width: float) -> float:
    """Fraction of elements within ``width/2`` of the median."""
    if width <= 0:
        raise ParameterRangeError(f"Concentration width must be positive, got {width}")
    values = _clean(data)
    if values.size == 0:
        return np.nan
    med = np.median(values)
    inside = np.count_nonzero(np.abs(values - med) <= width / 2)
    return inside / values.size
