"""Mode estimation by distribution mirroring.

For a candidate mode ``m`` the part of the sorted distribution below ``m``
is mirrored around it. At the true mode of a symmetric (noise) distribution
the mirrored cumulative counts above ``m`` match the actual ones. A
golden-section search over the index of ``m`` minimises the largest
normalised difference between the two (a Kolmogorov-Smirnov-like distance).

The *symmetricity* measures how far above the mode the two distributions
keep agreeing, relative to the distance from the minimum to the mode.
Values below :data:`MODE_GOOD_SYM` mean the mode is not reliable.
"""

import logging
import math
from dataclasses import dataclass
from typing import NamedTuple

import numpy as np

from astromesh.errors import ParameterRangeError
from astromesh.statistics.basic import _sorted_values
from astromesh.statistics.histogram import bin_centers, cfp, histogram, regular_bins

__all__ = [
    'MODE_GOOD_SYM',
    'ModeResult',
    'MirrorPlots',
    'mode',
    'mode_mirror_plots',
]

logger = logging.getLogger(__name__)

MODE_GOOD_SYM = 0.2
MODE_MIN_QUANTILE = 0.01
MODE_MAX_QUANTILE = 0.55
GOLDEN_RATIO = (math.sqrt(5) - 1) / 2


@dataclass
class ModeResult:
    quantile: float
    value: float
    symmetricity: float
    symmetry_value: float

    @property
    def is_good(self) -> bool:
        return self.symmetricity == self.symmetricity and self.symmetricity >= MODE_GOOD_SYM


class MirrorPlots(NamedTuple):
    centers: np.ndarray
    histogram: np.ndarray
    cfp: np.ndarray
    mirror_histogram: np.ndarray
    mirror_cfp: np.ndarray


def _mirror_counts(ordered: np.ndarray, index: int):
    """Mirrored values above ``ordered[index]`` and the actual counts up to each."""
    center = ordered[index]
    mirrored = 2 * center - ordered[index::-1]
    actual = np.searchsorted(ordered, mirrored, side="right") - index
    return mirrored, actual, np.arange(1, index + 2)


def _mirror_distance(ordered: np.ndarray, index: int) -> float:
    _, actual, expected = _mirror_counts(ordered, index)
    return float(np.max(np.abs(actual - expected)) / expected[-1])


def mode(data, errorstd: float = 0.2) -> ModeResult:
    """Mode of the non-blank elements by mirroring.

    Parameters
    ----------
    data : DataBuffer or array-like
        Input values.
    errorstd : float
        Multiple of the Poisson error ``sqrt(n)`` tolerated between the
        mirrored and actual cumulative counts before the distribution is
        considered asymmetric.
    """
    if errorstd <= 0:
        raise ParameterRangeError(f"errorstd must be positive, got {errorstd}")

    ordered = _sorted_values(data).astype(np.float64, copy=False)
    n = ordered.size
    if n < 3:
        return ModeResult(np.nan, np.nan, np.nan, np.nan)

    low = max(int(MODE_MIN_QUANTILE * (n - 1)), 1)
    high = max(int(MODE_MAX_QUANTILE * (n - 1)), low)

    # Golden-section search on the integer mirror index.
    a, b = low, high
    c = int(round(b - GOLDEN_RATIO * (b - a)))
    d = int(round(a + GOLDEN_RATIO * (b - a)))
    fc, fd = _mirror_distance(ordered, c), _mirror_distance(ordered, d)
    while b - a > 3:
        if fc <= fd:
            b, d, fd = d, c, fc
            c = int(round(b - GOLDEN_RATIO * (b - a)))
            fc = _mirror_distance(ordered, c)
        else:
            a, c, fc = c, d, fd
            d = int(round(a + GOLDEN_RATIO * (b - a)))
            fd = _mirror_distance(ordered, d)
    best = min(range(a, b + 1), key=lambda i: _mirror_distance(ordered, i))

    value = float(ordered[best])
    mirrored, actual, expected = _mirror_counts(ordered, best)
    exceeded = np.nonzero(np.abs(actual - expected) > errorstd * np.sqrt(expected))[0]
    sym_value = float(mirrored[exceeded[0]] if exceeded.size else mirrored[-1])
    spread = value - ordered[0]
    symmetricity = (sym_value - value) / spread if spread > 0 else np.nan

    logger.debug("Mode: index=%d/%d, value=%g, symmetricity=%g", best, n, value, symmetricity)
    return ModeResult(best / (n - 1), value, float(symmetricity), sym_value)


def mode_mirror_plots(data, value: float, numbins: int) -> MirrorPlots:
    """Histograms and cumulative frequency plots of the data and its mirror.

    The mirror is built from the elements below ``value``. Both are binned
    over ``[min, 2 * value - min]`` so they can be compared directly.
    """
    ordered = _sorted_values(data).astype(np.float64, copy=False)
    if ordered.size == 0:
        empty = np.zeros(numbins)
        return MirrorPlots(empty, empty, empty, empty, empty)

    below = ordered[ordered <= value]
    mirror = np.concatenate([below, 2 * value - below[::-1]])
    edges = regular_bins(None, numbins, range=(ordered[0], 2 * value - ordered[0]))
    return MirrorPlots(
        bin_centers(edges),
        histogram(ordered, edges, maxhistone=True),
        cfp(ordered, edges, normalize=True),
        histogram(mirror, edges, maxhistone=True),
        cfp(mirror, edges, normalize=True),
    )
