"""Regular bins, histograms and cumulative frequency plots."""

import logging
from typing import Optional, Tuple

import numpy as np

from astromesh.errors import MisconfigurationError, ParameterRangeError
from astromesh.statistics.basic import _clean

__all__ = ['regular_bins', 'bin_centers', 'histogram', 'cfp']

logger = logging.getLogger(__name__)


def regular_bins(data, numbins: int, range: Optional[Tuple[float, float]] = None,
                 onebinstart: float = np.nan) -> np.ndarray:
    """Edges of ``numbins`` equal-width bins.

    Parameters
    ----------
    data : DataBuffer or array-like
        Used for the range when ``range`` is not given.
    numbins : int
        Number of bins (positive).
    range : (float, float), optional
        Inclusive lower and upper limits.
    onebinstart : float
        If not NaN, all edges are shifted down so one bin starts exactly at
        this value; one extra bin is appended so the upper limit stays
        covered.

    Returns
    -------
    np.ndarray
        ``numbins + 1`` (or ``numbins + 2`` after a shift) increasing edges.
    """
    if numbins < 1:
        raise ParameterRangeError(f"Number of bins must be positive, got {numbins}")

    if range is None:
        values = _clean(data)
        if values.size == 0:
            raise MisconfigurationError("Cannot build bins over an empty data set")
        low, high = float(values.min()), float(values.max())
    else:
        low, high = float(range[0]), float(range[1])
    if high < low:
        raise ParameterRangeError(f"Bin range is inverted: ({low}, {high})")
    if high == low:
        high = low + 1.0

    edges = np.linspace(low, high, numbins + 1)
    if onebinstart == onebinstart:
        width = edges[1] - edges[0]
        delta = (onebinstart - low) % width
        if delta:
            edges = np.append(edges + delta - width, high + delta)
    return edges


def bin_centers(edges: np.ndarray) -> np.ndarray:
    edges = np.asarray(edges)
    return (edges[:-1] + edges[1:]) / 2


def histogram(data, edges: np.ndarray, normalize: bool = False,
              maxhistone: bool = False) -> np.ndarray:
    """Count the non-blank elements per bin.

    Bins are half-open except the last, which includes its upper edge.
    ``normalize`` makes the counts sum to 1; ``maxhistone`` scales the
    largest bin to 1. The two are mutually exclusive.
    """
    if normalize and maxhistone:
        raise MisconfigurationError("normalize and maxhistone cannot be used together")
    counts, _ = np.histogram(_clean(data), bins=np.asarray(edges, dtype=np.float64))
    counts = counts.astype(np.float64)
    if normalize and counts.sum():
        counts /= counts.sum()
    elif maxhistone and counts.max(initial=0):
        counts /= counts.max()
    return counts


def cfp(data, edges: np.ndarray, normalize: bool = False) -> np.ndarray:
    """Cumulative frequency at the upper edge of every bin.

    With ``normalize`` the values are fractions of the number of elements
    inside the bins, so the last one is 1.
    """
    cumulative = np.cumsum(histogram(data, edges))
    if normalize and cumulative.size and cumulative[-1]:
        cumulative /= cumulative[-1]
    return cumulative
