"""Iterative outlier rejection (sigma clipping and MAD clipping).

Both clippers work on the sorted non-blank values: every iteration the
kept set is a contiguous run of the sorted array, so clipping narrows two
indices instead of copying data.

``param`` has two meanings. Below 1 it is a tolerance: iteration stops when
the relative change of the spread (std or MAD) between two iterations falls
below it and the kept set no longer shrinks, which makes clipping the kept
values again a no-op. At or above 1 it is the number of clipping iterations to run.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from astromesh.errors import ClipConvergenceError, ParameterRangeError
from astromesh.statistics.basic import _mean_std, no_blank_sorted

__all__ = [
    'CLIP_OPTIONAL_MEAN',
    'CLIP_OPTIONAL_STD',
    'CLIP_OPTIONAL_MAD',
    'CLIP_OPTIONAL_ALL',
    'CLIP_MAX_CONVERGE',
    'ClipResult',
    'sigma_clip',
    'mad_clip',
]

logger = logging.getLogger(__name__)

CLIP_OPTIONAL_MEAN = 0x1
CLIP_OPTIONAL_STD = 0x2
CLIP_OPTIONAL_MAD = 0x4
CLIP_OPTIONAL_ALL = CLIP_OPTIONAL_MEAN | CLIP_OPTIONAL_STD | CLIP_OPTIONAL_MAD

# Iteration cap in tolerance mode.
CLIP_MAX_CONVERGE = 50


@dataclass
class ClipResult:
    """Outcome of a clipping run.

    Statistics not requested (see the ``CLIP_OPTIONAL_*`` flags) are NaN.
    ``values`` holds the kept elements (sorted) when ``keep_values`` was set.
    """
    number_used: int
    mean: float
    std: float
    median: float
    mad: float
    number_clips: int
    values: Optional[np.ndarray] = None

    def as_row(self) -> np.ndarray:
        """The six statistics as a float64 row, in field order."""
        return np.array([self.number_used, self.mean, self.std, self.median,
                         self.mad, self.number_clips], dtype=np.float64)


def _median_mad(values: np.ndarray):
    # ``values`` is sorted.
    med = float(np.median(values))
    return med, float(np.median(np.abs(values - med)))


def _run(data, multip: float, param: float, extrastats: int, inplace: bool,
         quiet: bool, keep_values: bool, by_mad: bool) -> ClipResult:
    kind = "MAD" if by_mad else "sigma"
    if multip <= 0:
        raise ParameterRangeError(f"{kind}-clipping multiple must be positive, got {multip}")
    if param <= 0:
        raise ParameterRangeError(f"{kind}-clipping parameter must be positive, got {param}")

    ordered = np.asarray(no_blank_sorted(data, inplace=inplace).array, dtype=np.float64)
    if ordered.size == 0:
        return ClipResult(0, np.nan, np.nan, np.nan, np.nan, 0,
                          ordered if keep_values else None)

    converge = param < 1
    iterations = int(param)
    lo, hi = 0, ordered.size
    previous = None
    clips = 0

    while True:
        kept = ordered[lo:hi]
        if by_mad:
            center, spread = _median_mad(kept)
        else:
            center, spread = _mean_std(kept)

        if not quiet:
            logger.debug("%s-clip iteration %d: n=%d, center=%g, spread=%g",
                         kind, clips, kept.size, center, spread)

        new_lo = max(lo, int(np.searchsorted(ordered, center - multip * spread, side="left")))
        new_hi = min(hi, int(np.searchsorted(ordered, center + multip * spread, side="right")))

        if converge:
            # Stop only once the kept set also survives its own bounds, so
            # clipping the result again keeps every element.
            settled = previous is not None and (previous == 0
                                                or abs(spread - previous) / previous < param)
            if settled and (new_lo, new_hi) == (lo, hi):
                break
            if clips >= CLIP_MAX_CONVERGE:
                last = _finish(kept, center, spread, clips, extrastats, keep_values, by_mad)
                raise ClipConvergenceError(
                    f"{kind}-clipping did not converge within {CLIP_MAX_CONVERGE} iterations",
                    last_result=last,
                )
        elif clips >= iterations:
            break

        lo, hi = new_lo, new_hi
        clips += 1
        previous = spread
        if hi <= lo:
            logger.warning("%s-clipping rejected every element", kind)
            return ClipResult(0, np.nan, np.nan, np.nan, np.nan, clips,
                              ordered[:0] if keep_values else None)

    return _finish(ordered[lo:hi], center, spread, clips, extrastats, keep_values, by_mad)


def _finish(kept, center, spread, clips, extrastats, keep_values, by_mad) -> ClipResult:
    if by_mad:
        median, mad = center, spread
        mean = std = np.nan
        if extrastats & (CLIP_OPTIONAL_MEAN | CLIP_OPTIONAL_STD):
            m, s = _mean_std(kept)
            mean = m if extrastats & CLIP_OPTIONAL_MEAN else np.nan
            std = s if extrastats & CLIP_OPTIONAL_STD else np.nan
    else:
        mean, std = center, spread
        median = float(np.median(kept))
        mad = np.nan
        if extrastats & CLIP_OPTIONAL_MAD:
            mad = float(np.median(np.abs(kept - median)))
    return ClipResult(int(kept.size), mean, std, median, mad, clips,
                      kept.copy() if keep_values else None)


def sigma_clip(data, multip: float = 3.0, param: float = 0.1, extrastats: int = 0,
               inplace: bool = False, quiet: bool = True,
               keep_values: bool = False) -> ClipResult:
    """Mean-centred sigma clipping.

    Each iteration computes the mean and standard deviation of the kept
    values and rejects those with ``|x - mean| > multip * std``.

    Parameters
    ----------
    data : DataBuffer or array-like
        Input values; blanks are ignored.
    multip : float
        Clipping multiple of the standard deviation.
    param : float
        Tolerance (< 1) or fixed number of iterations (>= 1).
    extrastats : int
        ``CLIP_OPTIONAL_MAD`` adds the MAD of the final set. Mean, std and
        median are always reported.
    inplace : bool
        Sort the input buffer itself instead of a copy.
    keep_values : bool
        Attach the kept (sorted) values to the result.

    Returns
    -------
    ClipResult

    Raises
    ------
    ParameterRangeError
        If ``multip`` or ``param`` is not positive.
    ClipConvergenceError
        If tolerance mode needs more than ``CLIP_MAX_CONVERGE`` iterations;
        the last result is attached to the exception.
    """
    return _run(data, multip, param, extrastats, inplace, quiet, keep_values, by_mad=False)


def mad_clip(data, multip: float = 3.0, param: float = 0.1, extrastats: int = 0,
             inplace: bool = False, quiet: bool = True,
             keep_values: bool = False) -> ClipResult:
    """Median-centred clipping using the (unscaled) median absolute deviation.

    Median and MAD are always reported; ``CLIP_OPTIONAL_MEAN`` and
    ``CLIP_OPTIONAL_STD`` add the mean and std of the final set. Other
    arguments as in :func:`sigma_clip`.
    """
    return _run(data, multip, param, extrastats, inplace, quiet, keep_values, by_mad=True)
