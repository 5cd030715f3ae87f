"""Upper-limit magnitude of a label by random placement of its footprint.

The footprint of a label is dropped at ``upnum`` random positions that avoid
detections and blank pixels. The sigma-clipped standard deviation of the sums
over those placements, times ``upnsigma``, is the faintest flux the label
could have had and still been measured at that significance.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from astromesh.catalog.columns import magnitude
from astromesh.errors import ClipConvergenceError
from astromesh.statistics import quantile_function, sigma_clip

__all__ = ['UpperLimit', 'upper_limit', 'MAX_ATTEMPT_FACTOR']

logger = logging.getLogger(__name__)

# Give up after this many attempts per requested placement.
MAX_ATTEMPT_FACTOR = 50


@dataclass
class UpperLimit:
    flux: float
    magnitude: float
    one_sigma: float
    quantile: float
    skew: float
    num_used: int

    @classmethod
    def blank(cls) -> "UpperLimit":
        return cls(np.nan, np.nan, np.nan, np.nan, np.nan, 0)


def upper_limit(offsets: np.ndarray, label_sum: float, values: np.ndarray,
                forbidden: np.ndarray, rng: np.random.Generator, upnum: int,
                upnsigma: float = 1.0, zeropoint: float = 0.0,
                anchor: Optional[Sequence[int]] = None,
                up_range: Optional[Sequence[int]] = None,
                multip: float = 3.0, param: float = 0.1,
                scratch: Optional[np.ndarray] = None) -> UpperLimit:
    """Random-placement upper limit of one label.

    Parameters
    ----------
    offsets : np.ndarray
        ``(npix, ndim)`` pixel offsets of the footprint from its bounding-box
        corner.
    label_sum : float
        Sum over the label itself, used for the quantile column.
    values : np.ndarray
        Sky-subtracted image.
    forbidden : np.ndarray of bool
        Pixels a placement may not touch (detections and blanks).
    rng : np.random.Generator
        Source of the placements.
    upnum : int
        Number of successful placements wanted.
    anchor, up_range : sequence of int, optional
        When both are given, placements are limited to a box of ``up_range``
        pixels centred on ``anchor``.
    scratch : np.ndarray, optional
        Pre-allocated float64 buffer of at least ``upnum`` elements.

    Returns
    -------
    UpperLimit
        Blank when no placement succeeded.
    """
    if upnum <= 0 or offsets.size == 0:
        return UpperLimit.blank()

    shape = np.asarray(values.shape)
    extent = offsets.max(axis=0) + 1
    low = np.zeros(len(shape), dtype=np.int64)
    high = shape - extent
    if anchor is not None and up_range is not None:
        half = np.asarray(up_range) // 2
        low = np.maximum(low, np.asarray(anchor) - half - extent // 2)
        high = np.minimum(high, np.asarray(anchor) + half - extent // 2)
    if np.any(high < low):
        logger.debug("Footprint of extent %s does not fit the placement area", tuple(extent))
        return UpperLimit.blank()

    sums = scratch[:upnum] if scratch is not None and scratch.size >= upnum else np.empty(upnum)
    found = 0
    for _ in range(upnum * MAX_ATTEMPT_FACTOR):
        corner = rng.integers(low, high + 1)
        coords = tuple((offsets + corner).T)
        if forbidden[coords].any():
            continue
        sums[found] = float(np.sum(values[coords]))
        found += 1
        if found == upnum:
            break

    if found == 0:
        return UpperLimit.blank()
    if found < upnum:
        logger.debug("Upper limit used %d of %d placements", found, upnum)

    used = np.array(sums[:found])
    position = quantile_function(used, label_sum)
    if np.isinf(position):
        position = 1.0 if position > 0 else 0.0
    try:
        clipped = sigma_clip(used, multip=multip, param=param)
    except ClipConvergenceError as e:
        clipped = e.last_result
    one_sigma = clipped.std
    flux = upnsigma * one_sigma
    with np.errstate(divide="ignore", invalid="ignore"):
        skew = (clipped.mean - clipped.median) / clipped.std if clipped.std > 0 else np.nan
    return UpperLimit(
        flux=float(flux),
        magnitude=float(magnitude(flux, zeropoint)),
        one_sigma=float(one_sigma),
        quantile=float(position),
        skew=float(skew),
        num_used=int(found),
    )
