"""Decide whether a tile is dominated by noise.

Signal skews a distribution: its mean moves above the median. A tile is
accepted as signal-free when the quantile of its sigma-clipped mean stays
within ``mean_q_diff`` of 0.5.
"""

import logging

import numpy as np

from astromesh.errors import ClipConvergenceError, ParameterRangeError
from astromesh.statistics.basic import quantile_function
from astromesh.statistics.clip import sigma_clip

__all__ = ['signal_in_tile', 'clipped_mean_quantile']

logger = logging.getLogger(__name__)


def clipped_mean_quantile(data, multip: float = 3.0, param: float = 0.1) -> float:
    """Quantile of the sigma-clipped mean within the unclipped data."""
    try:
        result = sigma_clip(data, multip=multip, param=param)
    except ClipConvergenceError as e:
        logger.debug("Tile clipping did not converge; using last iteration")
        result = e.last_result
    if result is None or result.number_used == 0:
        return np.nan
    return quantile_function(data, result.mean)


def signal_in_tile(data, mean_q_diff: float = 0.05, multip: float = 3.0,
                   param: float = 0.1) -> bool:
    """True when the tile looks like noise (usable for sky estimation).

    Parameters
    ----------
    data : DataBuffer or array-like
        Pixels of the tile.
    mean_q_diff : float
        Largest accepted distance between the quantile of the clipped mean
        and 0.5.
    multip, param : float
        Sigma-clipping multiple and tolerance/iterations.
    """
    if not 0 <= mean_q_diff <= 0.5:
        raise ParameterRangeError(f"mean_q_diff must be in [0, 0.5], got {mean_q_diff}")
    q = clipped_mean_quantile(data, multip, param)
    if not np.isfinite(q):
        return False
    return abs(q - 0.5) <= mean_q_diff
