"""World coordinate system handle.

The core never looks inside a WCS; it only carries the handle from the input
image to the products and asks it for sky positions when cataloguing.
"""

import copy as _copy
import logging
from typing import Optional, Tuple

import numpy as np
from astropy.io import fits
from astropy.wcs import WCS
from astropy.wcs.utils import proj_plane_pixel_area

__all__ = ['WCSHandle']

logger = logging.getLogger(__name__)


class WCSHandle:
    """Thin wrapper around :class:`astropy.wcs.WCS` working in 0-based pixels.

    Pixel coordinates follow numpy's convention for the last two axes:
    ``x`` is the column and ``y`` the row.
    """

    def __init__(self, wcs: WCS):
        self._wcs = wcs

    @classmethod
    def from_header(cls, header: fits.Header) -> Optional["WCSHandle"]:
        """Handle for ``header``, or None when it carries no celestial WCS."""
        if "CTYPE1" not in header:
            return None
        wcs = WCS(header)
        if not wcs.has_celestial:
            logger.debug("Header has a WCS without celestial axes; ignored")
            return None
        return cls(wcs.celestial)

    @property
    def wcs(self) -> WCS:
        return self._wcs

    def pixel_to_world(self, x, y) -> Tuple[np.ndarray, np.ndarray]:
        """``(ra, dec)`` in degrees of 0-based pixel positions."""
        ra, dec = self._wcs.wcs_pix2world(np.asarray(x, dtype=np.float64),
                                          np.asarray(y, dtype=np.float64), 0)
        return ra, dec

    def world_to_pixel(self, ra, dec) -> Tuple[np.ndarray, np.ndarray]:
        x, y = self._wcs.wcs_world2pix(np.asarray(ra, dtype=np.float64),
                                       np.asarray(dec, dtype=np.float64), 0)
        return x, y

    def pixel_area(self) -> float:
        """Area of one pixel in square arcseconds."""
        return float(proj_plane_pixel_area(self._wcs) * 3600.0 ** 2)

    def to_header(self) -> fits.Header:
        return self._wcs.to_header()

    def copy(self) -> "WCSHandle":
        return WCSHandle(_copy.deepcopy(self._wcs))
