"""Sky and sky-standard-deviation estimation through the mesh engine."""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from astromesh.data import DataBuffer
from astromesh.mesh import MeshEngine, MeshPlane, clipped_mean_std

__all__ = ['SkyEstimate', 'estimate_sky']

logger = logging.getLogger(__name__)


@dataclass
class SkyEstimate:
    """Sky and std planes (per tile) and their image-resolution versions."""
    sky: MeshPlane
    std: MeshPlane
    sky_image: DataBuffer
    std_image: DataBuffer

    @property
    def is_zero_noise(self) -> bool:
        """True when every measured std is exactly zero."""
        finite = self.std.values[np.isfinite(self.std.values)]
        return finite.size > 0 and not np.any(finite)

    def std_summary(self) -> dict:
        """Minimum, maximum and median of the std plane (MINSTD, MAXSTD, MEDSTD)."""
        finite = self.std.values[np.isfinite(self.std.values)]
        if finite.size == 0:
            return {"MINSTD": np.nan, "MAXSTD": np.nan, "MEDSTD": np.nan}
        return {"MINSTD": float(finite.min()), "MAXSTD": float(finite.max()),
                "MEDSTD": float(np.median(finite))}

    def free(self) -> None:
        self.sky_image.free()
        self.std_image.free()


def estimate_sky(engine: MeshEngine, image, mask=None, multip: float = 3.0,
                 param: float = 0.1, mean_q_diff: float = 0.05, num_ngb: int = 9,
                 smooth_width: int = 3, bilinear: bool = False,
                 signal_filter: bool = True, respect_blank: bool = True,
                 name: str = "SKY") -> SkyEstimate:
    """Sigma-clipped sky and std of every tile, filled and smoothed.

    Parameters
    ----------
    engine : MeshEngine
        Engine bound to the image's tessellation.
    image : DataBuffer
        Input (or convolved) image.
    mask : array-like of bool, optional
        Pixels to ignore (e.g. detections).
    multip, param : float
        Sigma-clipping multiple and tolerance.
    mean_q_diff : float
        Signal-in-tile tolerance; only used with ``signal_filter``.
    num_ngb, smooth_width : int
        Interpolation neighbours and smoothing box width.
    bilinear : bool
        Interpolate between tile centres when writing the image planes.
    """
    sky, std = engine.reduce_multi(image, clipped_mean_std(multip, param),
                                   [name, f"{name}_STD"], mask=mask)
    if signal_filter:
        engine.signal_filter([sky, std], image, mask=mask, mean_q_diff=mean_q_diff,
                             multip=multip, param=param)
    if not sky.valid.any():
        logger.warning("%s: no tile passed the filters; the plane is blank", name)

    sky = engine.fill(sky, num_ngb, smooth_width)
    std = engine.fill(std, num_ngb, smooth_width)
    sky_image = engine.upsample(sky, input=image, bilinear=bilinear, respect_blank=respect_blank)
    std_image = engine.upsample(std, input=image, bilinear=bilinear, respect_blank=respect_blank)
    logger.debug("%s: %d/%d tiles valid, median sky %.4g, median std %.4g", name,
                 sky.num_valid, sky.values.size, np.nanmedian(sky.values) if sky.valid.any() else np.nan,
                 np.nanmedian(std.values) if std.valid.any() else np.nan)
    return SkyEstimate(sky, std, sky_image, std_image)
