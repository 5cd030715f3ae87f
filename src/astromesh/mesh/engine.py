"""Per-tile estimation of spatially varying quantities (sky, noise, thresholds).

A value is first measured on every tile (:meth:`MeshEngine.reduce`), tiles
that contain signal are rejected (:meth:`MeshEngine.signal_filter`), the holes
are filled from the nearest valid tiles (:meth:`MeshEngine.interpolate`), the
plane is smoothed (:meth:`MeshEngine.smooth`) and finally written back to
image resolution (:meth:`MeshEngine.upsample`). Every stage is one parallel
section of the worker pool over the tile range.
"""

import logging
import sys
import threading
from collections import deque
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from astromesh.data import DataBuffer, as_buffer
from astromesh.errors import ClipConvergenceError, ParameterRangeError, ShapeMismatchError
from astromesh.statistics import quantile, sigma_clip, signal_in_tile
from astromesh.tile import Tessellation
from astromesh.workers import spin_off

__all__ = [
    'MeshPlane',
    'MeshEngine',
    'clipped_mean_std',
    'clipped_mean',
    'clipped_std',
    'quantile_of',
]

logger = logging.getLogger(__name__)


@dataclass
class MeshPlane:
    """One value per tile, in tile order.

    ``valid`` marks tiles whose value was measured and passed the filters.
    Interpolation fills ``values`` of invalid tiles but leaves ``valid``
    untouched, so stages can always tell measured tiles from filled ones.
    """
    values: np.ndarray
    valid: np.ndarray
    name: str = ""
    meta: dict = field(default_factory=dict)

    @property
    def num_valid(self) -> int:
        return int(np.count_nonzero(self.valid))

    @property
    def is_blank(self) -> np.ndarray:
        return ~np.isfinite(self.values)

    def copy(self, name: Optional[str] = None) -> "MeshPlane":
        return MeshPlane(self.values.copy(), self.valid.copy(), name or self.name, dict(self.meta))


# ----------------------------------------------------------------------
# Stock reducers
# ----------------------------------------------------------------------
def _clip(values, multip, param):
    try:
        return sigma_clip(values, multip=multip, param=param)
    except ClipConvergenceError as e:
        return e.last_result


def clipped_mean_std(multip: float = 3.0, param: float = 0.1) -> Callable:
    """Reducer returning the sigma-clipped ``(mean, std)`` of a tile."""
    def reduce_fn(values):
        result = _clip(values, multip, param)
        return result.mean, result.std
    return reduce_fn


def clipped_mean(multip: float = 3.0, param: float = 0.1) -> Callable:
    def reduce_fn(values):
        return _clip(values, multip, param).mean
    return reduce_fn


def clipped_std(multip: float = 3.0, param: float = 0.1) -> Callable:
    def reduce_fn(values):
        return _clip(values, multip, param).std
    return reduce_fn


def quantile_of(q: float) -> Callable:
    if not 0 <= q <= 1:
        raise ParameterRangeError(f"Quantile must be in [0, 1], got {q}")

    def reduce_fn(values):
        return quantile(values, q)
    return reduce_fn


# ----------------------------------------------------------------------
# Parallel tasks
# ----------------------------------------------------------------------
def _reduce_task(tprm):
    ctx = tprm.ctx
    for tile in tprm.jobs():
        if tprm.cancelled():
            break
        s = ctx.slices[tile]
        usable = ~ctx.exclude[s]
        count = int(np.count_nonzero(usable))
        if count == 0 or count / usable.size < ctx.min_tile_frac:
            continue
        result = np.atleast_1d(np.asarray(ctx.reduce_fn(ctx.image[s][usable]), dtype=np.float64))
        ctx.values[:, tile] = result
        ctx.valid[tile] = bool(np.all(np.isfinite(result)))
    tprm.wait()


def _signal_task(tprm):
    ctx = tprm.ctx
    for tile in tprm.jobs():
        if tprm.cancelled():
            break
        if not ctx.valid[tile]:
            continue
        s = ctx.slices[tile]
        pixels = ctx.image[s][~ctx.exclude[s]]
        ctx.keep[tile] = signal_in_tile(pixels, ctx.mean_q_diff, ctx.multip, ctx.param)
    tprm.wait()


def _interpolate_task(tprm):
    ctx = tprm.ctx
    for job in tprm.jobs():
        if tprm.cancelled():
            break
        tile = ctx.targets[job]
        found = []
        seen = {tile}
        queue = deque([tile])
        while queue and len(found) < ctx.num_ngb:
            current = queue.popleft()
            for other in ctx.neighbours[current]:
                if other in seen:
                    continue
                seen.add(other)
                if ctx.valid[other]:
                    found.append(ctx.values[other])
                    if len(found) == ctx.num_ngb:
                        break
                queue.append(other)
        ctx.out[tile] = np.median(found) if found else np.nan
    tprm.wait()


def _smooth_task(tprm):
    ctx = tprm.ctx
    half = ctx.width // 2
    for tile in tprm.jobs():
        if tprm.cancelled():
            break
        if not np.isfinite(ctx.plane[tile]):
            continue
        here = ctx.grid_coords[tile]
        bounds = ctx.bounds[ctx.channel_of[tile]]
        window = tuple(slice(max(int(here[d]) - half, bounds[d].start),
                             min(int(here[d]) + half + 1, bounds[d].stop))
                       for d in range(len(here)))
        values = ctx.grid[window]
        ctx.out[tile] = np.nanmean(values)
    tprm.wait()


class MeshEngine:
    """Run the tile-plane stages on one tessellation.

    Parameters
    ----------
    tessellation : Tessellation
        Channels and tiles of the image.
    num_threads : int
        Workers per stage (0 means one per CPU).
    min_tile_frac : float
        Minimum fraction of usable (non-blank, unmasked) pixels for a tile to
        be measured.
    minmapsize, quietmmap : optional
        Memory policy for the pool's index buffers and the upsampled
        images; omitted, the images follow the input they are built on.
    cancel_event : threading.Event, optional
        Checked by the tasks between tiles.
    """

    def __init__(self, tessellation: Tessellation, num_threads: int = 1,
                 min_tile_frac: float = 0.5, minmapsize: Optional[int] = None,
                 quietmmap: Optional[bool] = None, cancel_event: Optional[threading.Event] = None):
        if not 0 <= min_tile_frac <= 1:
            raise ParameterRangeError(f"min_tile_frac must be in [0, 1], got {min_tile_frac}")
        self.tess = tessellation
        self.num_threads = num_threads
        self.min_tile_frac = min_tile_frac
        self.minmapsize = minmapsize
        self.quietmmap = quietmmap
        self.cancel_event = cancel_event
        self._neighbours = None

    def _spin(self, task, ctx, num_jobs):
        minmapsize = sys.maxsize if self.minmapsize is None else self.minmapsize
        quietmmap = True if self.quietmmap is None else self.quietmmap
        spin_off(task, ctx, num_jobs, self.num_threads, minmapsize, quietmmap,
                 cancel_event=self.cancel_event)

    def _exclusion(self, image: DataBuffer, mask) -> np.ndarray:
        exclude = image.blank_mask()
        if mask is not None:
            mask = np.asarray(mask, dtype=bool)
            if mask.shape != image.shape:
                raise ShapeMismatchError(f"Mask shape {mask.shape} does not match image {image.shape}")
            exclude = exclude | mask
        return exclude

    def _check_image(self, image) -> DataBuffer:
        image = as_buffer(image)
        if image.shape != self.tess.image_shape:
            raise ShapeMismatchError(
                f"Image shape {image.shape} does not match tessellation {self.tess.image_shape}"
            )
        return image

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def reduce_multi(self, image, reduce_fn: Callable, names: Sequence[str],
                     mask=None) -> List[MeshPlane]:
        """Measure several values per tile with one reducer call.

        ``reduce_fn`` receives the usable pixels of a tile as a 1-D array and
        returns ``len(names)`` numbers. A tile whose usable fraction is below
        ``min_tile_frac`` (or whose result is not finite) is invalid.
        """
        image = self._check_image(image)
        count = len(names)
        ctx = SimpleNamespace(
            image=np.asarray(image.array),
            exclude=self._exclusion(image, mask),
            slices=self.tess.slices,
            reduce_fn=reduce_fn,
            min_tile_frac=self.min_tile_frac,
            values=np.full((count, self.tess.num_tiles), np.nan),
            valid=np.zeros(self.tess.num_tiles, dtype=bool),
        )
        self._spin(_reduce_task, ctx, self.tess.num_tiles)

        planes = []
        for i, name in enumerate(names):
            values = ctx.values[i]
            values[~ctx.valid] = np.nan
            planes.append(MeshPlane(values, ctx.valid.copy(), name))
        logger.debug("Reduced %s: %d of %d tiles valid", ", ".join(names),
                     int(ctx.valid.sum()), self.tess.num_tiles)
        return planes

    def reduce(self, image, reduce_fn: Callable, mask=None, name: str = "") -> MeshPlane:
        """One scalar per tile; see :meth:`reduce_multi`."""
        return self.reduce_multi(image, reduce_fn, [name], mask=mask)[0]

    def signal_filter(self, planes: Union[MeshPlane, Sequence[MeshPlane]], image, mask=None,
                      mean_q_diff: float = 0.05, multip: float = 3.0,
                      param: float = 0.1) -> int:
        """Clear the valid flag of tiles that fail the signal-in-tile test.

        Values are kept for diagnostics. All ``planes`` (measured on the same
        tiles) are updated together. Returns the number of rejected tiles.
        """
        if isinstance(planes, MeshPlane):
            planes = [planes]
        image = self._check_image(image)
        valid = np.logical_and.reduce([p.valid for p in planes])
        ctx = SimpleNamespace(
            image=np.asarray(image.array),
            exclude=self._exclusion(image, mask),
            slices=self.tess.slices,
            valid=valid,
            keep=np.zeros(self.tess.num_tiles, dtype=bool),
            mean_q_diff=mean_q_diff, multip=multip, param=param,
        )
        self._spin(_signal_task, ctx, self.tess.num_tiles)

        rejected = int(np.count_nonzero(valid & ~ctx.keep))
        for plane in planes:
            plane.meta.setdefault("measured", plane.values.copy())
            plane.valid &= ctx.keep
        logger.debug("Signal filter rejected %d of %d tiles", rejected, int(valid.sum()))
        return rejected

    def neighbours(self) -> List[List[int]]:
        """8-connected neighbour lists of every tile (cached)."""
        if self._neighbours is None:
            self._neighbours = [self.tess.tile_neighbours(t, include_diag=True)
                                for t in range(self.tess.num_tiles)]
        return self._neighbours

    def interpolate(self, plane: MeshPlane, num_ngb: int = 9) -> MeshPlane:
        """Fill invalid tiles with the median of the nearest valid ones.

        Nearest means first found by an 8-connected breadth-first expansion
        over the tile grid, restricted to the tile's channel unless the
        tessellation works over channels. Only valid tiles are read, so
        interpolating twice with the same valid mask gives the same plane.
        Tiles with no valid tile in reach stay blank.
        """
        if num_ngb < 1:
            raise ParameterRangeError(f"Number of interpolation neighbours must be positive, got {num_ngb}")
        out = plane.copy()
        out.values[~plane.valid] = np.nan
        targets = np.nonzero(~plane.valid)[0]
        if targets.size == 0 or not plane.valid.any():
            return out

        ctx = SimpleNamespace(
            targets=targets,
            neighbours=self.neighbours(),
            valid=plane.valid,
            values=plane.values,
            num_ngb=num_ngb,
            out=out.values,
        )
        self._spin(_interpolate_task, ctx, targets.size)
        logger.debug("Interpolated %d tiles of %s", targets.size, plane.name)
        return out

    def smooth(self, plane: MeshPlane, width: int = 3) -> MeshPlane:
        """Flat ``width``-wide box average of the plane; blank tiles ignored."""
        if width < 1 or width % 2 == 0:
            raise ParameterRangeError(f"Smoothing width must be a positive odd number, got {width}")
        out = plane.copy()
        if width == 1:
            return out

        tess = self.tess
        if tess.work_over_channels:
            full = tuple(slice(0, g) for g in tess.grid_shape)
            bounds = [full] * tess.total_channels
        else:
            bounds = [tess.channel_grid_slices(c) for c in range(tess.total_channels)]

        ctx = SimpleNamespace(
            plane=plane.values,
            grid=tess.plane_to_grid(plane.values),
            grid_coords=tess.grid_coords,
            channel_of=tess.channel_of,
            bounds=bounds,
            width=width,
            out=out.values,
        )
        self._spin(_smooth_task, ctx, tess.num_tiles)
        return out

    def upsample(self, plane: MeshPlane, input=None, bilinear: bool = False,
                 respect_blank: bool = False, dtype=np.float32) -> DataBuffer:
        """Image-resolution buffer of the plane's values."""
        out = self.tess.full_values_write(plane.values, respect_blank=respect_blank,
                                          input=input, bilinear=bilinear, dtype=dtype,
                                          minmapsize=self.minmapsize,
                                          quietmmap=self.quietmmap)
        out.name = plane.name or None
        return out

    def fill(self, plane: MeshPlane, num_ngb: int = 9, smooth_width: int = 3) -> MeshPlane:
        """Interpolate then smooth."""
        return self.smooth(self.interpolate(plane, num_ngb), smooth_width)
