"""Per-label measurements of objects and clumps.

Every object is one job of the worker pool. A job measures the object and
all of its clumps in two passes:

- Pass 1: areas, sums, sum of variances, first and second moments (both
  geometric and flux-weighted), extrema and, for clumps, the river pixels
  around them.
- Pass 2: order statistics, sigma-clipped statistics, concentration,
  half-maximum and half-sum areas, fraction-of-maximum areas and the
  random-placement upper limit.

Clump rows are reserved through a shared :class:`RowCounter`, so the clump
table is filled in whatever order the workers finish and is put back into
clump-id order afterwards. Objects without usable pixels keep a blank row
(``area == 0``, everything else NaN).
"""

import logging
import threading
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import ndimage

from astromesh.catalog.columns import finalize
from astromesh.catalog.upperlimit import UpperLimit, upper_limit
from astromesh.detection.labels import full_footprint
from astromesh.errors import ClipConvergenceError, ShapeMismatchError
from astromesh.statistics import concentration, sigma_clip
from astromesh.workers import spin_off

if TYPE_CHECKING:
    from astromesh.io.wcs import WCSHandle
    from astromesh.schemas import InternalConfig

__all__ = ['CatalogBuilder', 'Catalog', 'RowCounter', 'first_pass', 'second_pass']

logger = logging.getLogger(__name__)


class RowCounter:
    """Hands out consecutive table rows to concurrent workers."""

    def __init__(self):
        self._next = 0
        self._lock = threading.Lock()

    def reserve(self, count: int) -> int:
        """First of ``count`` rows now owned by the caller."""
        with self._lock:
            start = self._next
            self._next += count
            return start

    @property
    def used(self) -> int:
        with self._lock:
            return self._next


@dataclass
class Catalog:
    objects: pd.DataFrame
    clumps: Optional[pd.DataFrame] = None
    meta: Dict[str, float] = field(default_factory=dict)


def _axis_names(ndim: int) -> Tuple[str, ...]:
    return ("z", "y", "x")[-ndim:] if ndim <= 3 else tuple(f"a{d}" for d in range(ndim))


def first_pass(values: np.ndarray, std: np.ndarray, coords: np.ndarray,
               num_blank: int = 0) -> Optional[dict]:
    """Area, sums, moments and extrema of one label.

    Parameters
    ----------
    values, std : np.ndarray
        Sky-subtracted values and sky std of the label's non-blank pixels.
    coords : np.ndarray
        ``(npix, ndim)`` image coordinates of the same pixels.
    num_blank : int
        Blank pixels inside the label.

    Returns
    -------
    dict or None
        None when the label has no usable pixel.
    """
    n = values.size
    if n == 0:
        return None
    ndim = coords.shape[1]
    names = _axis_names(ndim)
    row = {
        "area": n,
        "area_with_blank": n + num_blank,
        "sum": float(np.sum(values)),
        "sum_var": float(np.sum(std ** 2)),
        "sum_sq": float(np.sum(values ** 2)),
        "min_value": float(values.min()),
        "max_value": float(values.max()),
    }
    peak = coords[int(np.argmax(values))]

    geo = coords.mean(axis=0)
    positive = values > 0
    weights = values[positive]
    if weights.size and weights.sum() > 0:
        weighted = (coords[positive] * weights[:, None]).sum(axis=0) / weights.sum()
    else:
        weighted, weights, positive = geo, np.ones(n), np.ones(n, dtype=bool)

    for d, name in enumerate(names):
        row[name] = float(weighted[d])
        row[f"geo_{name}"] = float(geo[d])
        row[f"max_{name}"] = int(peak[d])

    if ndim >= 2:
        dy, dx = coords[:, -2] - geo[-2], coords[:, -1] - geo[-1]
        row["geo_xx"], row["geo_yy"], row["geo_xy"] = (
            float(np.mean(dx * dx)), float(np.mean(dy * dy)), float(np.mean(dx * dy)))
        wy = coords[positive, -2] - weighted[-2]
        wx = coords[positive, -1] - weighted[-1]
        total = weights.sum()
        row["xx"] = float(np.sum(weights * wx * wx) / total)
        row["yy"] = float(np.sum(weights * wy * wy) / total)
        row["xy"] = float(np.sum(weights * wx * wy) / total)
    if ndim == 3:
        depth = int(coords[:, 0].max()) + 1
        row["slice_sum"] = np.bincount(coords[:, 0], weights=values, minlength=depth).tolist()
        row["slice_area"] = np.bincount(coords[:, 0], minlength=depth).tolist()
    return row


def second_pass(values: np.ndarray, row: dict, frac_max, sky_std: float,
                multip: float = 3.0, param: float = 0.1, river_mean: float = 0.0) -> dict:
    """Order statistics and flux-profile areas of one label (in place)."""
    row["median"] = float(np.median(values)) - river_mean
    row["mad"] = float(np.median(np.abs(values - np.median(values))))
    try:
        clipped = sigma_clip(values, multip=multip, param=param)
    except ClipConvergenceError as e:
        clipped = e.last_result
    row["sigclip_number"] = clipped.number_used
    row["sigclip_mean"] = clipped.mean
    row["sigclip_std"] = clipped.std
    row["sigclip_median"] = clipped.median
    row["concentration"] = (concentration(values, 2 * sky_std)
                            if np.isfinite(sky_std) and sky_std > 0 else np.nan)

    peak = float(values.max())
    half = values >= peak / 2
    row["half_max_area"] = int(np.count_nonzero(half))
    row["half_max_sum"] = float(np.sum(values[half]))

    total = float(np.sum(values))
    if total > 0:
        cumulative = np.cumsum(np.sort(values)[::-1])
        row["half_sum_area"] = int(np.searchsorted(cumulative, total / 2) + 1)
    else:
        row["half_sum_area"] = np.nan
    for i, frac in enumerate(frac_max, start=1):
        row[f"frac_max{i}_area"] = int(np.count_nonzero(values >= frac * peak))
    return row


def _add_upper_limit(row: dict, limit: UpperLimit) -> None:
    row["upperlimit"] = limit.flux
    row["upperlimit_mag"] = limit.magnitude
    row["upperlimit_onesigma"] = limit.one_sigma
    row["upperlimit_quantile"] = limit.quantile
    row["upperlimit_skew"] = limit.skew
    row["upperlimit_num"] = limit.num_used


def _catalog_task(tprm):
    ctx = tprm.ctx
    builder = ctx.builder
    scratch = tprm.scratch.setdefault("sums", np.empty(max(builder.upnum, 1)))
    for job in tprm.jobs():
        if tprm.cancelled():
            break
        obj_id = job + 1
        bbox = ctx.bboxes[job]
        if bbox is None:
            ctx.object_rows[job] = {"obj_id": obj_id, "area": 0, "area_with_blank": 0}
            continue
        obj_row, clump_rows = builder._measure_object(obj_id, bbox, ctx, scratch)
        ctx.object_rows[job] = obj_row
        if clump_rows:
            start = ctx.counter.reserve(len(clump_rows))
            ctx.clump_rows[start:start + len(clump_rows)] = clump_rows
    tprm.wait()


class CatalogBuilder:
    """Config-driven measurement of labelled images.

    Parameters
    ----------
    config : InternalConfig
        Uses the ``catalog``, ``clip``, ``threads`` and ``memory`` sections.
    cancel_event : threading.Event, optional
        Forwarded to the worker pool.
    """

    def __init__(self, config: "InternalConfig", cancel_event: Optional[threading.Event] = None):
        cat = config.catalog
        self.measure_clumps = cat.clumps
        self.seed = cat.seed
        self.zeropoint = cat.zeropoint
        self.upnum = cat.upnum
        self.upnsigma = cat.upnsigma
        self.up_range = cat.up_range
        self.frac_max = cat.frac_max
        self.multip = config.clip.multip
        self.param = config.clip.param
        self.num_threads = config.threads.num_threads
        self.minmapsize = config.memory.minmapsize
        self.quietmmap = config.memory.quietmmap
        self.cancel_event = cancel_event

    # ------------------------------------------------------------------
    # One object
    # ------------------------------------------------------------------
    def _label_row(self, label_mask, bbox, ctx, extra, rng, scratch, river_mean=0.0):
        origin = np.array([s.start for s in bbox])
        values = ctx.values[bbox]
        std = ctx.std[bbox]
        usable = label_mask & np.isfinite(values) & np.isfinite(std)
        local = np.argwhere(usable)
        row = first_pass(values[usable], std[usable], local + origin,
                         int(np.count_nonzero(label_mask & ~usable)))
        if row is None:
            return dict(extra, area=0, area_with_blank=int(np.count_nonzero(label_mask)))
        row = second_pass(values[usable], row, self.frac_max, float(np.median(std[usable])),
                          self.multip, self.param, river_mean)

        footprint = np.argwhere(label_mask)
        offsets = footprint - footprint.min(axis=0)
        anchor = np.rint([row[f"geo_{n}"] for n in _axis_names(len(bbox))]).astype(np.int64)
        limit = upper_limit(offsets, row["sum"], ctx.values, ctx.forbidden, rng, self.upnum,
                            self.upnsigma, self.zeropoint, anchor=anchor,
                            up_range=self.up_range, multip=self.multip, param=self.param,
                            scratch=scratch)
        _add_upper_limit(row, limit)
        return dict(extra, **row)

    def _measure_object(self, obj_id: int, bbox, ctx, scratch) -> Tuple[dict, List[dict]]:
        rng = np.random.default_rng(self.seed ^ obj_id)
        obj_mask = ctx.objects[bbox] == obj_id

        clump_ids = np.zeros(0, dtype=np.int32)
        if ctx.clumps is not None:
            local_clumps = np.where(obj_mask, ctx.clumps[bbox], 0)
            clump_ids = np.unique(local_clumps[local_clumps > 0])

        obj_row = self._label_row(obj_mask, bbox, ctx, {"obj_id": obj_id}, rng, scratch)
        obj_row["num_clumps"] = int(clump_ids.size)
        if not self.measure_clumps or clump_ids.size == 0:
            return obj_row, []

        clump_rows = []
        footprint = full_footprint(obj_mask.ndim)
        values = ctx.values[bbox]
        for clump_id in clump_ids:
            clump_mask = local_clumps == clump_id
            river = (ndimage.binary_dilation(clump_mask, structure=footprint)
                     & obj_mask & (local_clumps == 0) & np.isfinite(values))
            river_area = int(np.count_nonzero(river))
            river_sum = float(np.sum(values[river])) if river_area else 0.0
            river_mean = river_sum / river_area if river_area else 0.0
            extra = {"clump_id": int(clump_id), "host_obj_id": obj_id,
                     "river_area": river_area, "river_sum": river_sum}
            row = self._label_row(clump_mask, bbox, ctx, extra, rng, scratch, river_mean)
            if row["area"]:
                row["sum_no_river"] = row["sum"] - river_mean * row["area"]
            clump_rows.append(row)
        return obj_row, clump_rows

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------
    def build(self, values, std, objects, clumps=None, detected=None,
              wcs: Optional["WCSHandle"] = None) -> Catalog:
        """Object (and clump) catalog.

        Parameters
        ----------
        values : np.ndarray
            Sky-subtracted image.
        std : np.ndarray
            Sky standard deviation at every pixel.
        objects : np.ndarray
            Object labels ``1..n``.
        clumps : np.ndarray, optional
            Clump labels (unique over the image).
        detected : np.ndarray of bool, optional
            Pixels the upper-limit placements must avoid (defaults to the
            objects).
        wcs : WCSHandle, optional
            Adds ``ra``/``dec`` for 2-D images.
        """
        values = np.asarray(values, dtype=np.float64)
        std = np.asarray(std, dtype=np.float64)
        objects = np.asarray(objects, dtype=np.int32)
        if values.shape != objects.shape or std.shape != objects.shape:
            raise ShapeMismatchError(
                f"Shapes differ: values {values.shape}, std {std.shape}, labels {objects.shape}"
            )
        if clumps is not None:
            clumps = np.asarray(clumps, dtype=np.int32)
            if clumps.shape != objects.shape:
                raise ShapeMismatchError(f"Clump map {clumps.shape} differs from {objects.shape}")

        detected = objects > 0 if detected is None else np.asarray(detected, dtype=bool)
        forbidden = detected | ~np.isfinite(values)
        num_objects = int(objects.max(initial=0))
        num_clumps = int(clumps.max(initial=0)) if clumps is not None and self.measure_clumps else 0

        ctx = SimpleNamespace(
            builder=self, values=values, std=std, objects=objects, clumps=clumps,
            forbidden=forbidden, bboxes=ndimage.find_objects(objects, max_label=num_objects),
            object_rows=[None] * num_objects, clump_rows=[None] * num_clumps,
            counter=RowCounter(),
        )
        spin_off(_catalog_task, ctx, num_objects, self.num_threads, minmapsize=self.minmapsize,
                 quietmmap=self.quietmmap, cancel_event=self.cancel_event)

        object_table = finalize(pd.DataFrame([r for r in ctx.object_rows if r is not None]),
                                self.zeropoint)
        clump_table = None
        if clumps is not None and self.measure_clumps:
            rows = [r for r in ctx.clump_rows if r is not None]
            clump_table = finalize(pd.DataFrame(rows), self.zeropoint)
            if not clump_table.empty:
                clump_table = clump_table.sort_values("clump_id").reset_index(drop=True)

        if wcs is not None and values.ndim == 2:
            for table in (object_table, clump_table):
                if table is not None and not table.empty:
                    ra, dec = wcs.pixel_to_world(table["x"].to_numpy(), table["y"].to_numpy())
                    table["ra"], table["dec"] = ra, dec

        logger.info("Catalog: %d objects, %d clumps", len(object_table),
                    0 if clump_table is None else len(clump_table))
        return Catalog(object_table, clump_table,
                       {"zeropoint": self.zeropoint, "upnum": self.upnum,
                        "upnsigma": self.upnsigma, "seed": self.seed})
