"""Segmentation of detections into clumps and objects.

1. The undetected interior of every sky tile is over-segmented (tile edges
   are rivers) and the S/N of those noise clumps sets the clump threshold at
   quantile ``segquant``.
2. Every detection is over-segmented on the convolved image; clumps above
   the threshold are the true clumps.
3. True clumps are grown over the detection in descending convolved order
   down to ``gthresh`` (pixels touching two clumps become rivers).
4. Two grown clumps whose shared river has an S/N of at least
   ``objbordersn`` belong to the same object. Rivers go to the object most
   of their neighbours belong to (the smallest label on ties).
5. Objects are grown over the rest of the detection, rivers acting as
   barriers. A detection with fewer than two true clumps is a single object.

Object labels are unique over the image; clump labels too, and ``pairs``
maps every clump to its host object.
"""

import logging
import threading
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import ndimage
from scipy.cluster.hierarchy import DisjointSet

from astromesh.data import as_buffer
from astromesh.detection.clumps import RIVER, clump_sn, grow_labels, neighbour_offsets, oversegment
from astromesh.detection.detect import DetectionResult
from astromesh.errors import InsufficientNoiseError, ShapeMismatchError
from astromesh.statistics import quantile
from astromesh.tile import Tessellation
from astromesh.workers import spin_off

if TYPE_CHECKING:
    from astromesh.schemas import InternalConfig

__all__ = ['Segmenter', 'SegmentationResult', 'group_clumps', 'river_pair_sn']

logger = logging.getLogger(__name__)


@dataclass
class SegmentationResult:
    """Object and clump maps of one image.

    Invariants: every object pixel is detected and every clump pixel lies
    inside an object.
    """
    objects: np.ndarray
    clumps: np.ndarray
    num_objects: int
    num_clumps: int
    clump_sn_threshold: float = np.nan
    pairs: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(
        {"clump_id": np.zeros(0, dtype=np.int32), "object_id": np.zeros(0, dtype=np.int32)}))
    sky_clump_sn: np.ndarray = field(default_factory=lambda: np.zeros(0))
    clump_sn: np.ndarray = field(default_factory=lambda: np.zeros(0))


def group_clumps(num_clumps: int, pair_sn: Dict[Tuple[int, int], float],
                 objbordersn: float) -> Tuple[np.ndarray, int]:
    """Object label of every clump, joining pairs whose river S/N reaches ``objbordersn``.

    Returns an array indexed by clump label (entry 0 is 0) and the number of
    objects. Objects are numbered in the order of their smallest clump.
    """
    merged = DisjointSet(range(num_clumps + 1))
    for (a, b), value in pair_sn.items():
        if value >= objbordersn:
            merged.merge(a, b)
    roots = np.zeros(num_clumps + 1, dtype=np.int64)
    for group in merged.subsets():
        roots[list(group)] = min(group)
    unique_roots = np.unique(roots[1:])
    renumber = np.zeros(num_clumps + 1, dtype=np.int32)
    renumber[unique_roots] = np.arange(1, unique_roots.size + 1)
    object_of_clump = renumber[roots]
    object_of_clump[0] = 0
    return object_of_clump, int(unique_roots.size)


def river_pair_sn(grown: np.ndarray, values: np.ndarray, std: np.ndarray,
                  cpscorr: float = 1.0, sky_subtracted: bool = True) -> Dict[Tuple[int, int], float]:
    """S/N of the river between every pair of touching grown clumps.

    A river pixel contributes to every pair of distinct clumps it touches;
    ``S/N = sqrt(n / cpscorr) * mean / sqrt(|mean| + var)`` with ``var`` the
    mean sky variance over those pixels.
    """
    river = (grown == RIVER) & np.isfinite(values)
    if not np.any(river):
        return {}
    padded = np.pad(grown, 1, mode="constant", constant_values=0)
    offsets = neighbour_offsets(padded.shape)
    coords = tuple(c + 1 for c in np.nonzero(river))
    positions = np.ravel_multi_index(coords, padded.shape)
    ngb = padded.ravel()[positions[:, None] + offsets[None, :]]
    factor = 2.0 if sky_subtracted else 1.0

    sums: Dict[Tuple[int, int], List[float]] = {}
    for row, value, sigma in zip(ngb, values[river], np.asarray(std)[river]):
        labels = sorted({int(v) for v in row if v > 0})
        for i, a in enumerate(labels):
            for b in labels[i + 1:]:
                entry = sums.setdefault((a, b), [0, 0.0, 0.0])
                entry[0] += 1
                entry[1] += float(value)
                entry[2] += factor * float(sigma) ** 2

    result = {}
    for pair, (n, flux, var) in sums.items():
        mean = flux / n
        result[pair] = float(np.sqrt(n / cpscorr) * mean / np.sqrt(abs(mean) + var / n))
    return result


def _majority_rivers(objects: np.ndarray, region: np.ndarray) -> np.ndarray:
    """Give river pixels of ``region`` the most common neighbouring object."""
    objects = objects.copy()
    river = region & (objects == RIVER)
    if not np.any(river):
        return objects
    padded = np.pad(objects, 1, mode="constant", constant_values=0)
    offsets = neighbour_offsets(padded.shape)
    coords = tuple(c + 1 for c in np.nonzero(river))
    positions = np.ravel_multi_index(coords, padded.shape)
    ngb = padded.ravel()[positions[:, None] + offsets[None, :]]
    assigned = np.full(ngb.shape[0], RIVER, dtype=np.int32)
    for i, row in enumerate(ngb):
        row = row[row > 0]
        if row.size:
            ids, counts = np.unique(row, return_counts=True)
            # np.unique sorts, so argmax picks the smallest id on ties.
            assigned[i] = ids[np.argmax(counts)]
    objects[river] = assigned
    return objects


def _sky_clump_task(tprm):
    ctx = tprm.ctx
    for tile in tprm.jobs():
        if tprm.cancelled():
            break
        s = ctx.slices[tile]
        undetected = ~ctx.detected[s] & ctx.finite[s]
        if np.count_nonzero(undetected) / undetected.size <= ctx.min_sky_frac:
            continue
        edge = np.ones(undetected.shape, dtype=bool)
        edge[(slice(1, -1),) * edge.ndim] = False
        region = undetected & ~edge
        if not np.any(region):
            continue
        labels, num = oversegment(ctx.conv[s], region, rivers=edge)
        sn = clump_sn(ctx.values[s], ctx.std[s], labels, num, region, ctx.min_area,
                      ctx.cpscorr, ctx.sky_subtracted)
        ctx.sn[tile] = sn[np.isfinite(sn)]
    tprm.wait()


def _segment_task(tprm):
    ctx = tprm.ctx
    for job in tprm.jobs():
        if tprm.cancelled():
            break
        bbox = ctx.bboxes[job]
        if bbox is not None:
            ctx.results[job] = ctx.segmenter._segment_detection(job + 1, bbox, ctx)
    tprm.wait()


class Segmenter:
    """Config-driven segmentation of a detection map.

    Parameters
    ----------
    config : InternalConfig
        Uses the ``segmentation``, ``threads`` and ``memory`` sections.
    tessellation : Tessellation
        Tiles used for the noise clumps.
    cancel_event : threading.Event, optional
        Forwarded to the worker pool.
    """

    def __init__(self, config: "InternalConfig", tessellation: Tessellation,
                 cancel_event: Optional[threading.Event] = None):
        seg = config.segmentation
        self.tess = tessellation
        self.min_clump_area = seg.min_clump_area
        self.segquant = seg.segquant
        self.min_sky_frac = seg.min_sky_frac
        self.min_num_noise = seg.min_num_noise
        self.objbordersn = seg.objbordersn
        self.gthresh = seg.gthresh
        self.cpscorr = seg.cpscorr
        self.sky_subtracted = seg.sky_subtracted
        self.connectivity = seg.connectivity
        self.num_threads = config.threads.num_threads
        self.minmapsize = config.memory.minmapsize
        self.quietmmap = config.memory.quietmmap
        self.cancel_event = cancel_event

    def _spin_off(self, task, ctx, num_jobs):
        spin_off(task, ctx, num_jobs, self.num_threads, minmapsize=self.minmapsize,
                 quietmmap=self.quietmmap, cancel_event=self.cancel_event)

    # ------------------------------------------------------------------
    # Clump S/N threshold
    # ------------------------------------------------------------------
    def sky_clump_sn(self, values, conv, std, detected) -> np.ndarray:
        """S/N of the clumps over the undetected parts of the sky tiles."""
        ctx = SimpleNamespace(
            slices=self.tess.slices, detected=detected,
            finite=np.isfinite(values) & np.isfinite(conv),
            conv=conv, values=values, std=std, min_sky_frac=self.min_sky_frac,
            min_area=self.min_clump_area, cpscorr=self.cpscorr,
            sky_subtracted=self.sky_subtracted,
            sn=[None] * self.tess.num_tiles,
        )
        self._spin_off(_sky_clump_task, ctx, self.tess.num_tiles)
        found = [sn for sn in ctx.sn if sn is not None and sn.size]
        return np.concatenate(found) if found else np.zeros(0)

    def clump_threshold(self, sky_sn: np.ndarray) -> float:
        if sky_sn.size < self.min_num_noise:
            raise InsufficientNoiseError(
                f"Only {sky_sn.size} clumps over the sky (need {self.min_num_noise}); "
                "use larger tiles, a lower min_sky_frac or a smaller min_num_noise"
            )
        return quantile(sky_sn, self.segquant)

    # ------------------------------------------------------------------
    # One detection
    # ------------------------------------------------------------------
    def _segment_detection(self, det_id, bbox, ctx):
        local = ctx.detections[bbox] == det_id
        conv = ctx.conv[bbox]
        values = ctx.values[bbox]
        std = ctx.std[bbox]
        region = local & np.isfinite(conv) & np.isfinite(values)

        labels, num = oversegment(conv, region)
        sn = clump_sn(values, std, labels, num, region, self.min_clump_area,
                      self.cpscorr, self.sky_subtracted)
        with np.errstate(invalid="ignore"):
            true_ids = np.flatnonzero(sn > ctx.threshold) + 1
        mapping = np.zeros(num + 1, dtype=np.int32)
        mapping[true_ids] = np.arange(1, true_ids.size + 1)
        clumps = mapping[labels]
        clump_sn_values = sn[true_ids - 1]

        if true_ids.size < 2:
            objects = local.astype(np.int32)
            clump_object = np.ones(true_ids.size, dtype=np.int32)
            return SimpleNamespace(bbox=bbox, local=local, objects=objects, clumps=clumps,
                                   clump_object=clump_object, num_objects=1,
                                   clump_sn=clump_sn_values)

        growable = local & ctx.growable[bbox]
        grown = grow_labels(clumps, growable, values=conv)
        pair_sn = river_pair_sn(grown, values, std, self.cpscorr, self.sky_subtracted)

        object_of_clump, num_objects = group_clumps(true_ids.size, pair_sn, self.objbordersn)

        objects = np.where(grown > 0, object_of_clump[np.clip(grown, 0, None)], grown)
        objects = np.where(local, objects, 0).astype(np.int32)
        objects = _majority_rivers(objects, local)

        # Rivers are barriers for the configured connectivity, then anything
        # left joins through full connectivity.
        objects = grow_labels(objects, local & (objects == 0), connectivity=self.connectivity,
                              make_rivers=False)
        objects[objects == RIVER] = 0
        objects = grow_labels(objects, local & (objects == 0), make_rivers=False)
        objects[~local] = 0

        return SimpleNamespace(bbox=bbox, local=local, objects=objects, clumps=clumps,
                               clump_object=object_of_clump[1:], num_objects=num_objects,
                               clump_sn=clump_sn_values)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------
    def segment(self, image, convolved, detection: DetectionResult) -> SegmentationResult:
        """Objects and clumps of ``detection``.

        Raises
        ------
        ShapeMismatchError
            If the images and the detection map disagree.
        InsufficientNoiseError
            If too few clumps exist over the sky for a robust S/N threshold.
        """
        image = as_buffer(image, name="input")
        convolved = as_buffer(convolved, name="convolved")
        detections = np.asarray(detection.labels, dtype=np.int32)
        if image.shape != convolved.shape or image.shape != detections.shape:
            raise ShapeMismatchError(
                f"Shapes differ: input {image.shape}, convolved {convolved.shape}, "
                f"detections {detections.shape}"
            )

        num_det = detection.num_detections
        if detection.skipped or num_det == 0:
            logger.info("Segmentation skipped: %d detections become objects", num_det)
            return SegmentationResult(detections.copy(), np.zeros_like(detections),
                                      num_det, 0)

        sky = np.asarray(detection.sky.sky_image.array, dtype=np.float64)
        std = np.asarray(detection.sky.std_image.array, dtype=np.float64)
        values = np.asarray(image.array, dtype=np.float64) - sky
        conv = np.asarray(convolved.array, dtype=np.float64)

        sky_sn = self.sky_clump_sn(values, conv, std, detections > 0)
        threshold = self.clump_threshold(sky_sn)
        logger.info("Clump S/N threshold %.3f (%.3f quantile of %d sky clumps)",
                    threshold, self.segquant, sky_sn.size)

        if detection.conv_sky is not None:
            csky = np.asarray(detection.conv_sky.sky_image.array, dtype=np.float64)
            cstd = np.asarray(detection.conv_sky.std_image.array, dtype=np.float64)
            with np.errstate(invalid="ignore"):
                growable = conv >= csky + self.gthresh * cstd
        else:
            growable = np.ones(conv.shape, dtype=bool)

        bboxes = ndimage.find_objects(detections, max_label=num_det)
        ctx = SimpleNamespace(detections=detections, conv=conv, values=values, std=std,
                              threshold=threshold, growable=growable, bboxes=bboxes,
                              results=[None] * num_det, segmenter=self)
        self._spin_off(_segment_task, ctx, num_det)

        objects = np.zeros(detections.shape, dtype=np.int32)
        clumps = np.zeros(detections.shape, dtype=np.int32)
        pair_clumps, pair_objects, clump_sn_all = [], [], []
        next_object, next_clump = 0, 0
        for res in ctx.results:
            if res is None:
                continue
            owned = res.local & (res.objects > 0)
            objects[res.bbox][owned] = res.objects[owned] + next_object
            num_clumps = res.clump_object.size
            if num_clumps:
                inside = res.local & (res.clumps > 0)
                clumps[res.bbox][inside] = res.clumps[inside] + next_clump
                pair_clumps.append(np.arange(1, num_clumps + 1) + next_clump)
                pair_objects.append(res.clump_object + next_object)
                clump_sn_all.append(res.clump_sn)
            next_object += res.num_objects
            next_clump += num_clumps

        pairs = pd.DataFrame({
            "clump_id": (np.concatenate(pair_clumps) if pair_clumps
                         else np.zeros(0)).astype(np.int32),
            "object_id": (np.concatenate(pair_objects) if pair_objects
                          else np.zeros(0)).astype(np.int32),
        })
        logger.info("Segmentation: %d detections -> %d objects, %d clumps",
                    num_det, next_object, next_clump)
        return SegmentationResult(objects, clumps, next_object, next_clump, float(threshold),
                                  pairs, sky_sn,
                                  np.concatenate(clump_sn_all) if clump_sn_all else np.zeros(0))
