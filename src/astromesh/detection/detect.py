"""Detection of signal in noise (thresholding, pseudo-detections and their S/N).

The sky and its standard deviation are measured twice: on the input (for
signal-to-noise) and on the convolved image (for thresholds). Thresholds are
expressed in units of the convolved standard deviation.

1. *Initial detections*: pixels with ``convolved >= csky + qthresh * cstd``,
   eroded, opened and stripped of components below ``min_detection_area``.
2. *Pseudo-detections*: components of ``convolved >= csky + dthresh * cstd``,
   labelled separately inside and outside the initial detections; those with
   fewer than ``min_num_false`` pixels are dropped.
3. *S/N cut*: ``S/N = sum(pixel - sky) / sqrt(sum(std**2))``. The pseudo-
   detections outside the initial detections are pure noise; the S/N at
   their ``snquant`` quantile is the cut. Initial detections hosting no
   pseudo-detection above the cut are removed.
4. Survivors are dilated, labelled and the sky is re-measured with them
   masked. Steps 1 to 3 then run again on the re-measured skies until the
   labels settle, for at most ``max_sky_passes`` passes.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import numpy as np
import pandas as pd
from scipy import ndimage

from astromesh.data import DataBuffer, as_buffer
from astromesh.detection.labels import dilate, erode, filter_and_relabel, label_binary, open_binary
from astromesh.detection.sky import SkyEstimate, estimate_sky
from astromesh.errors import InsufficientNoiseError, ShapeMismatchError
from astromesh.mesh import MeshEngine
from astromesh.statistics import quantile
from astromesh.tile import Tessellation

if TYPE_CHECKING:
    from astromesh.schemas import InternalConfig

__all__ = ['Detector', 'DetectionResult', 'pseudo_detection_sn']

logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Detection labels and the sky products that produced them.

    ``sky`` is the final sky (measured with the detections masked);
    ``initial_sky`` is the first-pass estimate on the input and ``conv_sky``
    the convolved-image sky of the last pass.
    """
    labels: np.ndarray
    num_detections: int
    sky: SkyEstimate
    initial_sky: SkyEstimate
    conv_sky: Optional[SkyEstimate] = None
    sn_threshold: float = np.nan
    pseudo: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(
        columns=["label", "area", "sn", "inside"]))
    skipped: bool = False

    @property
    def binary(self) -> np.ndarray:
        return (self.labels > 0).astype(np.uint8)

    def free(self) -> None:
        for estimate in (self.sky, self.initial_sky, self.conv_sky):
            if estimate is not None:
                estimate.free()


def pseudo_detection_sn(labels: np.ndarray, values: np.ndarray, sky: np.ndarray,
                        std: np.ndarray) -> pd.DataFrame:
    """Area and ``sum(pixel - sky) / sqrt(sum(std**2))`` of every label > 0."""
    count = int(labels.max(initial=0))
    if count == 0:
        return pd.DataFrame({"label": np.zeros(0, dtype=np.int32), "area": np.zeros(0, dtype=np.int64),
                             "sn": np.zeros(0)})
    index = np.arange(1, count + 1)
    usable = np.isfinite(values) & np.isfinite(sky) & np.isfinite(std)
    work = np.where(usable, labels, 0)
    flux = ndimage.sum_labels(np.where(usable, values - sky, 0.0), work, index)
    var = ndimage.sum_labels(np.where(usable, std * std, 0.0), work, index)
    area = np.bincount(work.ravel(), minlength=count + 1)[1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        sn = flux / np.sqrt(var)
    return pd.DataFrame({"label": index.astype(np.int32), "area": area, "sn": sn})


class Detector:
    """Config-driven detection on one tessellation.

    Parameters
    ----------
    config : InternalConfig
        Uses the ``detection``, ``mesh``, ``clip``, ``threads`` and ``memory``
        sections.
    tessellation : Tessellation
        Tiles of the image to process.
    cancel_event : threading.Event, optional
        Forwarded to the mesh engine's workers.
    """

    def __init__(self, config: "InternalConfig", tessellation: Tessellation,
                 cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.tess = tessellation
        det = config.detection
        self.qthresh = det.qthresh
        self.erode_iterations = det.erode
        self.opening = det.opening
        self.min_detection_area = det.min_detection_area
        self.dthresh = det.dthresh
        self.min_num_false = det.min_num_false
        self.min_num_noise = det.min_num_noise
        self.snquant = det.snquant
        self.dilate_iterations = det.dilate
        self.max_sky_passes = det.max_sky_passes

        self.engine = MeshEngine(tessellation, num_threads=config.threads.num_threads,
                                 min_tile_frac=config.mesh.min_tile_frac,
                                 minmapsize=config.memory.minmapsize,
                                 quietmmap=config.memory.quietmmap,
                                 cancel_event=cancel_event)
        logger.info("Detector initialized: qthresh=%s, dthresh=%s, snquant=%s, tiles=%d",
                    self.qthresh, self.dthresh, self.snquant, tessellation.num_tiles)

    def estimate_sky(self, image, mask=None, name: str = "SKY") -> SkyEstimate:
        """Sky and std planes with the configured mesh and clipping settings."""
        mesh, clip = self.config.mesh, self.config.clip
        return estimate_sky(self.engine, image, mask=mask, multip=clip.multip, param=clip.param,
                            mean_q_diff=mesh.mean_q_diff, num_ngb=mesh.interp_num_ngb,
                            smooth_width=mesh.smooth_width, bilinear=mesh.bilinear,
                            signal_filter=mesh.signal_filter, name=name)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def initial_detections(self, conv: np.ndarray, csky: np.ndarray, cstd: np.ndarray,
                           blank: np.ndarray) -> np.ndarray:
        """Binary map of the eroded, opened and area-filtered threshold."""
        with np.errstate(invalid="ignore"):
            above = (conv >= csky + self.qthresh * cstd) & ~blank
        above = erode(above, self.erode_iterations)
        above = open_binary(above, self.opening)
        labels = filter_and_relabel(label_binary(above), self.min_detection_area)
        logger.debug("Initial detections: %d", int(labels.max(initial=0)))
        return labels > 0

    def pseudo_detections(self, conv: np.ndarray, csky: np.ndarray, cstd: np.ndarray,
                          initial: np.ndarray, blank: np.ndarray):
        """Pseudo-detection labels and whether each lies inside the initial map.

        Returns
        -------
        labels : np.ndarray
            Outside components first (``1..n_out``), then inside ones.
        inside : np.ndarray of bool
            Indexed by ``label - 1``.
        """
        with np.errstate(invalid="ignore"):
            above = (conv >= csky + self.dthresh * cstd) & ~blank
        outside = filter_and_relabel(label_binary(above & ~initial), self.min_num_false)
        inner = filter_and_relabel(label_binary(above & initial), self.min_num_false)
        n_out = int(outside.max(initial=0))
        labels = np.where(inner > 0, inner + n_out, outside).astype(np.int32)
        inside = np.arange(1, int(labels.max(initial=0)) + 1) > n_out
        return labels, inside

    def sn_threshold(self, table: pd.DataFrame) -> float:
        """S/N at ``snquant`` of the noise (outside) pseudo-detections."""
        noise = table.loc[~table["inside"], "sn"].to_numpy(dtype=np.float64)
        noise = noise[np.isfinite(noise)]
        if noise.size < self.min_num_noise:
            raise InsufficientNoiseError(
                f"Only {noise.size} noise pseudo-detections (need {self.min_num_noise}); "
                "use larger tiles, a lower dthresh or a smaller min_num_false/min_num_noise"
            )
        return quantile(noise, self.snquant)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------
    def _threshold_pass(self, values, conv, blank, sky_estimate: SkyEstimate,
                        conv_sky: SkyEstimate):
        """One thresholding pass: labels, S/N cut and pseudo-detection table."""
        sky = np.asarray(sky_estimate.sky_image.array, dtype=np.float64)
        std = np.asarray(sky_estimate.std_image.array, dtype=np.float64)
        csky = np.asarray(conv_sky.sky_image.array, dtype=np.float64)
        cstd = np.asarray(conv_sky.std_image.array, dtype=np.float64)

        initial = self.initial_detections(conv, csky, cstd, blank)
        pseudo, inside = self.pseudo_detections(conv, csky, cstd, initial, blank)
        table = pseudo_detection_sn(pseudo, values, sky, std)
        table["inside"] = inside
        threshold = self.sn_threshold(table)

        true_ids = table.loc[table["inside"] & (table["sn"] >= threshold), "label"].to_numpy()
        initial_labels = label_binary(initial)
        hosts = np.unique(initial_labels[np.isin(pseudo, true_ids)])
        hosts = hosts[hosts > 0]
        detected = np.isin(initial_labels, hosts)
        logger.info("Detection S/N threshold %.3f: %d of %d initial detections kept",
                    threshold, hosts.size, int(initial_labels.max(initial=0)))

        detected = dilate(detected, self.dilate_iterations) & ~blank
        return label_binary(detected), float(threshold), table

    def detect(self, image, convolved) -> DetectionResult:
        """Detection labels of ``image`` using its convolved version for thresholds.

        The first pass uses skies measured on every pixel. Each further pass
        re-measures both skies with the previous detections masked and
        thresholds again, until the labels stop changing or
        ``max_sky_passes`` passes have run. The returned ``sky`` is always
        measured with the final detections masked.

        Raises
        ------
        ShapeMismatchError
            If the images do not match each other or the tessellation.
        InsufficientNoiseError
            If too few noise pseudo-detections exist for a robust S/N cut.
        """
        image = as_buffer(image, name="input")
        convolved = as_buffer(convolved, name="convolved")
        if image.shape != convolved.shape:
            raise ShapeMismatchError(f"Convolved shape {convolved.shape} differs from {image.shape}")

        blank = image.blank_mask()
        values = np.asarray(image.array, dtype=np.float64)
        initial_sky = self.estimate_sky(image, name="SKY")

        if initial_sky.is_zero_noise:
            logger.warning("Sky standard deviation is zero; labelling every pixel above the sky")
            sky = np.asarray(initial_sky.sky_image.array, dtype=np.float64)
            with np.errstate(invalid="ignore"):
                labels = label_binary((values > sky) & ~blank)
            return DetectionResult(labels, int(labels.max(initial=0)), initial_sky,
                                   initial_sky, skipped=True)

        conv = np.asarray(convolved.array, dtype=np.float64)
        blank = blank | convolved.blank_mask()

        sky_estimate, conv_sky, labels = initial_sky, None, None
        for sky_pass in range(1, self.max_sky_passes + 1):
            if conv_sky is not None:
                conv_sky.free()
            conv_sky = self.estimate_sky(convolved, mask=None if labels is None else labels > 0,
                                         name="CONV_SKY")
            new_labels, threshold, table = self._threshold_pass(values, conv, blank,
                                                                sky_estimate, conv_sky)
            if labels is not None and np.array_equal(new_labels, labels):
                logger.debug("Detections settled after %d passes", sky_pass)
                break
            labels = new_labels
            if sky_estimate is not initial_sky:
                sky_estimate.free()
            sky_estimate = self.estimate_sky(image, mask=labels > 0, name="SKY")
        else:
            if self.max_sky_passes > 1:
                logger.warning("Detections still changing after %d sky passes; keeping the last",
                               self.max_sky_passes)

        return DetectionResult(labels, int(labels.max(initial=0)), sky_estimate, initial_sky,
                               conv_sky, threshold, table)
