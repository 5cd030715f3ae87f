"""Image processing thread.

Consumes input image paths from a queue and runs each image through the
full chain: load, convolve, detect, segment, catalog and write.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

import numpy as np
import pandas as pd
import xarray as xr

from astromesh.catalog import Catalog, CatalogBuilder
from astromesh.contracts import (
    ContractViolation,
    FailurePolicy,
    assert_catalog,
    assert_convolved,
    assert_detected,
    assert_loaded,
    assert_segmented,
)
from astromesh.convolve import convolve_spatial, gaussian_kernel, read_kernel
from astromesh.data import DataBuffer
from astromesh.detection import DetectionResult, Detector, SegmentationResult, Segmenter
from astromesh.errors import AstromeshError, MisconfigurationError
from astromesh.io import CatalogStore, ImageFile, WCSHandle, write_image, write_table
from astromesh.setup_directories import get_analysis_path, get_product_path
from astromesh.tile import Tessellation

if TYPE_CHECKING:
    from astromesh.pipeline.file_tracker import FileProcessingTracker
    from astromesh.schemas import InternalConfig

__all__ = ['ImageProcessor', 'ImageProducts']

logger = logging.getLogger(__name__)


@dataclass
class ImageProducts:
    """Everything produced for one input image."""
    file_id: str
    image: DataBuffer
    convolved: DataBuffer
    detection: DetectionResult
    segmentation: SegmentationResult
    catalog: Optional[Catalog] = None
    wcs: Optional[WCSHandle] = None

    @property
    def sky_subtracted(self) -> np.ndarray:
        sky = np.asarray(self.detection.sky.sky_image.array, dtype=np.float64)
        return np.asarray(self.image.array, dtype=np.float64) - sky

    def header_keys(self) -> Dict[str, Dict[str, tuple]]:
        """FITS keywords of each product extension."""
        std = self.detection.sky.std_summary()
        return {
            "DETECTIONS": {
                "DETSN": (self.detection.sn_threshold, "Pseudo-detection S/N threshold"),
                "NUMLABS": (self.detection.num_detections, "Number of detections"),
            },
            "SKY_STD": {
                "MAXSTD": (std["MAXSTD"], "Maximum tile sky std"),
                "MINSTD": (std["MINSTD"], "Minimum tile sky std"),
                "MEDSTD": (std["MEDSTD"], "Median tile sky std"),
            },
            "OBJECTS": {
                "NUMLABS": (self.segmentation.num_objects, "Number of objects"),
            },
            "CLUMPS": {
                "CLUMPSN": (self.segmentation.clump_sn_threshold, "Clump S/N threshold"),
                "NUMLABS": (self.segmentation.num_clumps, "Number of clumps"),
            },
        }

    def to_dataset(self) -> xr.Dataset:
        """The image products as one xarray Dataset (for netCDF and plots)."""
        dims = ("z", "y", "x")[-self.image.ndim:]
        values = self.sky_subtracted
        ds = xr.Dataset({
            "input": (dims, np.asarray(self.image.array).astype(np.float32)),
            "input_no_sky": (dims, values.astype(np.float32)),
            "detections": (dims, np.asarray(self.detection.labels).astype(np.int32)),
            "sky": (dims, np.asarray(self.detection.sky.sky_image.array).astype(np.float32)),
            "sky_std": (dims, np.asarray(self.detection.sky.std_image.array).astype(np.float32)),
            "objects": (dims, np.asarray(self.segmentation.objects).astype(np.int32)),
            "clumps": (dims, np.asarray(self.segmentation.clumps).astype(np.int32)),
        })
        ds.attrs.update({
            "file_id": self.file_id,
            "num_detections": int(self.detection.num_detections),
            "num_objects": int(self.segmentation.num_objects),
            "num_clumps": int(self.segmentation.num_clumps),
            "detection_sn_threshold": float(self.detection.sn_threshold),
            "clump_sn_threshold": float(self.segmentation.clump_sn_threshold),
        })
        for key, value in self.detection.sky.std_summary().items():
            ds.attrs[key.lower()] = value
        return ds

    def free(self) -> None:
        """Release image-sized scratch buffers (mmap files included)."""
        self.detection.free()
        self.convolved.free()
        self.image.free()


class ImageProcessor(threading.Thread):
    """Processes input images from a queue.

    Pipeline per image:

    1. **Load**: read the configured HDU of the FITS file (WCS kept).
    2. **Convolve**: tile-aware convolution with the configured kernel,
       on the GPU when the backend allows it.
    3. **Detect**: sky estimation, thresholds and false-detection removal.
    4. **Segment**: clumps and objects of every detection (optional).
    5. **Catalog**: per-object and per-clump measurements (optional).
    6. **Write**: FITS products, optional netCDF copy, catalogs to SQLite.

    Each stage boundary is checked by a contract from
    :mod:`astromesh.contracts`. After writing, the image is queued for the
    plotter.

    **Output Files:**

    - images/{stem}_products.fits: INPUT-NO-SKY, DETECTIONS, SKY, SKY_STD,
      OBJECTS, CLUMPS and the catalog tables
    - images/{stem}_products.nc: the same images as a netCDF Dataset
    - analysis/{db_filename}: ``objects`` and ``clumps`` tables of all files

    Example usage (typically called by the orchestrator)::

        processor = ImageProcessor(input_queue, config, output_dirs,
                                   output_queue=plotter_queue)
        processor.start()
        ...
        processor.stop()
        df = processor.get_results()
    """

    def __init__(self, input_queue: queue.Queue, config: "InternalConfig",
                 output_dirs: Dict[str, Path],
                 output_queue: Optional[queue.Queue] = None,
                 file_tracker: Optional["FileProcessingTracker"] = None,
                 failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST,
                 name: str = "ImageProcessor"):
        """Initialize processor with validated configuration.

        Parameters
        ----------
        input_queue : queue.Queue
            Input image paths (str, Path or ``{"path": ...}`` dicts).
        config : InternalConfig
            Fully validated runtime configuration.
        output_dirs : dict
            Output directory paths (from setup_output_directories).
        output_queue : queue.Queue, optional
            Plot requests for the plotter thread. If None, no plotting occurs.
        file_tracker : FileProcessingTracker, optional
            Skips already analyzed files and records progress.
        failure_policy : FailurePolicy
            What to do after a contract violation.
        name : str, optional
            Thread name for logging.
        """
        super().__init__(daemon=True, name=name)

        self.input_queue = input_queue
        self.config = config
        self.output_dirs = {k: Path(v) for k, v in output_dirs.items()}
        self.output_queue = output_queue
        self.file_tracker = file_tracker
        self.failure_policy = FailurePolicy(failure_policy)
        self._stop_event = threading.Event()
        self.num_succeeded = 0
        self.num_failed = 0

        self.kernel = self._load_kernel()
        self.builder = CatalogBuilder(config, cancel_event=self._stop_event)

        self.db_path = get_analysis_path(self.output_dirs, config.output.db_filename)
        self.store = CatalogStore(self.db_path)

    def _load_kernel(self) -> Optional[DataBuffer]:
        conv = self.config.convolve
        if conv.kernel_file:
            kernel = read_kernel(conv.kernel_file, conv.kernel_hdu)
            logger.info("Kernel: %s %s", conv.kernel_file, kernel.shape)
            return kernel
        return None

    def kernel_for(self, ndim: int) -> DataBuffer:
        """Configured kernel for an ``ndim`` image."""
        if self.kernel is not None:
            if self.kernel.ndim != ndim:
                raise MisconfigurationError(
                    f"Kernel has {self.kernel.ndim} dims but the image has {ndim}"
                )
            return self.kernel
        conv = self.config.convolve
        return gaussian_kernel(conv.kernel_fwhm, conv.kernel_truncation, ndim)

    def stop(self):
        """Signal processor to stop; running worker pools are cancelled."""
        self._stop_event.set()

    def stopped(self):
        return self._stop_event.is_set()

    def close_database(self):
        self.store.close()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def load(self, filepath) -> DataBuffer:
        cfg = self.config
        with ImageFile.open(filepath, hdu=cfg.input.hdu) as handle:
            image = handle.read_image(name="INPUT", minmapsize=cfg.memory.minmapsize,
                                      quietmmap=cfg.memory.quietmmap)
        assert_loaded(image)
        logger.debug("Loaded %s: shape=%s, dtype=%s", Path(filepath).name, image.shape,
                     image.dtype.value)
        return image

    def analyze(self, image: DataBuffer, file_id: str = "image",
                wcs: Optional[WCSHandle] = None) -> ImageProducts:
        """Run convolution, detection, segmentation and cataloguing in memory."""
        cfg = self.config
        tess = Tessellation(image.shape, cfg.tile.tile_size, cfg.tile.num_channels,
                            cfg.tile.remainder_frac, cfg.tile.work_over_channels)

        conv_cfg = cfg.convolve
        convolved = convolve_spatial(
            image, self.kernel_for(image.ndim), tess,
            num_threads=cfg.threads.num_threads,
            edge_correct=conv_cfg.edge_correct,
            convolve_over_channels=conv_cfg.convolve_over_channels,
            convolve_on_blank=conv_cfg.convolve_on_blank,
            backend=conv_cfg.backend,
            minmapsize=cfg.memory.minmapsize, quietmmap=cfg.memory.quietmmap,
        )
        assert_convolved(image, convolved, on_blank=conv_cfg.convolve_on_blank)

        detection = Detector(cfg, tess, cancel_event=self._stop_event).detect(image, convolved)
        assert_detected(detection, image.shape)
        logger.info("Detected: %d regions", detection.num_detections)

        if cfg.segmentation.enabled:
            segmentation = Segmenter(cfg, tess, cancel_event=self._stop_event).segment(
                image, convolved, detection)
        else:
            labels = np.asarray(detection.labels, dtype=np.int32)
            segmentation = SegmentationResult(labels.copy(), np.zeros_like(labels),
                                              detection.num_detections, 0)
        assert_segmented(segmentation, detection)

        products = ImageProducts(file_id, image, convolved, detection, segmentation, wcs=wcs)
        if cfg.catalog.enabled:
            clumps = segmentation.clumps if cfg.segmentation.enabled else None
            products.catalog = self.builder.build(
                products.sky_subtracted, detection.sky.std_image.array,
                segmentation.objects, clumps, detected=detection.labels > 0, wcs=wcs)
            assert_catalog(products.catalog, segmentation)
        return products

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------
    def write_products(self, products: ImageProducts) -> Optional[Path]:
        """FITS (and optionally netCDF) products; returns the main product path."""
        out = self.config.output
        main_path = None
        if out.write_fits:
            main_path = self._write_fits(products)
        if out.write_netcdf:
            nc_path = get_product_path(self.output_dirs, products.file_id, "nc")
            products.to_dataset().to_netcdf(nc_path, mode='w', engine='netcdf4',
                                            format='NETCDF4')
            logger.info("Products saved: %s", nc_path.name)
            main_path = main_path or nc_path
        return main_path

    def _write_fits(self, products: ImageProducts) -> Path:
        path = get_product_path(self.output_dirs, products.file_id, "fits")
        if path.exists():
            path.unlink()
        keys = products.header_keys()
        wcs = products.wcs
        images = [
            ("INPUT-NO-SKY", products.sky_subtracted.astype(np.float32)),
            ("DETECTIONS", np.asarray(products.detection.labels, dtype=np.int32)),
            ("SKY", products.detection.sky.sky_image.array),
            ("SKY_STD", products.detection.sky.std_image.array),
            ("OBJECTS", np.asarray(products.segmentation.objects, dtype=np.int32)),
            ("CLUMPS", np.asarray(products.segmentation.clumps, dtype=np.int32)),
        ]
        for extname, array in images:
            buf = DataBuffer(np.asarray(array), name=extname, unit=products.image.unit, wcs=wcs)
            write_image(buf, path, extname=extname, keys=keys.get(extname))

        if products.catalog is not None:
            zp = {"ZEROPNT": (products.catalog.meta["zeropoint"], "Magnitude zero point")}
            for extname, table in (("OBJECTS-CAT", products.catalog.objects),
                                   ("CLUMPS-CAT", products.catalog.clumps)):
                # Empty tables have no columns to describe
                if table is not None and not table.empty:
                    write_table(table, path, extname, zp)
        logger.info("Products saved: %s", path.name)
        return path

    def save_catalog(self, products: ImageProducts) -> int:
        """Replace this image's rows in the catalog database."""
        if products.catalog is None:
            return 0
        self.store.delete_file(products.file_id)
        count = self.store.append("objects", products.catalog.objects, products.file_id)
        if products.catalog.clumps is not None:
            self.store.append("clumps", products.catalog.clumps, products.file_id)
        return count

    # ------------------------------------------------------------------
    # Per-file driver
    # ------------------------------------------------------------------
    def process_file(self, filepath) -> bool:
        """Process one image: load, analyze, write and queue for plotting."""
        if isinstance(filepath, dict):
            filepath = filepath["path"]
        file_id = Path(filepath).stem
        tracker = self.file_tracker

        if tracker and tracker.should_process(file_id, "analyzed") is False:
            if tracker.should_process(file_id, "plotted") is False:
                logger.info("Skipping already completed: %s", Path(filepath).name)
            else:
                self._requeue_for_plotting(file_id)
            return True

        logger.info("Processing: %s", Path(filepath).name)
        products = None
        try:
            image = self.load(filepath)
            products = self.analyze(image, file_id, wcs=image.wcs)
            products_path = self.write_products(products)
            num_rows = self.save_catalog(products)
            self._log_catalog_statistics(products)

            if tracker:
                tracker.mark_stage_complete(
                    file_id, "analyzed", path=products_path,
                    num_detections=products.detection.num_detections,
                    num_objects=products.segmentation.num_objects,
                    num_clumps=products.segmentation.num_clumps)
            self._queue_plot(file_id, products_path, products)
            logger.info("Successfully processed: %s (saved %d objects to DB)",
                        Path(filepath).name, num_rows)
            return True

        except ContractViolation as e:
            logger.critical("Pipeline contract violated: %s", e)
            self._mark_failed(file_id, f"Contract violation: {e}")
            if self.failure_policy == FailurePolicy.FAIL_FAST:
                logger.critical("This indicates a bug in pipeline logic. Stopping processor.")
                self.stop()
            return False

        except AstromeshError as e:
            logger.error("Failed %s: %s: %s", Path(filepath).name, type(e).__name__, e)
            self._mark_failed(file_id, f"{type(e).__name__}: {e}")
            return False

        except Exception as e:
            logger.exception("Error processing %s", filepath)
            self._mark_failed(file_id, str(e))
            return False

        finally:
            if products is not None:
                products.free()

    def _mark_failed(self, file_id: str, message: str) -> None:
        if self.file_tracker:
            self.file_tracker.mark_stage_complete(file_id, "analyzed", error=message)

    def _queue_plot(self, file_id: str, products_path: Optional[Path],
                    products: Optional[ImageProducts] = None) -> None:
        if self.output_queue is None:
            return
        dataset = None
        if products_path is None and products is not None:
            dataset = products.to_dataset()
        item = {'file_id': file_id, 'products_path': products_path, 'dataset': dataset}
        try:
            self.output_queue.put_nowait(item)
            logger.debug("Pushed to plotter queue: %s", file_id)
        except queue.Full:
            logger.debug("Plotter queue full, skipping %s", file_id)

    def _requeue_for_plotting(self, file_id: str) -> None:
        status = self.file_tracker.get_file_status(file_id) or {}
        products_path = status.get("products_path")
        if products_path and Path(products_path).exists():
            logger.info("Already analyzed, re-queuing for plot: %s", file_id)
            self._queue_plot(file_id, Path(products_path))
        else:
            logger.warning("Already analyzed but products are missing: %s", file_id)

    def _log_catalog_statistics(self, products: ImageProducts) -> None:
        seg = products.segmentation
        parts = [f"Detections: {products.detection.num_detections}",
                 f"Objects: {seg.num_objects}", f"Clumps: {seg.num_clumps}"]
        std = products.detection.sky.std_summary()
        parts.append(f"Sky std - min={std['MINSTD']:.4g}, med={std['MEDSTD']:.4g}, "
                     f"max={std['MAXSTD']:.4g}")
        catalog = products.catalog
        if catalog is not None and not catalog.objects.empty and "magnitude" in catalog.objects:
            mags = catalog.objects["magnitude"].dropna()
            if len(mags):
                parts.append(f"Mag - min={mags.min():.2f}, max={mags.max():.2f}")
        logger.info("Image statistics: %s", " | ".join(parts))

    # ------------------------------------------------------------------
    # Thread loop and results
    # ------------------------------------------------------------------
    def run(self):
        """Main loop: process paths from the input queue until stopped.

        A ``None`` item is the shutdown sentinel.
        """
        logger.info("Processor started, waiting for files...")

        while not self.stopped():
            try:
                filepath = self.input_queue.get(timeout=1)
            except queue.Empty:
                continue

            try:
                if filepath is None:
                    logger.info("Processor received shutdown signal")
                    break
                if self.process_file(filepath):
                    self.num_succeeded += 1
                else:
                    self.num_failed += 1
            except Exception:
                logger.exception("Failed to process file: %s", filepath)
                self.num_failed += 1
            finally:
                self.input_queue.task_done()

        logger.info("Processor stopped")

    def get_results(self, table: str = "objects") -> pd.DataFrame:
        """All rows of a catalog table collected so far."""
        return self.store.read(table)

    def save_results(self, directory=None) -> Dict[str, Path]:
        """Export every catalog table to Parquet in ``directory`` (default analysis/)."""
        directory = Path(directory) if directory is not None else self.output_dirs["analysis"]
        try:
            return self.store.export_parquet(directory, self.config.output.compression,
                                             stem=Path(self.config.output.db_filename).stem)
        except Exception:
            logger.exception("Failed to export results")
            return {}
