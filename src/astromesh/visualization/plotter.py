"""Check-image visualization.

Renders the input, sky, sky std, detections, objects and clumps of one image
to a single multi-panel figure. Supports threaded queue-based processing for
pipeline integration.
"""

import logging
import queue
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import numpy as np
import xarray as xr
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from matplotlib.colors import ListedColormap

from astromesh.io import ImageFile
from astromesh.setup_directories import get_plot_path

if TYPE_CHECKING:
    from astromesh.pipeline.file_tracker import FileProcessingTracker
    from astromesh.schemas import InternalConfig

__all__ = ['CheckPlotter', 'PlotterThread', 'load_products']

logger = logging.getLogger(__name__)

# Panel order: (dataset variable, FITS extension, title, kind)
PANELS = (
    ("input_no_sky", "INPUT-NO-SKY", "Input (sky subtracted)", "image"),
    ("sky", "SKY", "Sky", "image"),
    ("sky_std", "SKY_STD", "Sky std", "image"),
    ("detections", "DETECTIONS", "Detections", "labels"),
    ("objects", "OBJECTS", "Objects", "labels"),
    ("clumps", "CLUMPS", "Clumps", "labels"),
)


def load_products(path) -> xr.Dataset:
    """Products of one image as a Dataset, from a netCDF or FITS products file."""
    path = Path(path)
    if path.suffix == ".nc":
        with xr.open_dataset(path) as ds:
            return ds.load()

    data = {}
    attrs = {"file_id": path.stem.replace("_products", "")}
    for name, extname, _, _ in PANELS:
        with ImageFile.open(path, hdu=extname) as handle:
            array = handle.read_image().array
            for key in ("DETSN", "CLUMPSN", "MEDSTD"):
                if key in handle.header:
                    attrs[key.lower()] = handle.header[key]
        dims = ("z", "y", "x")[-array.ndim:]
        data[name] = (dims, array)
    return xr.Dataset(data, attrs=attrs)


def _label_cmap(num_labels: int, seed: int = 0) -> ListedColormap:
    """Random colours for labels 1..n, black background."""
    rng = np.random.default_rng(seed)
    colors = rng.uniform(0.25, 1.0, size=(max(num_labels, 1) + 1, 3))
    colors[0] = 0.0
    return ListedColormap(colors)


class CheckPlotter:
    """Generates check-image figures of the pipeline products.

    **Panels:**

    - Top row: sky-subtracted input, sky and sky std, each scaled to the
      configured percentiles of its finite pixels
    - Bottom row: detection, object and clump labels in random colours

    3-D cubes are shown by their central slice.

    **Configuration:**

    DPI, figure size, output format, colormap and percentile limits come
    from the ``visualization`` section of the config.

    Example usage::

        plotter = CheckPlotter(config)
        plot_path = plotter.plot_from_file("images/field_products.fits",
                                           "plots/field_check.png")
    """

    def __init__(self, config: Optional["InternalConfig"] = None):
        viz = config.visualization if config is not None else None
        self.dpi = viz.dpi if viz else 150
        self.figsize = tuple(viz.figsize) if viz else (16.0, 9.0)
        self.output_format = viz.output_format if viz else "png"
        self.cmap = viz.cmap if viz else "gray"
        self.percentiles = tuple(viz.percentiles) if viz else (1.0, 99.5)

        logger.info("CheckPlotter initialized (format=%s, dpi=%d)", self.output_format, self.dpi)

    @staticmethod
    def _plane(values: np.ndarray) -> np.ndarray:
        if values.ndim == 3:
            return values[values.shape[0] // 2]
        return values

    def _limits(self, values: np.ndarray) -> Tuple[float, float]:
        finite = values[np.isfinite(values)]
        if finite.size == 0:
            return 0.0, 1.0
        low, high = np.percentile(finite, self.percentiles)
        if high <= low:
            high = low + 1.0
        return float(low), float(high)

    def _plot_image(self, ax: plt.Axes, values: np.ndarray, title: str) -> None:
        vmin, vmax = self._limits(values)
        im = ax.imshow(np.ma.masked_invalid(values), origin='lower', cmap=self.cmap,
                       vmin=vmin, vmax=vmax, interpolation='nearest')
        plt.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
        ax.set_title(title, fontsize=11, fontweight='bold')

    def _plot_labels(self, ax: plt.Axes, labels: np.ndarray, title: str) -> None:
        num = int(labels.max(initial=0))
        ax.imshow(labels, origin='lower', cmap=_label_cmap(num), vmin=0, vmax=max(num, 1),
                  interpolation='nearest')
        ax.set_title(f"{title} ({num})", fontsize=11, fontweight='bold')

    def _save_figure(self, fig: plt.Figure, output_path: Path) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_file = output_path.with_suffix(f'.{self.output_format}')

        fig.savefig(output_file, dpi=self.dpi, bbox_inches='tight', format=self.output_format)
        plt.close(fig)
        logger.info("Plot saved: %s", output_file)
        return output_file

    def plot_dataset(self, ds: xr.Dataset, output_path) -> Path:
        """Render all available panels of ``ds`` to ``output_path``."""
        fig, axes = plt.subplots(2, 3, figsize=self.figsize, dpi=self.dpi)
        for ax, (name, _, title, kind) in zip(axes.ravel(), PANELS):
            if name not in ds.data_vars:
                ax.set_axis_off()
                continue
            values = self._plane(np.asarray(ds[name].values))
            if kind == "labels":
                self._plot_labels(ax, values.astype(np.int64), title)
            else:
                self._plot_image(ax, values.astype(np.float64), title)
            ax.set_xlabel("x (pixel)", fontsize=9)
            ax.set_ylabel("y (pixel)", fontsize=9)

        file_id = ds.attrs.get("file_id", "")
        fig.suptitle(f"{file_id}  detection S/N={ds.attrs.get('detection_sn_threshold', np.nan):.3g}"
                     f"  clump S/N={ds.attrs.get('clump_sn_threshold', np.nan):.3g}",
                     fontsize=13, fontweight='bold')
        return self._save_figure(fig, Path(output_path))

    def plot_from_file(self, products_path, output_path) -> Path:
        ds = load_products(products_path)
        if "detection_sn_threshold" not in ds.attrs and "detsn" in ds.attrs:
            ds.attrs["detection_sn_threshold"] = ds.attrs["detsn"]
        if "clump_sn_threshold" not in ds.attrs and "clumpsn" in ds.attrs:
            ds.attrs["clump_sn_threshold"] = ds.attrs["clumpsn"]
        return self.plot_dataset(ds, output_path)


class PlotterThread(threading.Thread):
    """Worker thread generating check plots in the pipeline.

    Decouples plotting (slow) from the processor (critical path).

    **Input Queue Format:**

    Each item is a dict with:
    - `file_id`: input file stem
    - `products_path`: FITS or netCDF products file, or None
    - `dataset`: in-memory products Dataset when nothing was written

    ``None`` is the shutdown sentinel.

    **File Tracking:**

    Marks the 'plotted' stage (or its failure) in the FileProcessingTracker.
    """

    def __init__(self, input_queue: queue.Queue, output_dirs: Dict,
                 config: Optional["InternalConfig"] = None,
                 file_tracker: Optional["FileProcessingTracker"] = None,
                 name: str = 'CheckPlotter'):
        super().__init__(name=name, daemon=True)

        self.input_queue = input_queue
        self.output_dirs = output_dirs
        self.config = config
        self.file_tracker = file_tracker
        self.output_format = config.visualization.output_format if config is not None else "png"

        self.plotter = CheckPlotter(config)
        self.running = True

    def run(self):
        """Plot items from the queue until the shutdown sentinel arrives."""
        logger.info("%s started", self.name)

        while self.running:
            try:
                item = self.input_queue.get(timeout=1.0)
            except queue.Empty:
                continue

            try:
                if item is None:
                    logger.info("%s received shutdown signal", self.name)
                    break
                self._process_item(item)
            finally:
                self.input_queue.task_done()

        logger.info("%s stopped", self.name)

    def _process_item(self, item: Dict):
        file_id = item.get('file_id', 'image')
        try:
            output_path = get_plot_path(self.output_dirs, file_id, "check", self.output_format)
            dataset = item.get('dataset')
            if dataset is not None:
                plot_file = self.plotter.plot_dataset(dataset, output_path)
            else:
                products_path = item.get('products_path')
                if not products_path or not Path(products_path).exists():
                    logger.warning("Products file not found: %s", products_path)
                    return
                plot_file = self.plotter.plot_from_file(products_path, output_path)

            if self.file_tracker:
                self.file_tracker.mark_stage_complete(file_id, "plotted", path=plot_file)

        except Exception as e:
            logger.exception("Error plotting %s", file_id)
            if self.file_tracker:
                self.file_tracker.mark_stage_complete(file_id, "plotted", error=str(e))

    def stop(self):
        """Signal the thread to stop after the items already queued."""
        self.input_queue.put(None)
