"""Multi-threaded pipeline orchestration.

Coordinates the processor and plotter threads with queue-based
inter-thread communication. Manages discovery, lifecycle, monitoring and
graceful shutdown.
"""

import logging
import queue
import time
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from astromesh.pipeline.file_tracker import FileProcessingTracker
from astromesh.pipeline.processor import ImageProcessor
from astromesh.setup_directories import get_analysis_path, get_log_path, setup_output_directories
from astromesh.visualization import PlotterThread

if TYPE_CHECKING:
    from astromesh.schemas import InternalConfig

__all__ = ['PipelineOrchestrator', 'discover_inputs']

logger = logging.getLogger(__name__)

TRACKER_FILENAME = "file_tracker.db"


def discover_inputs(config: "InternalConfig") -> List[Path]:
    """Input images: explicit files first, then ``input_dir/pattern`` (sorted).

    Duplicates are dropped; missing explicit files are kept so that their
    failure is reported per file.
    """
    found: List[Path] = [Path(f).expanduser() for f in config.input.files]
    if config.input.input_dir:
        input_dir = Path(config.input.input_dir).expanduser()
        if not input_dir.is_dir():
            logger.warning("Input directory not found: %s", input_dir)
        else:
            found.extend(sorted(p for p in input_dir.glob(config.input.pattern) if p.is_file()))

    unique, seen = [], set()
    for path in found:
        key = path.resolve()
        if key not in seen:
            seen.add(key)
            unique.append(path)
    return unique


class PipelineOrchestrator:
    """Manages the multi-threaded image processing pipeline.

    This is the main entry point for running ``astromesh`` on a set of
    images. It discovers the inputs, feeds them to the processor thread and
    hands the products to the plotter thread.

    **Pipeline Architecture:**

    1. **Discovery**: explicit input files and ``input_dir/pattern`` matches
       are registered in the tracker and queued.

    2. **Processor Thread**: runs every image through convolution,
       detection, segmentation and cataloguing; writes the products and
       the catalogs.

    3. **Plotter Thread**: renders check images from the products
       (skipped when visualization is disabled).

    **File Tracking:**

    The FileProcessingTracker SQLite database records the state of each file
    (analyzed, plotted, or failed), so a rerun skips completed work.

    **Logging:**

    All output goes to both console and a log file in ``logs/``. The level
    comes from the ``logging`` section of the config.

    Example usage::

        config = init_runtime_config(args)
        orch = PipelineOrchestrator(config)
        summary = orch.start()
    """

    def __init__(self, config: "InternalConfig", max_queue_size: int = 100,
                 status_interval: float = 30.0):
        """Initialize orchestrator.

        Parameters
        ----------
        config : InternalConfig
            Resolved runtime configuration. ``output_dirs`` is created from
            ``base_dir`` when missing.
        max_queue_size : int, optional
            Size limit of the plot queue; a full queue drops plot requests
            instead of stalling the processor.
        status_interval : float, optional
            Seconds between status lines while waiting for the processor.
        """
        self.config = config
        self.max_queue_size = max_queue_size
        self.status_interval = status_interval

        if config.output_dirs:
            self.output_dirs = {k: Path(v) for k, v in config.output_dirs.items()}
        else:
            self.output_dirs = setup_output_directories(config.base_dir)

        self.input_queue: queue.Queue = queue.Queue()
        self.plotter_queue: queue.Queue = queue.Queue(maxsize=max_queue_size)

        self.processor: Optional[ImageProcessor] = None
        self.plotter: Optional[PlotterThread] = None
        self.tracker: Optional[FileProcessingTracker] = None

        self._stopped = False
        self._start_time = None
        self._num_inputs = 0

    def _setup_logging(self):
        """Configure the root logger (file + console) and the file tracker."""
        log_level = getattr(logging, self.config.logging.level.upper(), logging.INFO)
        log_path = get_log_path(self.output_dirs, self.config.run_id)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        root = logging.getLogger()
        root.setLevel(log_level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()

        fh = logging.FileHandler(log_path)
        fh.setLevel(log_level)
        fh.setFormatter(formatter)
        root.addHandler(fh)

        ch = logging.StreamHandler()
        ch.setLevel(log_level)
        ch.setFormatter(formatter)
        root.addHandler(ch)

        logger.info("Logging: level=%s, file=%s", logging.getLevelName(log_level), log_path)

        tracker_path = get_analysis_path(self.output_dirs, TRACKER_FILENAME)
        self.tracker = FileProcessingTracker(tracker_path)
        logger.info("File tracker: %s", tracker_path)

    def _queue_inputs(self) -> int:
        inputs = discover_inputs(self.config)
        for path in inputs:
            self.tracker.register_file(path.stem, path)
            self.input_queue.put(str(path))
        # Shutdown sentinel after the last file
        self.input_queue.put(None)
        logger.info("Queued %d input image(s)", len(inputs))
        return len(inputs)

    def start(self, max_runtime: Optional[float] = None) -> Dict[str, int]:
        """Run the pipeline over every discovered input and stop.

        Blocking. Returns when every input is processed, the processor stops
        on a contract violation, ``max_runtime`` minutes have passed, or the
        user presses Ctrl+C.

        Returns
        -------
        dict
            ``inputs``, ``succeeded`` and ``failed`` counts. Inputs never
            reached (early stop) count as failed.
        """
        self._setup_logging()

        logger.info("=" * 60)
        logger.info("Starting astromesh pipeline (run %s)", self.config.run_id)
        logger.info("=" * 60)

        self._start_time = time.time()
        deadline = self._start_time + max_runtime * 60 if max_runtime else None

        plot_queue = self.plotter_queue if self.config.visualization.enabled else None
        self.processor = ImageProcessor(
            input_queue=self.input_queue,
            config=self.config,
            output_dirs=self.output_dirs,
            output_queue=plot_queue,
            file_tracker=self.tracker,
        )
        if plot_queue is not None:
            self.plotter = PlotterThread(
                input_queue=self.plotter_queue,
                output_dirs=self.output_dirs,
                config=self.config,
                file_tracker=self.tracker,
            )
            self.plotter.start()
            logger.info("Plotter started")

        self._num_inputs = self._queue_inputs()
        self.processor.start()
        logger.info("Processor started")

        try:
            self._main_loop(deadline)
        except KeyboardInterrupt:
            logger.info("Shutdown signal received (Ctrl+C)")
        finally:
            summary = self.stop()
        return summary

    def _main_loop(self, deadline: Optional[float]):
        while self.processor.is_alive():
            self.processor.join(timeout=self.status_interval)
            if not self.processor.is_alive():
                break
            if deadline and time.time() > deadline:
                logger.info("Max duration reached")
                break
            self._log_status()

    def _drain_queue(self, q: queue.Queue, name: str, timeout: int = 300):
        """Wait for ``q`` to drain, giving up after ``timeout`` seconds without progress."""
        start_time = time.time()
        last_size, last_change = q.qsize(), start_time

        while q.qsize() > 0:
            current_size = q.qsize()
            if current_size != last_size:
                last_size, last_change = current_size, time.time()
            if time.time() - last_change > timeout:
                logger.warning("%s queue drain timeout (%d remaining)", name, current_size)
                break
            logger.debug("Waiting for %s queue: %d remaining", name, current_size)
            time.sleep(0.5)

    def stop(self) -> Dict[str, int]:
        """Stop the threads, export the catalogs and log a summary.

        Safe to call more than once; later calls return the same summary.
        """
        if self._stopped:
            return self._summary()
        self._stopped = True
        logger.info("Stopping pipeline...")

        if self.processor and self.processor.is_alive():
            self.processor.stop()
            self.processor.join(timeout=10)
            if self.processor.is_alive():
                logger.warning("Processor did not stop cleanly")

        if self.plotter and self.plotter.is_alive():
            self._drain_queue(self.plotter_queue, "plotter")
            self.plotter.stop()
            self.plotter.join(timeout=30)
            if self.plotter.is_alive():
                logger.warning("Plotter did not stop cleanly")

        if self.processor:
            logger.info("Saving results...")
            self.processor.save_results()
            logger.info("Final results: %d objects", len(self.processor.get_results("objects")))
            self.processor.close_database()

        summary = self._summary()
        elapsed = time.time() - self._start_time if self._start_time else 0
        logger.info("=" * 60)
        logger.info("Pipeline stopped. Runtime: %.1f seconds", elapsed)
        logger.info("Files: total=%d, succeeded=%d, failed=%d",
                    summary["inputs"], summary["succeeded"], summary["failed"])

        if self.tracker:
            stats = self.tracker.get_statistics()
            logger.info("Tracker: total=%d, analyzed=%d, plotted=%d, objects=%d",
                        stats.get('total') or 0, stats.get('analyzed') or 0,
                        stats.get('plotted') or 0, stats.get('total_objects') or 0)
            self.tracker.close()

        logger.info("=" * 60)
        return summary

    def _summary(self) -> Dict[str, int]:
        succeeded = self.processor.num_succeeded if self.processor else 0
        return {
            "inputs": self._num_inputs,
            "succeeded": succeeded,
            "failed": self._num_inputs - succeeded,
        }

    def _log_status(self):
        logger.info(
            "Status: P=%s L=%s Q=%d PQ=%d done=%d/%d",
            "alive" if self.processor and self.processor.is_alive() else "stopped",
            "alive" if self.plotter and self.plotter.is_alive() else "stopped",
            self.input_queue.qsize(),
            self.plotter_queue.qsize(),
            self.processor.num_succeeded + self.processor.num_failed if self.processor else 0,
            self._num_inputs,
        )
