"""Storage allocation with transparent memory-mapped fallback.

Large intermediate buffers (convolved images, label maps, upsampled sky) can
exceed the RAM of a batch node. The allocation strategies in this module try
RAM first and, when RAM is refused or a buffer is larger than ``minmapsize``
bytes, back the buffer with a file under ``./gnuastro_mmap/`` mapped through
:class:`numpy.memmap`. Files are removed when the buffer is freed, when the
last view of the mapping is garbage collected, or at interpreter exit.
"""

import logging
import os
import sys
import tempfile
import threading
import weakref
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from astromesh.errors import ResourceExhaustedError

__all__ = [
    'MMAP_DIRNAME',
    'MmapCounter',
    'AllocationStrategy',
    'RamWithMmapFallback',
    'RamOnly',
    'MmapOnly',
    'default_strategy',
]

logger = logging.getLogger(__name__)

MMAP_DIRNAME = "gnuastro_mmap"
MMAP_HIDDEN_PREFIX = ".gnuastro_mmap_"

_HPC_HINT = (
    "On a cluster node this usually means the job's memory or scratch quota "
    "is exhausted. Request more memory from the scheduler, run from a local "
    "scratch disk with enough free space, or raise/lower 'min_mmap_size' so "
    "large buffers go to disk (or stay in RAM)."
)


class MmapCounter:
    """Thread-safe bookkeeping of memory-mapped files.

    Owned by a strategy, so two pipelines in one process never share a
    counter.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.created = 0
        self.live = 0

    def increment(self) -> int:
        with self._lock:
            self.created += 1
            self.live += 1
            return self.created

    def decrement(self) -> None:
        with self._lock:
            self.live -= 1


def _remove_mmap_file(path: str, counter: MmapCounter, quiet: bool) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    counter.decrement()
    if not quiet:
        logger.info("Deleted memory-mapped file: %s", path)


class AllocationStrategy:
    """Base allocation strategy.

    Parameters
    ----------
    minmapsize : int
        Buffers larger than this many bytes are memory-mapped.
    quietmmap : bool
        If False, every mmap creation/removal is logged.
    directory : Path, optional
        Parent of the ``gnuastro_mmap`` directory, the working directory by
        default.
    """

    def __init__(self, minmapsize: int = sys.maxsize, quietmmap: bool = True,
                 directory: Optional[Path] = None):
        self.minmapsize = minmapsize
        self.quietmmap = quietmmap
        self.directory = Path(directory) if directory is not None else None
        self.counter = MmapCounter()
        self._finalizers = {}
        self._lock = threading.Lock()

    def allocate(self, dtype, shape, clear: bool = False) -> Tuple[np.ndarray, Optional[Path]]:
        """Return ``(array, mmap_path)``; ``mmap_path`` is None for RAM."""
        raise NotImplementedError

    def _ram(self, dtype, shape, clear):
        return np.zeros(shape, dtype=dtype) if clear else np.empty(shape, dtype=dtype)

    def _mmap(self, dtype, shape) -> Tuple[np.ndarray, Path]:
        dtype = np.dtype(dtype)
        nbytes = int(np.prod(shape, dtype=np.int64)) * dtype.itemsize
        base = self.directory if self.directory is not None else Path.cwd()

        try:
            mmap_dir = base / MMAP_DIRNAME
            try:
                mmap_dir.mkdir(exist_ok=True)
                fd, name = tempfile.mkstemp(prefix="mmap_", dir=mmap_dir)
            except OSError:
                fd, name = tempfile.mkstemp(prefix=MMAP_HIDDEN_PREFIX, dir=base)

            # One byte past the end so the file always covers the buffer.
            with os.fdopen(fd, "wb") as f:
                f.seek(nbytes)
                f.write(b"\0")

            array = np.memmap(name, dtype=dtype, mode="r+", shape=tuple(shape))
        except OSError as e:
            raise ResourceExhaustedError(
                f"Could not allocate {nbytes} bytes in RAM or as a memory-mapped "
                f"file under {base}: {e}. {_HPC_HINT}"
            ) from e

        count = self.counter.increment()
        finalizer = weakref.finalize(array, _remove_mmap_file, name,
                                     self.counter, self.quietmmap)
        with self._lock:
            self._finalizers[name] = finalizer

        if not self.quietmmap:
            logger.info("%d bytes memory-mapped to %s (file %d)", nbytes, name, count)
        return array, Path(name)

    def release(self, path: Optional[Path]) -> None:
        """Remove the file behind a memory-mapped buffer.

        The mapping itself is dropped once the last view is collected.
        """
        if path is None:
            return
        with self._lock:
            finalizer = self._finalizers.pop(str(path), None)
        if finalizer is not None:
            finalizer()


class RamWithMmapFallback(AllocationStrategy):
    """RAM first; memory-map when RAM is refused or the buffer is large."""

    def allocate(self, dtype, shape, clear=False):
        nbytes = int(np.prod(shape, dtype=np.int64)) * np.dtype(dtype).itemsize
        if nbytes == 0:
            return self._ram(dtype, shape, clear), None
        if nbytes > self.minmapsize:
            return self._mmap(dtype, shape)
        try:
            return self._ram(dtype, shape, clear), None
        except MemoryError:
            if not self.quietmmap:
                logger.warning("RAM allocation of %d bytes refused, "
                               "falling back to a memory-mapped file", nbytes)
            return self._mmap(dtype, shape)


class RamOnly(AllocationStrategy):
    """Never memory-map; RAM failures propagate as ResourceExhaustedError."""

    def allocate(self, dtype, shape, clear=False):
        try:
            return self._ram(dtype, shape, clear), None
        except MemoryError as e:
            raise ResourceExhaustedError(
                f"Could not allocate array of shape {tuple(shape)} in RAM. {_HPC_HINT}"
            ) from e


class MmapOnly(AllocationStrategy):
    """Always memory-map non-empty buffers."""

    def allocate(self, dtype, shape, clear=False):
        if int(np.prod(shape, dtype=np.int64)) == 0:
            return self._ram(dtype, shape, clear), None
        return self._mmap(dtype, shape)


_default_strategies = {}
_default_lock = threading.Lock()


def default_strategy(minmapsize: int = sys.maxsize, quietmmap: bool = True) -> AllocationStrategy:
    """Shared :class:`RamWithMmapFallback` for a ``(minmapsize, quietmmap)`` pair."""
    key = (minmapsize, quietmmap)
    with _default_lock:
        strategy = _default_strategies.get(key)
        if strategy is None:
            strategy = RamWithMmapFallback(minmapsize=minmapsize, quietmmap=quietmmap)
            _default_strategies[key] = strategy
        return strategy
