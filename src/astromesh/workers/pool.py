"""Bulk-synchronous worker pool.

A parallel section is one call to :func:`spin_off`: the job range
``[0, num_jobs)`` is cut into contiguous shards, one per thread, and every
thread runs ``task_fn(tprm)`` on its shard. The dispatcher joins the section
on a barrier shared with the workers, then inspects the per-thread status
slots. There is no locking on the hot path: tasks write into output slots
that are disjoint by job index.

Example::

    def task(tprm):
        for tile in tprm.jobs():
            values[tile] = reduce(tprm.ctx.tiles[tile])
        tprm.wait()

    spin_off(task, ctx, num_jobs=len(ctx.tiles), num_threads=4)
"""

import logging
import os
import sys
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np

from astromesh.data import DataBuffer, DataType, allocate
from astromesh.errors import ParameterRangeError, WorkerError

__all__ = ['BLANK_SIZE', 'ThreadParams', 'distribute_jobs', 'spin_off', 'resolve_num_threads']

logger = logging.getLogger(__name__)

# Shard terminator (largest size_t).
BLANK_SIZE = np.uint64(np.iinfo(np.uint64).max)


def resolve_num_threads(num_threads: Optional[int]) -> int:
    """Thread count to use; 0 or None means one per available CPU."""
    if not num_threads:
        return max(len(os.sched_getaffinity(0)) if hasattr(os, "sched_getaffinity")
                   else (os.cpu_count() or 1), 1)
    if num_threads < 0:
        raise ParameterRangeError(f"Number of threads must be positive, got {num_threads}")
    return int(num_threads)


def distribute_jobs(num_jobs: int, num_threads: int, minmapsize: int = sys.maxsize,
                    quietmmap: bool = True) -> Tuple[DataBuffer, int]:
    """Contiguous shards of ``[0, num_jobs)``.

    Returns
    -------
    shards : DataBuffer
        ``uint64`` buffer of shape ``(active, width)``; row ``t`` holds the
        job indices of thread ``t`` in ascending order, padded with
        :data:`BLANK_SIZE`.
    active : int
        Number of threads that received at least one job.
    """
    if num_threads < 1:
        raise ParameterRangeError(f"Number of threads must be positive, got {num_threads}")
    width = -(-num_jobs // num_threads) if num_jobs else 1
    active = -(-num_jobs // width) if num_jobs else 0

    shards = allocate(DataType.UINT64, (max(active, 1), width + 1),
                      minmapsize=minmapsize, quietmmap=quietmmap, name="shards")
    shards.array[...] = BLANK_SIZE
    for t in range(active):
        start, stop = t * width, min((t + 1) * width, num_jobs)
        shards.array[t, :stop - start] = np.arange(start, stop, dtype=np.uint64)
    return shards, active


class ThreadParams:
    """Everything a task sees: its shard, the shared context and its slots.

    Attributes
    ----------
    id : int
        Thread index inside the parallel section.
    shard : np.ndarray
        Job indices terminated by :data:`BLANK_SIZE`.
    ctx : Any
        Caller-supplied shared context (read-only by convention).
    scratch : dict
        Per-thread scratch space kept for the duration of the section.
    """

    def __init__(self, id: int, shard: np.ndarray, ctx: Any,
                 barrier: Optional[threading.Barrier], status: List,
                 cancel_event: Optional[threading.Event] = None):
        self.id = id
        self.shard = shard
        self.ctx = ctx
        self.barrier = barrier
        self.scratch: Dict[str, Any] = {}
        self._status = status
        self._cancel_event = cancel_event
        self._waited = False

    def jobs(self) -> Iterator[int]:
        """Job indices of this shard, in ascending order."""
        for job in self.shard:
            if job == BLANK_SIZE:
                return
            yield int(job)

    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    @property
    def status(self):
        return self._status[self.id]

    def fail(self, error) -> None:
        """Record a failure in this thread's status slot."""
        if self._status[self.id] is None:
            self._status[self.id] = error

    def wait(self) -> None:
        """Wait on the section barrier (only the first call blocks)."""
        if self._waited or self.barrier is None:
            return
        self._waited = True
        self.barrier.wait()


def _run_task(task_fn: Callable[[ThreadParams], None], tprm: ThreadParams) -> None:
    try:
        task_fn(tprm)
    except Exception as e:
        logger.debug("Worker %d failed: %s", tprm.id, e)
        tprm.fail(e)
    finally:
        tprm.wait()


def spin_off(task_fn: Callable[[ThreadParams], None], ctx: Any, num_jobs: int,
             num_threads: int, minmapsize: int = sys.maxsize, quietmmap: bool = True,
             cancel_event: Optional[threading.Event] = None) -> None:
    """Run ``task_fn`` over ``[0, num_jobs)`` on ``num_threads`` threads.

    Parameters
    ----------
    task_fn : callable
        Called once per thread with a :class:`ThreadParams`. It should iterate
        over ``tprm.jobs()`` and call ``tprm.wait()`` before returning (the
        pool calls it too if the task did not).
    ctx : object
        Shared context handed to every thread.
    num_jobs : int
        Number of jobs.
    num_threads : int
        Requested threads (0 means one per CPU). With one active thread the
        task runs in the calling thread without a barrier.
    minmapsize, quietmmap
        Memory policy for the shard index buffer.
    cancel_event : threading.Event, optional
        Exposed to tasks through ``tprm.cancelled()``.

    Raises
    ------
    WorkerError
        If any status slot recorded a failure; the first one is chained.
    """
    if num_jobs <= 0:
        return
    num_threads = resolve_num_threads(num_threads)
    shards, active = distribute_jobs(num_jobs, num_threads, minmapsize, quietmmap)
    status: List = [None] * active

    try:
        if active == 1:
            _run_task(task_fn, ThreadParams(0, shards.array[0], ctx, None, status, cancel_event))
        else:
            barrier = threading.Barrier(active + 1)
            threads = []
            for t in range(active):
                tprm = ThreadParams(t, shards.array[t], ctx, barrier, status, cancel_event)
                thread = threading.Thread(target=_run_task, args=(task_fn, tprm),
                                          name=f"astromesh-worker-{t}", daemon=True)
                thread.start()
                threads.append(thread)
            barrier.wait()
            for thread in threads:
                thread.join()
    finally:
        shards.free()

    failures = [s for s in status if s is not None]
    if failures:
        first = failures[0]
        error = WorkerError(f"{len(failures)} of {active} workers failed: {first}", failures)
        if isinstance(first, BaseException):
            raise error from first
        raise error
