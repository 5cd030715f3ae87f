"""Worker pool for bulk-synchronous parallel sections."""

from astromesh.workers.pool import (
    BLANK_SIZE,
    ThreadParams,
    distribute_jobs,
    resolve_num_threads,
    spin_off,
)

__all__ = ['BLANK_SIZE', 'ThreadParams', 'distribute_jobs', 'resolve_num_threads', 'spin_off']
