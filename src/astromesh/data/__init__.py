"""Typed buffers and their allocation strategies."""

from astromesh.data.allocator import (
    MMAP_DIRNAME,
    AllocationStrategy,
    MmapCounter,
    MmapOnly,
    RamOnly,
    RamWithMmapFallback,
    default_strategy,
)
from astromesh.data.buffer import (
    BLANK_STRING,
    BufferFlag,
    DataBuffer,
    DataType,
    allocate,
    as_buffer,
    as_type,
    blank_value,
    copy,
    copy_as,
    flag_blank,
    is_blank,
)

__all__ = [
    'MMAP_DIRNAME',
    'AllocationStrategy',
    'MmapCounter',
    'MmapOnly',
    'RamOnly',
    'RamWithMmapFallback',
    'default_strategy',
    'BLANK_STRING',
    'BufferFlag',
    'DataBuffer',
    'DataType',
    'allocate',
    'as_buffer',
    'as_type',
    'blank_value',
    'copy',
    'copy_as',
    'flag_blank',
    'is_blank',
]
