"""Typed n-dimensional buffers.

A :class:`DataBuffer` couples a numpy array with the metadata every stage of
the pipeline needs: the element type tag, blank handling, units/comments for
output, an optional WCS, and display hints for tables. A buffer either owns
its storage (heap array or memory-mapped file) or is a *tile view* into a
parent ``block``; views never release storage.

Blank (missing) values use per-type sentinels: the maximum for unsigned
integers, the minimum for signed integers, NaN for floating point and
complex, and ``"n/a"`` for strings.
"""

import logging
import sys
from enum import Enum, IntFlag
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from astromesh.data.allocator import AllocationStrategy, default_strategy
from astromesh.errors import MisconfigurationError

__all__ = [
    'DataType',
    'BufferFlag',
    'DataBuffer',
    'BLANK_STRING',
    'blank_value',
    'is_blank',
    'flag_blank',
    'allocate',
    'copy',
    'copy_as',
    'as_buffer',
    'as_type',
]

logger = logging.getLogger(__name__)

BLANK_STRING = "n/a"


class DataType(str, Enum):
    """Element type tag of a buffer."""
    UINT8 = "uint8"
    INT8 = "int8"
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    UINT64 = "uint64"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    COMPLEX64 = "complex64"
    COMPLEX128 = "complex128"
    STRING = "string"
    BIT = "bit"

    @property
    def numpy(self) -> np.dtype:
        if self is DataType.STRING:
            return np.dtype(object)
        if self is DataType.BIT:
            return np.dtype(np.bool_)
        return np.dtype(self.value)

    @property
    def is_integer(self) -> bool:
        return self.numpy.kind in "iu" and self is not DataType.BIT

    @property
    def is_float(self) -> bool:
        return self.numpy.kind in "fc"

    @classmethod
    def from_numpy(cls, dtype) -> "DataType":
        dtype = np.dtype(dtype)
        if dtype.kind in "OUS":
            return cls.STRING
        if dtype.kind == "b":
            return cls.BIT
        try:
            return cls(dtype.name)
        except ValueError as e:
            raise MisconfigurationError(f"Unsupported array type: {dtype}") from e


class BufferFlag(IntFlag):
    """State bits kept on a buffer (cleared when its contents change)."""
    BLANK_CHECKED = 0x1
    HAS_BLANK = 0x2
    SORTED_INCREASING = 0x4
    SORTED_DECREASING = 0x8
    BLANK_IS_ZERO = 0x10


def as_type(dtype) -> DataType:
    """Normalize a type tag, type name or numpy dtype to :class:`DataType`."""
    if isinstance(dtype, DataType):
        return dtype
    if isinstance(dtype, str):
        try:
            return DataType(dtype)
        except ValueError:
            pass
    return DataType.from_numpy(dtype)


def blank_value(dtype):
    """Blank sentinel for a type tag (or numpy dtype)."""
    dtype = as_type(dtype)
    if dtype is DataType.STRING:
        return BLANK_STRING
    if dtype is DataType.BIT:
        raise MisconfigurationError("Bit buffers have no blank value")
    np_type = dtype.numpy
    if np_type.kind == "u":
        return np_type.type(np.iinfo(np_type).max)
    if np_type.kind == "i":
        return np_type.type(np.iinfo(np_type).min)
    if np_type.kind == "c":
        return np_type.type(complex(np.nan, np.nan))
    return np_type.type(np.nan)


def is_blank(value, dtype) -> bool:
    """True if ``value`` is the blank of ``dtype``; floats compare by self-inequality."""
    dtype = as_type(dtype)
    if dtype is DataType.STRING:
        return value == BLANK_STRING
    if dtype is DataType.BIT:
        return False
    if dtype.is_float:
        return value != value
    return value == blank_value(dtype)


def _blank_mask(array: np.ndarray, dtype: "DataType") -> np.ndarray:
    if dtype is DataType.STRING:
        return array == BLANK_STRING
    if dtype is DataType.BIT:
        return np.zeros(array.shape, dtype=bool)
    if dtype.is_float:
        return np.isnan(array)
    return array == blank_value(dtype)


class DataBuffer:
    """Typed n-dimensional buffer, possibly a tile view into a larger block.

    Parameters
    ----------
    array : np.ndarray
        Storage (heap array, ``numpy.memmap`` or a view of a parent's array).
    dtype : DataType, optional
        Type tag, inferred from ``array`` when omitted.
    block : DataBuffer, optional
        Parent buffer when this is a tile view. A buffer with a block does
        not own its storage.
    slices : tuple of slice, optional
        Offset/stride descriptor of the view inside ``block``.
    mmap_path : Path, optional
        Backing file when the storage is memory-mapped.
    strategy : AllocationStrategy, optional
        Strategy that created the storage (used to release it).
    """

    def __init__(self, array: np.ndarray, dtype: Optional[DataType] = None,
                 name: Optional[str] = None, unit: Optional[str] = None,
                 comment: Optional[str] = None, wcs=None,
                 block: Optional["DataBuffer"] = None,
                 slices: Optional[Tuple[slice, ...]] = None,
                 mmap_path: Optional[Path] = None,
                 strategy: Optional[AllocationStrategy] = None,
                 minmapsize: int = sys.maxsize, quietmmap: bool = True):
        self.array = array
        self.dtype = as_type(dtype) if dtype is not None else DataType.from_numpy(array.dtype)
        self.name = name
        self.unit = unit
        self.comment = comment
        self.wcs = wcs
        self.block = block
        self.slices = slices
        self.mmap_path = mmap_path
        self.strategy = strategy
        self.minmapsize = minmapsize
        self.quietmmap = quietmmap
        self.flag = BufferFlag(0)
        self.disp_width = -1
        self.disp_precision = -1
        self.disp_fmt = None
        self.next: Optional["DataBuffer"] = None

    def __repr__(self):
        kind = "view" if self.block is not None else "owner"
        return f"DataBuffer(name={self.name!r}, dtype={self.dtype.value}, shape={self.shape}, {kind})"

    @property
    def ndim(self) -> int:
        return self.array.ndim

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.array.shape)

    @property
    def size(self) -> int:
        return int(self.array.size)

    @property
    def owns_storage(self) -> bool:
        return self.block is None and self.array is not None

    @property
    def is_mmapped(self) -> bool:
        return self.mmap_path is not None

    # ------------------------------------------------------------------
    # Blank handling
    # ------------------------------------------------------------------
    def has_blank(self) -> bool:
        """Whether any element is blank; cached in the flags once checked."""
        if self.flag & BufferFlag.BLANK_CHECKED:
            return bool(self.flag & BufferFlag.HAS_BLANK)
        found = bool(_blank_mask(self.array, self.dtype).any())
        self.flag |= BufferFlag.BLANK_CHECKED
        if found:
            self.flag |= BufferFlag.HAS_BLANK
        else:
            self.flag &= ~BufferFlag.HAS_BLANK
        return found

    def blank_mask(self) -> np.ndarray:
        """Boolean mask of blank elements."""
        if self.flag & BufferFlag.BLANK_CHECKED and not self.flag & BufferFlag.HAS_BLANK:
            return np.zeros(self.shape, dtype=bool)
        return _blank_mask(self.array, self.dtype)

    def mark_changed(self) -> None:
        """Forget sorted/blank state after the contents were modified."""
        self.flag &= ~(BufferFlag.BLANK_CHECKED | BufferFlag.HAS_BLANK
                       | BufferFlag.SORTED_INCREASING | BufferFlag.SORTED_DECREASING)

    # ------------------------------------------------------------------
    # Views and chaining
    # ------------------------------------------------------------------
    def view(self, slices: Tuple[slice, ...], name: Optional[str] = None) -> "DataBuffer":
        """Tile view of ``slices`` (relative to the outermost block)."""
        root = self.block if self.block is not None else self
        return DataBuffer(root.array[slices], dtype=root.dtype, name=name or root.name,
                          unit=root.unit, wcs=root.wcs, block=root, slices=tuple(slices),
                          minmapsize=root.minmapsize, quietmmap=root.quietmmap)

    def iter_chain(self):
        """Iterate over this buffer and the ones chained through ``next``."""
        node = self
        while node is not None:
            yield node
            node = node.next

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------
    def free(self) -> None:
        """Release owned storage; a no-op for tile views."""
        if self.block is not None or self.array is None:
            return
        if self.mmap_path is not None and self.strategy is not None:
            if isinstance(self.array, np.memmap):
                self.array.flush()
            self.strategy.release(self.mmap_path)
        self.array = None
        self.mmap_path = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.free()
        return False


def allocate(dtype, shape, clear: bool = False, minmapsize: Optional[int] = None,
             quietmmap: Optional[bool] = None, strategy: Optional[AllocationStrategy] = None,
             name: Optional[str] = None, unit: Optional[str] = None,
             like: Optional[DataBuffer] = None) -> DataBuffer:
    """Allocate a new owning buffer.

    When ``like`` is given its WCS is copied, and so are its ``minmapsize``,
    ``quietmmap`` and strategy unless given here, so derived products follow
    the input's memory policy. Without either, buffers stay in RAM.
    """
    dtype = as_type(dtype)
    wcs = None
    if like is not None:
        wcs = like.wcs
        if strategy is None and minmapsize is None and quietmmap is None:
            strategy = like.strategy
        if minmapsize is None:
            minmapsize = like.minmapsize
        if quietmmap is None:
            quietmmap = like.quietmmap
    minmapsize = sys.maxsize if minmapsize is None else minmapsize
    quietmmap = True if quietmmap is None else quietmmap
    if strategy is None:
        strategy = default_strategy(minmapsize, quietmmap)

    shape = tuple(int(s) for s in np.atleast_1d(shape))
    if dtype is DataType.STRING:
        array = np.full(shape, BLANK_STRING if clear else "", dtype=object)
        path = None
    else:
        array, path = strategy.allocate(dtype.numpy, shape, clear=clear)

    out = DataBuffer(array, dtype=dtype, name=name, unit=unit, wcs=wcs,
                     mmap_path=path, strategy=strategy,
                     minmapsize=minmapsize, quietmmap=quietmmap)
    return out


def as_buffer(data, name: Optional[str] = None) -> DataBuffer:
    """Wrap a numpy array (or return an existing buffer unchanged)."""
    if isinstance(data, DataBuffer):
        return data
    return DataBuffer(np.asarray(data), name=name)


def copy(src: DataBuffer) -> DataBuffer:
    """Fresh contiguous buffer with the same type, shape and metadata.

    For a tile view only the tile's pixels are copied.
    """
    out = allocate(src.dtype, src.shape, like=src, name=src.name, unit=src.unit)
    out.array[...] = src.array
    out.comment = src.comment
    out.flag = src.flag
    out.disp_width, out.disp_precision, out.disp_fmt = src.disp_width, src.disp_precision, src.disp_fmt
    return out


def copy_as(src: DataBuffer, dtype) -> DataBuffer:
    """Copy ``src`` converting to ``dtype``; blanks map to the target's blank."""
    dtype = as_type(dtype)
    if dtype is src.dtype:
        return copy(src)

    blanks = src.blank_mask()
    out = allocate(dtype, src.shape, like=src, name=src.name, unit=src.unit)
    out.comment = src.comment

    if dtype is DataType.STRING:
        out.array[...] = np.where(blanks, BLANK_STRING, src.array.astype(str)).astype(object)
    else:
        values = src.array
        if src.dtype is DataType.STRING:
            values = np.where(blanks, "0", values).astype(np.float64)
        elif dtype.is_integer and src.dtype.is_float:
            values = np.where(blanks, 0, values)
        out.array[...] = np.asarray(values).astype(dtype.numpy, casting="unsafe")
        if dtype is not DataType.BIT and blanks.any():
            out.array[blanks] = blank_value(dtype)

    if blanks.any():
        out.flag = BufferFlag.BLANK_CHECKED | BufferFlag.HAS_BLANK
    else:
        out.flag = BufferFlag.BLANK_CHECKED
    return out


def flag_blank(buf) -> np.ndarray:
    """``uint8`` mask with 1 on blank elements."""
    return as_buffer(buf).blank_mask().astype(np.uint8)
