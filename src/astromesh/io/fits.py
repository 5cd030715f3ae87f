"""FITS images and tables (astropy.io.fits).

Reading goes through :class:`ImageFile`, which keeps one HDU list open for
the lifetime of a ``with`` block. Writing appends extensions; a new file
starts with an empty primary HDU.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from astropy.io import fits
from astropy.table import Table

from astromesh.data import DataBuffer, allocate, as_buffer, blank_value
from astromesh.errors import MisconfigurationError
from astromesh.io.wcs import WCSHandle

__all__ = ['ImageFile', 'write_image', 'write_table', 'HDU_IMAGE', 'HDU_TABLE', 'HDU_EMPTY']

logger = logging.getLogger(__name__)

HDU_IMAGE = "image"
HDU_TABLE = "table"
HDU_EMPTY = "empty"

KeyValue = Union[Any, Tuple[Any, str]]


class ImageFile:
    """One HDU of an open FITS file.

    Parameters
    ----------
    path : path-like
        FITS file.
    hdul : fits.HDUList
        Open HDU list (closed by :meth:`close`).
    hdu : int, str or None
        Extension number or name; None selects the first HDU holding an
        image.
    subset : sequence of slice, optional
        Region of the image to read.

    Examples
    --------
    >>> with ImageFile.open("image.fits", hdu=1) as handle:
    ...     image = handle.read_image()
    """

    def __init__(self, path, hdul: fits.HDUList, hdu: Optional[Union[int, str]] = 0,
                 subset: Optional[Sequence[slice]] = None):
        self.path = Path(path)
        self._hdul = hdul
        if hdu is None:
            hdu = next((i for i, h in enumerate(hdul)
                        if not isinstance(h, (fits.BinTableHDU, fits.TableHDU))
                        and h.header.get("NAXIS", 0) > 0), 0)
        try:
            self._hdu = hdul[hdu]
        except (KeyError, IndexError) as e:
            hdul.close()
            raise MisconfigurationError(f"{self.path}: no HDU {hdu!r}") from e
        self.hdu = hdu
        self.subset = tuple(subset) if subset is not None else None

    @classmethod
    def open(cls, path, hdu: Optional[Union[int, str]] = 0,
             subset: Optional[Sequence[slice]] = None) -> "ImageFile":
        path = Path(path)
        if not path.exists():
            raise MisconfigurationError(f"Input file not found: {path}")
        # Stored values are read as-is; scaling and BLANK are applied in read_image.
        return cls(path, fits.open(path, memmap=False, do_not_scale_image_data=True),
                   hdu, subset)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        self._hdul.close()

    @property
    def header(self) -> fits.Header:
        return self._hdu.header

    @property
    def hdu_kind(self) -> str:
        if isinstance(self._hdu, (fits.BinTableHDU, fits.TableHDU)):
            return HDU_TABLE
        if self._hdu.header.get("NAXIS", 0) == 0:
            return HDU_EMPTY
        return HDU_IMAGE

    def wcs(self) -> Optional[WCSHandle]:
        return WCSHandle.from_header(self.header)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def read_image(self, name: Optional[str] = None, minmapsize: Optional[int] = None,
                   quietmmap: Optional[bool] = None) -> DataBuffer:
        """Image data as an owning buffer with integer BLANKs translated.

        ``minmapsize`` and ``quietmmap`` set the memory policy of the buffer,
        inherited by every product allocated from it. Without them the image
        stays in RAM.
        """
        if self.hdu_kind != HDU_IMAGE:
            raise MisconfigurationError(
                f"{self.path}[{self.hdu}] is not an image HDU ({self.hdu_kind})"
            )
        data = self._hdu.data
        if self.subset is not None:
            data = data[self.subset]
        array = np.array(data, copy=True)
        if array.dtype.byteorder not in ("=", "|"):
            array = array.astype(array.dtype.newbyteorder("="))

        header = self.header
        blank = None
        if array.dtype.kind in "iu" and "BLANK" in header:
            blank = array == header["BLANK"]
        array = _unscale(array, header.get("BSCALE", 1), header.get("BZERO", 0))
        if blank is not None:
            array[blank] = blank_value(array.dtype)

        buf = allocate(array.dtype, array.shape, minmapsize=minmapsize, quietmmap=quietmmap,
                       name=name or header.get("EXTNAME", self.path.stem),
                       unit=header.get("BUNIT"))
        buf.array[...] = array
        buf.wcs = self.wcs()
        logger.debug("Read %s[%s]: shape=%s, dtype=%s", self.path.name, self.hdu,
                     array.shape, array.dtype)
        return buf

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------
    def read_table_info(self) -> Tuple[List[Dict[str, Optional[str]]], int]:
        """Column descriptions (name, format, unit) and the number of rows."""
        if self.hdu_kind != HDU_TABLE:
            raise MisconfigurationError(f"{self.path}[{self.hdu}] is not a table HDU")
        columns = [{"name": c.name, "format": str(c.format), "unit": c.unit}
                   for c in self._hdu.columns]
        return columns, int(self._hdu.header.get("NAXIS2", 0))

    def read_table(self, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
        if self.hdu_kind != HDU_TABLE:
            raise MisconfigurationError(f"{self.path}[{self.hdu}] is not a table HDU")
        table = Table.read(self._hdu)
        if columns is not None:
            missing = [c for c in columns if c not in table.colnames]
            if missing:
                raise MisconfigurationError(f"Columns not in {self.path}: {missing}")
            table = table[list(columns)]
        return table.to_pandas()


def _unscale(array: np.ndarray, bscale, bzero) -> np.ndarray:
    """Physical values of stored FITS data.

    The two pseudo-integer conventions (unsigned integers stored with
    ``BZERO = 2**(bits-1)`` and signed bytes stored with ``BZERO = -128``)
    keep an integer type; any other scaling gives floats.
    """
    if bscale == 1 and bzero == 0:
        return array
    if bscale == 1 and array.dtype.kind in "iu":
        bits = 8 * array.dtype.itemsize
        sign = 1 << (bits - 1)
        if array.dtype.kind == "i" and bzero == sign:
            unsigned = np.dtype(f"u{array.dtype.itemsize}")
            return array.view(unsigned) ^ unsigned.type(sign)
        if array.dtype == np.uint8 and bzero == -sign:
            return (array ^ np.uint8(sign)).view(np.int8)
    dtype = np.float32 if array.dtype.itemsize <= 2 else np.float64
    return array.astype(dtype) * dtype(bscale) + dtype(bzero)


def _header_value(value):
    # FITS headers cannot hold NaN or inf; they become undefined values.
    if isinstance(value, (float, np.floating)) and not np.isfinite(value):
        return None
    if isinstance(value, np.generic):
        return value.item()
    return value


def _apply_keys(header: fits.Header, keys: Optional[Dict[str, KeyValue]]) -> None:
    for key, value in (keys or {}).items():
        if isinstance(value, tuple):
            value, comment = value
            header[key] = (_header_value(value), comment)
        else:
            header[key] = _header_value(value)


def _append(hdu, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        with fits.open(path, mode="append") as hdul:
            hdul.append(hdu)
    else:
        fits.HDUList([fits.PrimaryHDU(), hdu]).writeto(path)


def write_image(buffer, path, extname: Optional[str] = None,
                keys: Optional[Dict[str, KeyValue]] = None) -> Path:
    """Append ``buffer`` as an image HDU of ``path``.

    Parameters
    ----------
    buffer : DataBuffer or np.ndarray
        Image to write; its WCS and unit go into the header.
    extname : str, optional
        ``EXTNAME`` of the new HDU (defaults to the buffer's name).
    keys : dict, optional
        Extra header keywords, values optionally given as ``(value, comment)``.
    """
    path = Path(path)
    buf = as_buffer(buffer)
    array = np.asarray(buf.array)
    if array.dtype == bool:
        array = array.astype(np.uint8)

    header = fits.Header()
    if buf.wcs is not None:
        header.update(buf.wcs.to_header())
    if array.dtype.kind == "i" and array.dtype.itemsize > 1:
        header["BLANK"] = int(blank_value(array.dtype))
    if buf.unit:
        header["BUNIT"] = buf.unit
    name = extname or buf.name
    if name:
        header["EXTNAME"] = name
    _apply_keys(header, keys)

    _append(fits.ImageHDU(data=array, header=header), path)
    logger.debug("Wrote %s to %s", name, path)
    return path


def _table_ready(df: pd.DataFrame) -> pd.DataFrame:
    """Copy of ``df`` with list-valued columns encoded as JSON strings."""
    out = df.copy()
    for column in out.columns:
        if out[column].dtype == object:
            out[column] = [json.dumps(v) if isinstance(v, (list, tuple)) else str(v)
                           for v in out[column]]
    return out


def write_table(df: pd.DataFrame, path, extname: str,
                keys: Optional[Dict[str, KeyValue]] = None) -> Path:
    """Append ``df`` as a binary table HDU of ``path``."""
    path = Path(path)
    hdu = fits.table_to_hdu(Table.from_pandas(_table_ready(df)))
    hdu.header["EXTNAME"] = extname
    _apply_keys(hdu.header, keys)
    _append(hdu, path)
    logger.debug("Wrote table %s (%d rows) to %s", extname, len(df), path)
    return path
