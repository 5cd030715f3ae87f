"""Image, table and coordinate I/O."""

from astromesh.io.wcs import WCSHandle
from astromesh.io.fits import HDU_EMPTY, HDU_IMAGE, HDU_TABLE, ImageFile, write_image, write_table
from astromesh.io.table import CatalogStore, sqlite_ready, write_parquet

__all__ = [
    'WCSHandle',
    'ImageFile',
    'write_image',
    'write_table',
    'HDU_IMAGE',
    'HDU_TABLE',
    'HDU_EMPTY',
    'CatalogStore',
    'sqlite_ready',
    'write_parquet',
]
