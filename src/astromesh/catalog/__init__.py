"""Object and clump catalogs."""

from astromesh.catalog.columns import (
    ellipse_axes,
    finalize,
    magnitude,
    magnitude_error,
    position_angle,
    signal_to_noise,
)
from astromesh.catalog.upperlimit import UpperLimit, upper_limit
from astromesh.catalog.measure import Catalog, CatalogBuilder, RowCounter, first_pass, second_pass

__all__ = [
    'ellipse_axes',
    'finalize',
    'magnitude',
    'magnitude_error',
    'position_angle',
    'signal_to_noise',
    'UpperLimit',
    'upper_limit',
    'Catalog',
    'CatalogBuilder',
    'RowCounter',
    'first_pass',
    'second_pass',
]
