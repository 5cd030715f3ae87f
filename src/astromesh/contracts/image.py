"""Load and convolution stage contracts."""

import numpy as np

from astromesh.contracts.base import require
from astromesh.data import DataBuffer


def assert_loaded(image: DataBuffer) -> None:
    """Called right after reading the input HDU."""
    require(
        isinstance(image, DataBuffer),
        f"Load contract violated: input is {type(image)}, expected DataBuffer"
    )
    require(
        image.ndim in (2, 3),
        f"Load contract violated: input has {image.ndim} dims, expected 2 or 3"
    )
    require(image.size > 0, "Load contract violated: input image is empty")


def assert_convolved(image: DataBuffer, convolved: DataBuffer, on_blank: bool = False) -> None:
    """The convolved image matches the input.

    Unless ``on_blank``, blank input pixels must stay blank.
    """
    array = np.asarray(convolved.array)
    require(
        convolved.shape == image.shape,
        f"Convolution contract violated: shape {convolved.shape} != input {image.shape}"
    )
    require(
        array.dtype.kind == "f",
        f"Convolution contract violated: dtype {array.dtype}, expected float"
    )
    if not on_blank and image.has_blank():
        require(
            bool(np.all(np.isnan(array[image.blank_mask()]))),
            "Convolution contract violated: blank input pixels are not blank after convolution"
        )
