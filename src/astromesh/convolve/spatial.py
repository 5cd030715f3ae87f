"""Tiled spatial convolution with blank handling and edge correction.

The output pixel ``p`` is ``sum_k image[p - k] * kernel[k]`` over the kernel
support. Blank input pixels blank every output pixel whose support contains
them, unless ``convolve_on_blank`` is set, in which case they are skipped
(and blank pixels are filled from their neighbours). With ``edge_correct``
the partial sum is divided by the weights that actually contributed, scaled
back to the kernel total, so pixels near an edge or a blank are not dimmed.

Tiles are independent jobs of the worker pool. Without
``convolve_over_channels`` a second pass recomputes the tiles touching a
channel border with the support restricted to the tile's channel.
"""

import logging
from types import SimpleNamespace
from typing import Optional, Tuple, Union

import numpy as np
from scipy import ndimage

from astromesh.convolve.device import DeviceBackend, available_backend, convolve_on_device
from astromesh.convolve.kernel import check_kernel_shape
from astromesh.data import DataBuffer, DataType, allocate, as_buffer
from astromesh.errors import MisconfigurationError, ShapeMismatchError
from astromesh.tile import Tessellation
from astromesh.workers import spin_off

__all__ = ['convolve_spatial', 'channel_border_tiles']

logger = logging.getLogger(__name__)


def channel_border_tiles(tess: Tessellation) -> np.ndarray:
    """Tiles touching a channel border that is not an image border."""
    if tess.total_channels == 1:
        return np.zeros(0, dtype=np.int64)
    border = []
    for tile, slices in enumerate(tess.slices):
        for d, s in enumerate(slices):
            size = tess.channel_shape[d]
            inner_start = s.start % size == 0 and s.start != 0
            inner_stop = s.stop % size == 0 and s.stop != tess.image_shape[d]
            if inner_start or inner_stop:
                border.append(tile)
                break
    return np.asarray(border, dtype=np.int64)


def _convolve_region(image: np.ndarray, blank: np.ndarray, kernel: np.ndarray,
                     target: Tuple[slice, ...], bounds: Tuple[slice, ...],
                     edge_correct: bool, on_blank: bool) -> np.ndarray:
    """Convolve the pixels of ``target`` using only input inside ``bounds``."""
    half = [k // 2 for k in kernel.shape]
    region = tuple(slice(max(t.start - h, b.start), min(t.stop + h, b.stop))
                   for t, h, b in zip(target, half, bounds))
    inner = tuple(slice(t.start - r.start, t.stop - r.start) for t, r in zip(target, region))

    values = image[region]
    blanks = blank[region]
    usable = ~blanks
    filled = np.where(usable, values, 0.0)

    result = ndimage.convolve(filled, kernel, mode="constant", cval=0.0)[inner]
    if edge_correct:
        weights = ndimage.convolve(usable.astype(np.float64), kernel, mode="constant", cval=0.0)[inner]
        with np.errstate(divide="ignore", invalid="ignore"):
            result = np.where(weights != 0, result * (kernel.sum() / weights), np.nan)
    if not on_blank and blanks.any():
        support = (kernel != 0).astype(np.float64)
        touched = ndimage.convolve(blanks.astype(np.float64), support, mode="constant", cval=0.0)[inner]
        result = np.where(touched > 0.5, np.nan, result)
    return result


def _convolve_task(tprm):
    ctx = tprm.ctx
    for job in tprm.jobs():
        if tprm.cancelled():
            break
        tile = int(ctx.tiles[job])
        target = ctx.tess.slices[tile]
        bounds = ctx.bounds(tile)
        ctx.out[target] = _convolve_region(ctx.image, ctx.blank, ctx.kernel, target, bounds,
                                           ctx.edge_correct, ctx.on_blank)
    tprm.wait()


def _resolve_backend(backend) -> Optional[DeviceBackend]:
    if backend is None or backend == "cpu":
        return None
    if backend == "auto":
        return available_backend()
    if backend == "gpu":
        found = available_backend()
        if found is None:
            logger.warning("No GPU backend available; convolving on the CPU")
        return found
    if isinstance(backend, DeviceBackend):
        return backend
    raise MisconfigurationError(f"Unknown convolution backend: {backend!r}")


def convolve_spatial(image, kernel, tessellation: Optional[Tessellation] = None,
                     num_threads: int = 1, edge_correct: bool = True,
                     convolve_over_channels: bool = False, convolve_on_blank: bool = False,
                     backend: Union[str, DeviceBackend, None] = "cpu",
                     minmapsize: Optional[int] = None,
                     quietmmap: Optional[bool] = None) -> DataBuffer:
    """Convolve ``image`` with ``kernel``.

    Parameters
    ----------
    image : DataBuffer or array-like
        Input image (any numeric type; blanks honoured).
    kernel : DataBuffer or array-like
        Odd-sized kernel with the image's dimensionality.
    tessellation : Tessellation, optional
        Tiles used as parallel jobs and channels used for border
        correction. Defaults to a single tile over the image.
    num_threads : int
        Workers for the tiled CPU path.
    edge_correct : bool
        Rescale partial supports (image/channel edges, skipped blanks).
    convolve_over_channels : bool
        Let the kernel support cross channel borders.
    convolve_on_blank : bool
        Skip blank inputs instead of blanking the output.
    backend : {'cpu', 'auto', 'gpu'} or DeviceBackend
        Device offload; 2-D images only, otherwise the CPU path is used.
    minmapsize, quietmmap : optional
        Memory policy of the output and the pool; the input's when omitted.

    Returns
    -------
    DataBuffer
        Float output (the input's float type, float32 for integer input),
        allocated with the given memory policy (or the input's).

    Raises
    ------
    ParameterRangeError
        Empty or even-sized kernel.
    ShapeMismatchError
        Kernel dimensionality differs from the image, the tessellation does
        not match the image, or the kernel is larger than a tile while edge
        correction is off.
    """
    image = as_buffer(image, name="input")
    kernel_buf = as_buffer(kernel, name="kernel")
    check_kernel_shape(kernel_buf)
    if kernel_buf.ndim != image.ndim:
        raise ShapeMismatchError(
            f"Kernel has {kernel_buf.ndim} dimensions but the image has {image.ndim}"
        )

    tess = tessellation or Tessellation(image.shape, image.shape)
    if tess.image_shape != image.shape:
        raise ShapeMismatchError(f"Tessellation {tess.image_shape} does not match image {image.shape}")
    if not edge_correct:
        smallest = np.min([tess.tile_shape(t) for t in range(tess.num_tiles)], axis=0)
        if any(k > s for k, s in zip(kernel_buf.shape, smallest)):
            raise ShapeMismatchError(
                f"Kernel {kernel_buf.shape} is larger than the smallest tile {tuple(smallest)} "
                "and edge correction is off"
            )

    out_type = image.dtype if image.dtype in (DataType.FLOAT32, DataType.FLOAT64) else DataType.FLOAT32
    out = allocate(out_type, image.shape, minmapsize=minmapsize, quietmmap=quietmmap,
                   like=image, name="convolved", unit=image.unit)
    minmapsize, quietmmap = out.minmapsize, out.quietmmap
    kernel_values = np.asarray(kernel_buf.array, dtype=np.float64)
    blank = image.blank_mask()
    values = np.asarray(image.array, dtype=np.float64)

    device = _resolve_backend(backend) if image.ndim == 2 else None
    if device is not None:
        channel_shape = None if convolve_over_channels else tess.channel_shape
        source = np.where(blank, np.nan, values)
        out.array[...] = convolve_on_device(device, source, kernel_values, channel_shape,
                                            edge_correct, convolve_on_blank)
        logger.debug("Convolved %s on %s", image.shape, device.name)
        out.mark_changed()
        return out

    full = tuple(slice(0, s) for s in image.shape)
    ctx = SimpleNamespace(
        image=values, blank=blank, kernel=kernel_values, tess=tess, out=out.array,
        edge_correct=edge_correct, on_blank=convolve_on_blank,
        tiles=np.arange(tess.num_tiles), bounds=lambda tile: full,
    )
    spin_off(_convolve_task, ctx, tess.num_tiles, num_threads, minmapsize, quietmmap)

    if not convolve_over_channels:
        border = channel_border_tiles(tess)
        if border.size:
            ctx.tiles = border
            ctx.bounds = lambda tile: tess.channel_slices(int(tess.channel_of[tile]))
            spin_off(_convolve_task, ctx, border.size, num_threads, minmapsize, quietmmap)
            logger.debug("Channel-border correction on %d tiles", border.size)

    out.mark_changed()
    return out
