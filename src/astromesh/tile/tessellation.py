"""Two-layer tessellation of an image into channels and tiles.

Detectors are often read out through several amplifiers ("channels") whose
noise properties differ, so the image is first cut into equal channels and
each channel into tiles of (roughly) the requested size. Every channel gets
the same tile layout. Tiles are enumerated channel by channel (row-major
inside each channel); :attr:`Tessellation.permutation` maps that order to the
row-major position in the full tile grid, which is what smoothing,
interpolation and plotting need.
"""

import logging
from bisect import bisect_right
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.interpolate import RegularGridInterpolator

from astromesh.data import DataBuffer, allocate, as_buffer
from astromesh.errors import MisconfigurationError, ParameterRangeError, ShapeMismatchError

__all__ = ['Tessellation', 'tile_boundaries']

logger = logging.getLogger(__name__)


def tile_boundaries(length: int, tile: int, remainder_frac: float) -> List[Tuple[int, int]]:
    """Split ``[0, length)`` into tiles of size ``tile``.

    A final incomplete tile whose size is below ``remainder_frac`` of the
    tile size is merged into its predecessor; otherwise it is kept.

    Examples
    --------
    >>> tile_boundaries(10, 4, 0.5)
    [(0, 4), (4, 8), (8, 10)]
    >>> tile_boundaries(9, 4, 0.5)
    [(0, 4), (4, 9)]
    """
    if tile >= length:
        return [(0, length)]
    n_full, rem = divmod(length, tile)
    bounds = [(i * tile, (i + 1) * tile) for i in range(n_full)]
    if rem:
        if rem / tile < remainder_frac:
            bounds[-1] = (bounds[-1][0], length)
        else:
            bounds.append((n_full * tile, length))
    return bounds


class Tessellation:
    """Channels and tiles covering an image.

    Parameters
    ----------
    image_shape : sequence of int
        Size of the image along each axis (numpy order).
    tile_size : sequence of int
        Requested tile size per axis.
    num_channels : sequence of int
        Number of channels per axis; must divide the image size.
    remainder_frac : float
        Fraction in ``(0, 1]`` deciding whether a trailing partial tile is
        merged into its neighbour.
    work_over_channels : bool
        If True, neighbour relations (interpolation, smoothing) ignore
        channel borders.

    Raises
    ------
    MisconfigurationError
        If channels do not divide the image or dimensions disagree.
    ParameterRangeError
        If a tile size, channel count or ``remainder_frac`` is out of range.
    """

    def __init__(self, image_shape: Sequence[int], tile_size: Sequence[int],
                 num_channels: Optional[Sequence[int]] = None,
                 remainder_frac: float = 0.1, work_over_channels: bool = False):
        image_shape = tuple(int(s) for s in image_shape)
        ndim = len(image_shape)
        tile_size = self._per_axis(tile_size, ndim, "tile_size")
        num_channels = self._per_axis(num_channels if num_channels is not None else 1,
                                      ndim, "num_channels")

        if any(t < 1 for t in tile_size):
            raise ParameterRangeError(f"Tile sizes must be positive, got {tile_size}")
        if any(c < 1 for c in num_channels):
            raise ParameterRangeError(f"Channel counts must be positive, got {num_channels}")
        if not 0 < remainder_frac <= 1:
            raise ParameterRangeError(f"remainder_frac must be in (0, 1], got {remainder_frac}")
        for d, (size, nch) in enumerate(zip(image_shape, num_channels)):
            if size % nch:
                raise MisconfigurationError(
                    f"{nch} channels do not divide axis {d} of length {size}"
                )

        self.image_shape = image_shape
        self.ndim = ndim
        self.tile_size = tile_size
        self.num_channels = num_channels
        self.remainder_frac = remainder_frac
        self.work_over_channels = work_over_channels
        self.channel_shape = tuple(s // c for s, c in zip(image_shape, num_channels))

        self._axis_bounds = [
            tile_boundaries(self.channel_shape[d], tile_size[d], remainder_frac)
            for d in range(ndim)
        ]
        self._axis_starts = [[b[0] for b in bounds] for bounds in self._axis_bounds]
        self.tiles_per_channel = tuple(len(b) for b in self._axis_bounds)
        self.grid_shape = tuple(c * t for c, t in zip(num_channels, self.tiles_per_channel))

        self._build()
        logger.debug("Tessellation: image=%s, channels=%s, tiles/channel=%s, tiles=%d",
                     image_shape, num_channels, self.tiles_per_channel, self.num_tiles)

    @staticmethod
    def _per_axis(value, ndim, name) -> Tuple[int, ...]:
        if np.isscalar(value):
            return (int(value),) * ndim
        value = tuple(int(v) for v in value)
        if len(value) != ndim:
            raise MisconfigurationError(
                f"{name} has {len(value)} values but the image has {ndim} dimensions"
            )
        return value

    def _build(self):
        per_channel = int(np.prod(self.tiles_per_channel))
        num_channels = int(np.prod(self.num_channels))
        num_tiles = per_channel * num_channels

        self.slices: List[Tuple[slice, ...]] = []
        self.grid_coords = np.empty((num_tiles, self.ndim), dtype=np.int64)
        self.channel_of = np.empty(num_tiles, dtype=np.int64)
        self.first_tile = np.arange(num_channels, dtype=np.int64) * per_channel

        tile_id = 0
        for c_index, channel in enumerate(np.ndindex(*self.num_channels)):
            origin = [channel[d] * self.channel_shape[d] for d in range(self.ndim)]
            for local in np.ndindex(*self.tiles_per_channel):
                self.slices.append(tuple(
                    slice(origin[d] + self._axis_bounds[d][local[d]][0],
                          origin[d] + self._axis_bounds[d][local[d]][1])
                    for d in range(self.ndim)
                ))
                self.grid_coords[tile_id] = [
                    channel[d] * self.tiles_per_channel[d] + local[d] for d in range(self.ndim)
                ]
                self.channel_of[tile_id] = c_index
                tile_id += 1

        self.permutation = np.ravel_multi_index(tuple(self.grid_coords.T), self.grid_shape)
        self.inverse_permutation = np.empty_like(self.permutation)
        self.inverse_permutation[self.permutation] = np.arange(num_tiles)

    # ------------------------------------------------------------------
    # Basic geometry
    # ------------------------------------------------------------------
    @property
    def num_tiles(self) -> int:
        return len(self.slices)

    @property
    def total_channels(self) -> int:
        return int(np.prod(self.num_channels))

    def channel_slices(self, channel: int) -> Tuple[slice, ...]:
        """Pixel slices of one channel."""
        index = np.unravel_index(channel, self.num_channels)
        return tuple(slice(int(i) * s, (int(i) + 1) * s) for i, s in zip(index, self.channel_shape))

    def channel_grid_slices(self, channel: int) -> Tuple[slice, ...]:
        """Slices of one channel inside the full tile grid."""
        index = np.unravel_index(channel, self.num_channels)
        return tuple(slice(int(i) * t, (int(i) + 1) * t) for i, t in zip(index, self.tiles_per_channel))

    def tile_shape(self, tile: int) -> Tuple[int, ...]:
        return tuple(s.stop - s.start for s in self.slices[tile])

    def tile_center(self, tile: int) -> Tuple[float, ...]:
        return tuple((s.start + s.stop - 1) / 2 for s in self.slices[tile])

    def tiles_of(self, image) -> List[DataBuffer]:
        """Tile views of ``image``; each view's ``block`` is the image."""
        image = as_buffer(image)
        if image.shape != self.image_shape:
            raise ShapeMismatchError(
                f"Image shape {image.shape} does not match tessellation {self.image_shape}"
            )
        return [image.view(s) for s in self.slices]

    def tile_id_from_coord(self, coord: Sequence[int]) -> int:
        """Index of the tile containing pixel ``coord``."""
        channel_index, local = [], []
        for d, c in enumerate(coord):
            if not 0 <= c < self.image_shape[d]:
                raise ShapeMismatchError(f"Coordinate {tuple(coord)} outside image {self.image_shape}")
            ch, offset = divmod(int(c), self.channel_shape[d])
            channel_index.append(ch)
            local.append(bisect_right(self._axis_starts[d], offset) - 1)
        channel = int(np.ravel_multi_index(channel_index, self.num_channels))
        return int(self.first_tile[channel]
                   + np.ravel_multi_index(local, self.tiles_per_channel))

    def channel_of_tile(self, tile: int) -> int:
        return int(self.channel_of[tile])

    def tile_neighbours(self, tile: int, include_diag: bool = False) -> List[int]:
        """Indices of the 2*ndim (or 3**ndim - 1) tiles around ``tile``.

        Tiles of other channels are dropped unless ``work_over_channels``.
        """
        here = self.grid_coords[tile]
        neighbours = []
        for offset in np.ndindex(*(3,) * self.ndim):
            step = np.asarray(offset) - 1
            moved = np.count_nonzero(step)
            if moved == 0 or (not include_diag and moved > 1):
                continue
            target = here + step
            if np.any(target < 0) or np.any(target >= self.grid_shape):
                continue
            other = int(self.inverse_permutation[np.ravel_multi_index(tuple(target), self.grid_shape)])
            if not self.work_over_channels and self.channel_of[other] != self.channel_of[tile]:
                continue
            neighbours.append(other)
        return neighbours

    # ------------------------------------------------------------------
    # Tile planes
    # ------------------------------------------------------------------
    def plane_to_grid(self, values: np.ndarray) -> np.ndarray:
        """Reorder a per-tile plane (tile order) into the spatial tile grid."""
        values = np.asarray(values)
        grid = np.empty(self.num_tiles, dtype=values.dtype)
        grid[self.permutation] = values
        return grid.reshape(self.grid_shape)

    def grid_to_plane(self, grid: np.ndarray) -> np.ndarray:
        """Inverse of :meth:`plane_to_grid`."""
        return np.asarray(grid).reshape(-1)[self.permutation]

    def full_values_write(self, values, respect_blank: bool = False, input=None,
                          bilinear: bool = False, dtype=np.float32,
                          minmapsize: Optional[int] = None,
                          quietmmap: Optional[bool] = None) -> DataBuffer:
        """Expand one value per tile into an image-sized buffer.

        Parameters
        ----------
        values : array-like
            One value per tile in tile order (NaN for blank tiles).
        respect_blank : bool
            If True, pixels blank in ``input`` stay blank in the output.
        input : DataBuffer, optional
            The image the tiles were built on (memory policy, WCS, blanks).
        bilinear : bool
            Interpolate linearly between tile centres instead of writing
            constant blocks.
        minmapsize, quietmmap : optional
            Memory policy of the output; inherited from ``input`` when omitted.
        """
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (self.num_tiles,):
            raise ShapeMismatchError(f"Expected {self.num_tiles} tile values, got {values.shape}")

        like = as_buffer(input) if input is not None else None
        out = allocate(dtype, self.image_shape, minmapsize=minmapsize, quietmmap=quietmmap,
                       like=like)

        if bilinear:
            self._write_bilinear(values, out.array)
        else:
            for value, s in zip(values, self.slices):
                out.array[s] = value

        if respect_blank and input is not None:
            blanks = as_buffer(input).blank_mask()
            if blanks.any():
                out.array[blanks] = np.nan
        out.mark_changed()
        return out

    def _write_bilinear(self, values: np.ndarray, out: np.ndarray) -> None:
        grid = self.plane_to_grid(values)
        centres = []
        for d in range(self.ndim):
            per_channel = np.array([(a + b - 1) / 2 for a, b in self._axis_bounds[d]])
            centres.append(np.concatenate([
                per_channel + c * self.channel_shape[d] for c in range(self.num_channels[d])
            ]))

        if self.work_over_channels:
            regions = [(tuple(slice(0, s) for s in self.image_shape),
                        tuple(slice(0, g) for g in self.grid_shape))]
        else:
            regions = [(self.channel_slices(c), self.channel_grid_slices(c))
                       for c in range(self.total_channels)]

        for pixel_slices, grid_slices in regions:
            sub = grid[grid_slices]
            axes = [centres[d][grid_slices[d]] for d in range(self.ndim)]
            pixels = [np.arange(pixel_slices[d].start, pixel_slices[d].stop, dtype=np.float64)
                      for d in range(self.ndim)]

            # Axes with a single tile are constant along that axis.
            varying = [d for d in range(self.ndim) if len(axes[d]) > 1]
            if not varying:
                out[pixel_slices] = sub.reshape(-1)[0]
                continue
            index = tuple(slice(None) if d in varying else 0 for d in range(self.ndim))
            interp = RegularGridInterpolator([axes[d] for d in varying], sub[index],
                                             method="linear", bounds_error=False,
                                             fill_value=None)
            clamped = [np.clip(pixels[d], axes[d][0], axes[d][-1]) for d in varying]
            mesh = np.meshgrid(*clamped, indexing="ij")
            points = np.stack([m.ravel() for m in mesh], axis=-1)
            result = interp(points).reshape([len(pixels[d]) for d in varying])
            shape = [len(pixels[d]) if d in varying else 1 for d in range(self.ndim)]
            out[pixel_slices] = np.broadcast_to(result.reshape(shape),
                                                tuple(len(p) for p in pixels))
