"""Channel/tile tessellation of images."""

from astromesh.tile.tessellation import Tessellation, tile_boundaries

__all__ = ['Tessellation', 'tile_boundaries']
