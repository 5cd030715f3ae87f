"""Tile-plane (mesh) estimation engine."""

from astromesh.mesh.engine import (
    MeshEngine,
    MeshPlane,
    clipped_mean,
    clipped_mean_std,
    clipped_std,
    quantile_of,
)

__all__ = ['MeshEngine', 'MeshPlane', 'clipped_mean', 'clipped_mean_std', 'clipped_std', 'quantile_of']
