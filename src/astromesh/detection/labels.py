"""Binary-map morphology and label bookkeeping shared by detection and segmentation."""

import logging
from typing import Optional

import numpy as np
from scipy import ndimage
from skimage.measure import label
from skimage.morphology import footprint_rectangle

logger = logging.getLogger(__name__)

__all__ = [
    'full_footprint',
    'cross_footprint',
    'erode',
    'dilate',
    'open_binary',
    'label_binary',
    'filter_and_relabel',
    'relabel_by_size',
]


def full_footprint(ndim: int) -> np.ndarray:
    """All ``3**ndim`` neighbours (8-connectivity in 2-D)."""
    return footprint_rectangle((3,) * ndim).astype(bool)


def cross_footprint(ndim: int) -> np.ndarray:
    """Face neighbours only (4-connectivity in 2-D)."""
    return ndimage.generate_binary_structure(ndim, 1)


def erode(mask: np.ndarray, iterations: int, footprint: Optional[np.ndarray] = None) -> np.ndarray:
    """Binary erosion; pixels outside the image count as set."""
    if iterations <= 0:
        return mask.astype(bool, copy=True)
    footprint = full_footprint(mask.ndim) if footprint is None else footprint
    return ndimage.binary_erosion(mask, structure=footprint, iterations=iterations, border_value=1)


def dilate(mask: np.ndarray, iterations: int, footprint: Optional[np.ndarray] = None) -> np.ndarray:
    if iterations <= 0:
        return mask.astype(bool, copy=True)
    footprint = full_footprint(mask.ndim) if footprint is None else footprint
    return ndimage.binary_dilation(mask, structure=footprint, iterations=iterations)


def open_binary(mask: np.ndarray, depth: int) -> np.ndarray:
    """Opening of the given depth with face connectivity."""
    if depth <= 0:
        return mask.astype(bool, copy=True)
    footprint = cross_footprint(mask.ndim)
    return dilate(erode(mask, depth, footprint), depth, footprint)


def label_binary(mask: np.ndarray, connectivity: Optional[int] = None) -> np.ndarray:
    """Connected components (full connectivity by default)."""
    connectivity = mask.ndim if connectivity is None else connectivity
    return label(mask, connectivity=connectivity).astype(np.int32)


def filter_and_relabel(labels: np.ndarray, min_size: int = 1,
                       max_size: Optional[int] = None) -> np.ndarray:
    """Drop labels outside ``[min_size, max_size]`` and renumber by size."""
    labels_unique, counts = np.unique(labels, return_counts=True)
    keep_mask = labels_unique > 0

    if min_size > 1:
        keep_mask &= (counts >= min_size)
        num_small = np.sum((labels_unique > 0) & (counts < min_size))
        if num_small > 0:
            logger.debug("Removed %d small (< %d)", num_small, min_size)
    if max_size is not None:
        keep_mask &= (counts <= max_size)

    return relabel_by_size(labels, labels_unique[keep_mask], counts[keep_mask])


def relabel_by_size(labels: np.ndarray, labels_to_keep: np.ndarray,
                    counts: np.ndarray) -> np.ndarray:
    """Renumber kept labels so the largest is 1; everything else becomes 0."""
    old_to_new = np.zeros(int(labels.max(initial=0)) + 1, dtype=np.int32)
    if labels_to_keep.size:
        # Stable sort keeps raster order among equal sizes.
        order = np.argsort(-counts, kind="stable")
        old_to_new[labels_to_keep[order]] = np.arange(1, labels_to_keep.size + 1)
    return old_to_new[np.clip(labels, 0, None)]
