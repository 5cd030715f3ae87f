"""Local-maximum clumps of a labelled region.

Clumps are built by visiting the pixels of a region from the brightest to the
faintest. A pixel with no labelled neighbour starts a new clump, a pixel
whose labelled neighbours all agree joins them, and a pixel touching two
clumps (or the outside of the region) becomes a *river*. Connected runs of
equal value are resolved together with a breadth-first search so the result
does not depend on the order in which ties were sorted.

The helpers work on a copy of the region padded by one pixel, so neighbour
look-ups never leave the array; the padding counts as "outside".
"""

import itertools
import logging
from collections import deque
from typing import Optional, Tuple

import numpy as np

__all__ = [
    'RIVER',
    'neighbour_offsets',
    'oversegment',
    'river_sums',
    'clump_sn',
    'grow_labels',
]

logger = logging.getLogger(__name__)

RIVER = -1
_TMPCHECK = -2
_INIT = -3


def neighbour_offsets(shape, connectivity: Optional[int] = None) -> np.ndarray:
    """Flat-index offsets of the neighbours of a pixel in a C-ordered array.

    ``connectivity`` is the maximum number of axes along which a neighbour may
    differ (1 is face connectivity, ``ndim`` is full connectivity).
    """
    ndim = len(shape)
    connectivity = ndim if connectivity is None else connectivity
    strides = [int(np.prod(shape[d + 1:])) for d in range(ndim)]
    offsets = []
    for step in itertools.product((-1, 0, 1), repeat=ndim):
        order = sum(abs(s) for s in step)
        if 0 < order <= connectivity:
            offsets.append(sum(s * st for s, st in zip(step, strides)))
    return np.array(offsets, dtype=np.int64)


def _pad(array: np.ndarray, fill) -> np.ndarray:
    return np.pad(array, 1, mode="constant", constant_values=fill)


def _inner(ndim: int) -> Tuple[slice, ...]:
    return (slice(1, -1),) * ndim


def _padded_flat_index(mask: np.ndarray) -> np.ndarray:
    padded_shape = tuple(s + 2 for s in mask.shape)
    coords = tuple(c + 1 for c in np.nonzero(mask))
    return np.ravel_multi_index(coords, padded_shape)


def oversegment(values: np.ndarray, region: np.ndarray,
                rivers: Optional[np.ndarray] = None) -> Tuple[np.ndarray, int]:
    """Split ``region`` into clumps around the local maxima of ``values``.

    Parameters
    ----------
    values : np.ndarray
        Values deciding the visiting order (usually the convolved image).
    region : np.ndarray of bool
        Pixels to segment. ``values`` must be finite there.
    rivers : np.ndarray of bool, optional
        Pixels outside ``region`` that are rivers from the start (tile
        edges). Unlike the outside, touching them does not make a river.

    Returns
    -------
    labels : np.ndarray of int32
        Clump labels ``1..n``; rivers and everything outside are 0.
    num : int
        Number of clumps.
    """
    ndim = values.ndim
    inner = _inner(ndim)
    lab = np.zeros(tuple(s + 2 for s in values.shape), dtype=np.int32)
    lab[inner][region] = _INIT
    if rivers is not None:
        lab[inner][rivers & ~region] = RIVER

    arr = _pad(np.asarray(values, dtype=np.float64), -np.inf).ravel().tolist()
    flat = lab.ravel().tolist()
    offsets = neighbour_offsets(lab.shape).tolist()

    indexes = np.flatnonzero(lab.ravel() == _INIT)
    order = np.argsort(-np.asarray(arr)[indexes], kind="stable")
    indexes = indexes[order].tolist()
    n = len(indexes)
    curlab = 1

    for k, a in enumerate(indexes):
        if flat[a] != _INIT:
            continue
        value = arr[a]

        if k + 1 < n and arr[indexes[k + 1]] == value:
            # Equal-valued plateau: label it as a whole.
            n1 = 0
            queue = deque([a])
            group = [a]
            flat[a] = _TMPCHECK
            while queue:
                ind = queue.popleft()
                for off in offsets:
                    nind = ind + off
                    nlab = flat[nind]
                    if nlab == 0:
                        flat[ind] = RIVER
                    elif nlab == _INIT:
                        if arr[nind] == value:
                            flat[nind] = _TMPCHECK
                            queue.append(nind)
                            group.append(nind)
                    elif nlab > 0:
                        if n1 == 0:
                            n1 = nlab
                        elif nlab != n1:
                            n1 = RIVER
            if n1 == 0:
                n1 = curlab
                curlab += 1
            for ind in group:
                if flat[ind] == _TMPCHECK:
                    flat[ind] = n1
        else:
            n1 = 0
            for off in offsets:
                nlab = flat[a + off]
                if nlab == 0:
                    n1 = RIVER
                elif nlab > 0:
                    if n1 == 0:
                        n1 = nlab
                    elif nlab != n1:
                        n1 = RIVER
            if n1 == 0:
                n1 = curlab
                curlab += 1
            flat[a] = n1

    lab = np.array(flat, dtype=np.int32).reshape(lab.shape)
    labels = lab[inner].copy()
    labels[labels < 0] = 0
    return labels, curlab - 1


def _river_neighbours(labels: np.ndarray, river: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Distinct positive neighbour labels of every river pixel.

    Returns an ``(n_river, n_neighbours)`` array where repeated and
    non-positive labels are zeroed, plus the river pixels' flat positions in
    the unpadded array.
    """
    padded = _pad(labels, 0)
    offsets = neighbour_offsets(padded.shape)
    positions = _padded_flat_index(river)
    ngb = padded.ravel()[positions[:, None] + offsets[None, :]]
    ngb = np.where(ngb > 0, ngb, 0)
    ngb.sort(axis=1)
    repeated = np.zeros_like(ngb, dtype=bool)
    repeated[:, 1:] = ngb[:, 1:] == ngb[:, :-1]
    ngb[repeated] = 0
    return ngb, np.flatnonzero(river.ravel())


def river_sums(labels: np.ndarray, values: np.ndarray, river: np.ndarray,
               count: int) -> Tuple[np.ndarray, np.ndarray]:
    """Flux and area of the rivers around each label.

    A river pixel counts once for every distinct clump it touches.
    """
    if not np.any(river):
        return np.zeros(count), np.zeros(count)
    ngb, flat = _river_neighbours(labels, river)
    rows, cols = np.nonzero(ngb)
    targets = ngb[rows, cols]
    weights = values.ravel()[flat][rows]
    flux = np.bincount(targets, weights=weights, minlength=count)[:count]
    area = np.bincount(targets, minlength=count)[:count].astype(np.float64)
    return flux, area


def clump_sn(values: np.ndarray, std: np.ndarray, labels: np.ndarray, num: int,
             region: np.ndarray, min_area: int, cpscorr: float = 1.0,
             sky_subtracted: bool = True) -> np.ndarray:
    """Signal-to-noise ratio of every clump, indexed by ``label - 1``.

    ``S/N = sqrt(Ni / cpscorr) * (I - O) / sqrt(|I| + |O| + var)`` where ``I``
    is the mean value inside the clump, ``O`` the mean over its surrounding
    rivers and ``var`` the sky variance at the clump's flux-weighted centre
    (doubled when the input was already sky subtracted). Clumps with
    ``I <= O``, ``Ni <= min_area`` or no positive pixel get NaN.
    """
    count = num + 1
    if num == 0:
        return np.zeros(0)
    finite = region & np.isfinite(values)
    inner = finite & (labels > 0)
    lab_in = labels[inner]
    val_in = values[inner]

    area = np.bincount(lab_in, minlength=count).astype(np.float64)
    flux = np.bincount(lab_in, weights=val_in, minlength=count)
    positive = val_in > 0
    nff = np.bincount(lab_in[positive], weights=val_in[positive], minlength=count)
    centres = [np.bincount(lab_in[positive], weights=val_in[positive] * c[positive],
                           minlength=count)
               for c in np.nonzero(inner)]

    riv_flux, riv_area = river_sums(labels, values, finite & (labels == 0), count)

    sn = np.full(count, np.nan)
    with np.errstate(divide="ignore", invalid="ignore"):
        mean_in = flux / area
        mean_out = riv_flux / riv_area
        ok = (area > min_area) & (nff > 0) & (mean_in > mean_out)
    ok[0] = False
    if np.any(ok):
        coord = tuple(
            np.clip(np.floor(c[ok] / nff[ok] + 0.5).astype(np.int64), 0, size - 1)
            for c, size in zip(centres, values.shape)
        )
        var = (2.0 if sky_subtracted else 1.0) * np.asarray(std, dtype=np.float64)[coord] ** 2
        i, o = mean_in[ok], mean_out[ok]
        sn[ok] = np.sqrt(area[ok] / cpscorr) * (i - o) / np.sqrt(np.abs(i) + np.abs(o) + var)
    return sn[1:]


def grow_labels(labels: np.ndarray, candidates: np.ndarray, values: Optional[np.ndarray] = None,
                connectivity: Optional[int] = None, make_rivers: bool = True) -> np.ndarray:
    """Grow the positive ``labels`` into ``candidates``.

    Candidates are visited in descending ``values`` (raster order when
    ``values`` is None) and the visit is repeated until nothing changes. A
    candidate touching a single label joins it; one touching several becomes
    a river (``make_rivers``) or joins the smallest of them. River pixels
    (negative labels) are never crossed.

    Returns
    -------
    np.ndarray of int32
        Grown labels; rivers are :data:`RIVER` and unreached candidates 0.
    """
    padded = _pad(np.asarray(labels, dtype=np.int32), 0)
    flat = padded.ravel().tolist()
    offsets = neighbour_offsets(padded.shape, connectivity).tolist()
    positions = _padded_flat_index(candidates & (np.asarray(labels) == 0))
    if values is not None:
        order = np.argsort(-np.asarray(values, dtype=np.float64)[candidates & (labels == 0)],
                           kind="stable")
        positions = positions[order]
    pending = positions.tolist()

    while pending:
        remaining = []
        for a in pending:
            found = {flat[a + off] for off in offsets}
            found = {lab for lab in found if lab > 0}
            if not found:
                remaining.append(a)
            elif len(found) == 1:
                flat[a] = found.pop()
            else:
                flat[a] = RIVER if make_rivers else min(found)
        if len(remaining) == len(pending):
            break
        pending = remaining

    padded = np.array(flat, dtype=np.int32).reshape(padded.shape)
    return padded[_inner(labels.ndim)].copy()
