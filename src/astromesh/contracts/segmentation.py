"""Segmentation stage contract."""

import numpy as np

from astromesh.contracts.base import require


def assert_segmented(segmentation, detection) -> None:
    """Enforce the segmentation stage contract.

    Every object pixel is a detected pixel and every clump pixel an object
    pixel; object and clump ids run from 1 to their counts and each clump
    has exactly one host object.

    Raises
    ------
    ContractViolation
        If any invariant is violated.
    """
    objects = np.asarray(segmentation.objects)
    clumps = np.asarray(segmentation.clumps)
    detected = np.asarray(detection.labels) > 0

    for name, labels in (("objects", objects), ("clumps", clumps)):
        require(
            labels.shape == detected.shape,
            f"Segmentation contract violated: '{name}' shape {labels.shape} != {detected.shape}"
        )
        require(
            labels.dtype.kind in {"i", "u"},
            f"Segmentation contract violated: '{name}' dtype is {labels.dtype}, expected integer"
        )
        require(
            labels.size == 0 or labels.min() >= 0,
            f"Segmentation contract violated: '{name}' contains negative values"
        )

    require(
        not np.any((objects > 0) & ~detected),
        "Segmentation contract violated: object pixels outside the detections"
    )
    require(
        not np.any((clumps > 0) & (objects == 0)),
        "Segmentation contract violated: clump pixels outside every object"
    )
    require(
        int(objects.max(initial=0)) == segmentation.num_objects,
        f"Segmentation contract violated: max object id {int(objects.max(initial=0))} "
        f"!= num_objects {segmentation.num_objects}"
    )
    require(
        len(segmentation.pairs) == segmentation.num_clumps,
        f"Segmentation contract violated: {len(segmentation.pairs)} clump/object pairs "
        f"for {segmentation.num_clumps} clumps"
    )
