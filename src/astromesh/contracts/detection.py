"""Detection stage contract."""

import numpy as np

from astromesh.contracts.base import require


def assert_detected(detection, shape) -> None:
    """Enforce the detection stage contract.

    Labels are integers of the image shape, 0 is background and the
    positive labels are exactly ``1..num_detections``.

    Parameters
    ----------
    detection : DetectionResult
        Output of ``Detector.detect``.
    shape : tuple of int
        Shape of the input image.

    Raises
    ------
    ContractViolation
        If any invariant is violated.
    """
    labels = np.asarray(detection.labels)
    require(
        labels.shape == tuple(shape),
        f"Detection contract violated: labels shape {labels.shape} != image {tuple(shape)}"
    )
    require(
        labels.dtype.kind in {"i", "u"},
        f"Detection contract violated: labels dtype is {labels.dtype}, expected integer"
    )
    require(
        labels.size == 0 or labels.min() >= 0,
        f"Detection contract violated: labels contain negative values (min={labels.min()})"
    )
    require(
        int(labels.max(initial=0)) == detection.num_detections,
        f"Detection contract violated: max label {int(labels.max(initial=0))} "
        f"!= num_detections {detection.num_detections}"
    )
    require(
        detection.sky.sky_image.shape == labels.shape,
        "Detection contract violated: sky image does not cover the input"
    )
