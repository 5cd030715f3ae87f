"""Pipeline contracts: fail-fast enforcement of stage invariants.

Contracts fail immediately and loudly when a stage does not produce its
promised invariants.

Key principle:
- Pydantic validates config correctness
- Contracts validate pipeline correctness
- Algorithms handle the science edge cases
"""

from astromesh.contracts.failure import ContractViolation, FailurePolicy
from astromesh.contracts.base import require
from astromesh.contracts.image import assert_convolved, assert_loaded
from astromesh.contracts.detection import assert_detected
from astromesh.contracts.segmentation import assert_segmented
from astromesh.contracts.catalog import assert_catalog
from astromesh.contracts.invariants import PIPELINE_INVARIANTS, STAGE_REQUIREMENTS

__all__ = [
    "ContractViolation",
    "FailurePolicy",
    "require",
    "assert_loaded",
    "assert_convolved",
    "assert_detected",
    "assert_segmented",
    "assert_catalog",
    "PIPELINE_INVARIANTS",
    "STAGE_REQUIREMENTS",
]
