"""Failure policy for contract violations.

All violations raise the same exception type so the processor can handle
pipeline bugs uniformly.
"""

from enum import Enum


class FailurePolicy(str, Enum):
    """What the processor does when a stage breaks its contract.

    FAIL_FAST (default): stop the processor after marking the file failed.
    SKIP_FILE: mark the file failed and continue with the next one.
    """
    FAIL_FAST = "fail_fast"
    SKIP_FILE = "skip_file"


class ContractViolation(RuntimeError):
    """Raised when a pipeline stage did not produce the invariants it promised.

    Key distinction:
    - MisconfigurationError / ParameterRangeError: user or config error
    - InsufficientNoiseError and friends: data too poor for a robust answer
    - ContractViolation: pipeline bug (programmer error)
    """
    pass
