"""Typed errors raised by the processing components.

Components raise these and never catch them locally; the pipeline processor
decides what a failure means for the current file. Pipeline bugs (violated
stage invariants) are a separate family, see
:class:`astromesh.contracts.ContractViolation`.
"""


class AstromeshError(Exception):
    """Base class for all processing errors."""


class MisconfigurationError(AstromeshError, ValueError):
    """Inconsistent geometry or options, e.g. channels not dividing the image."""


class ParameterRangeError(AstromeshError, ValueError):
    """A numeric parameter lies outside its valid range."""


class ShapeMismatchError(AstromeshError, ValueError):
    """Operands (image, kernel, tile) have incompatible shapes."""


class ClipConvergenceError(AstromeshError, RuntimeError):
    """Sigma/MAD clipping did not converge within the iteration cap.

    The last computed result is attached so a caller may still accept it.
    """

    def __init__(self, message: str, last_result=None):
        super().__init__(message)
        self.last_result = last_result


class InsufficientNoiseError(AstromeshError, RuntimeError):
    """Too few noise-only candidates to derive a robust S/N threshold."""


class ResourceExhaustedError(AstromeshError, MemoryError):
    """Neither RAM nor a memory-mapped file could hold a buffer."""


class WorkerError(AstromeshError, RuntimeError):
    """A worker thread failed; the first failure is chained as the cause."""

    def __init__(self, message: str, failures=None):
        super().__init__(message)
        self.failures = failures or []
