"""The single enforcement mechanism used by every stage contract."""

from astromesh.contracts.failure import ContractViolation


def require(condition: bool, message: str) -> None:
    """Enforce a pipeline contract.

    Called at stage boundaries to verify the preceding stage produced its
    guaranteed invariants. No recovery and no fallback.

    Parameters
    ----------
    condition : bool
        The invariant that must hold.
    message : str
        Explanation used for the raised error.

    Raises
    ------
    ContractViolation
        If ``condition`` is False.

    Examples
    --------
    >>> require(labels.min() >= 0, "Detection contract: negative labels")
    """
    if not condition:
        raise ContractViolation(message)
