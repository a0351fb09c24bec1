"""Error taxonomy for the pond, commitment and claim subsystems.

Every error is local and recoverable by the caller. A call that raises
one of these leaves ledger and verifier state exactly as it was.
"""

from __future__ import annotations


class MinnowError(ValueError):
    """Base class for all protocol-level rejections."""


class InvalidAmount(MinnowError):
    """Deposit or entitlement value is non-positive or not an integer."""


class InvalidAddress(MinnowError):
    """Depositor identifier is not a 20-byte EVM address."""


class NotFound(MinnowError):
    """Unknown period or commitment index."""


class PeriodNotClosed(MinnowError):
    """A commitment was requested for a period that is still open."""


class AlreadyCommitted(MinnowError):
    """A root is already registered for this period."""


class NoCommitment(NotFound):
    """No root has been registered for this period."""


class InvalidProof(MinnowError):
    """The proof does not recompute the registered root."""


class AlreadyClaimed(MinnowError):
    """The (period, depositor) pair has already been paid."""


class NotAuthorized(MinnowError):
    """Caller is not allowed to perform a privileged operation."""


class TransferFailed(MinnowError):
    """The token transfer side effect could not be applied.

    The claim stays unset, so retrying the claim is safe.
    """


class AuditFailed(MinnowError):
    """The audit record for a state change could not be written.

    The change is refused so the log never trails the state.
    """
