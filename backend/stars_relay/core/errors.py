"""
Error taxonomy shared by the Fragment client, the wallet and the monitor.

Only ValidationError (and NotFoundError) is terminal for a payment: its
message is stored verbatim in the ledger and later matched against the
non-retryable markers in ``core.constants``.
"""


class StarsRelayError(Exception):
    """Base class for all relay errors."""


class ProtocolError(StarsRelayError):
    """Fragment (or toncenter) answered with something we cannot use."""


class NetworkError(StarsRelayError):
    """Timeout, connection failure or non-2xx HTTP status."""


class ValidationError(StarsRelayError):
    """Business rule violation; the payment must not be retried."""


class NotFoundError(ValidationError):
    """Fragment reports no recipient for the requested username."""


class LockNotAcquired(StarsRelayError):
    """Another owner already holds the payment. Not a failure."""

    def __init__(self, transaction_hash: str):
        super().__init__(f"Transaction {transaction_hash} is locked by another owner")
        self.transaction_hash = transaction_hash


class LedgerIntegrityError(StarsRelayError):
    """A ledger row that must exist was not found on update."""
