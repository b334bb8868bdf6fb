"""Exceptions raised across the reconciliation and write-back paths."""

from recon.connectors.ledger_client import ApiError

__all__ = [
    "ApiError",
    "DuplicatePushError",
    "NotEligibleError",
    "NotFoundError",
    "WriteBackError",
]


class NotFoundError(LookupError):
    """Batch, account, installation or transaction absent or not owned."""


class WriteBackError(Exception):
    """A push/transfer/replicate call was rejected by the remote ledger."""


class DuplicatePushError(WriteBackError):
    """The transaction was already written to the remote ledger."""


class NotEligibleError(Exception):
    """Account or batch cannot be reconciled; message is the eligibility reason."""
