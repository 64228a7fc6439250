"""
Bank Sync Errors

Exception taxonomy shared by the provider client, the synchronizers and the
balance ledger. Routes translate these into HTTP responses.
"""

from typing import Optional


class BankSyncError(Exception):
    """Base class for every error raised by the bank sync engine."""
    pass


class ProviderError(BankSyncError):
    """
    A call to the aggregator failed.

    Carries the HTTP status (None for timeouts and transport failures) and the
    provider's raw response body for diagnostics.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderAuthError(ProviderError):
    """OAuth code exchange or token refresh was rejected by the aggregator."""
    pass


class ProviderDataError(ProviderError):
    """A data GET failed after a token was presented."""

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


class ProviderSchemaError(ProviderDataError):
    """Aggregator payload did not match the expected shape."""
    pass


class ConnectionRefreshError(BankSyncError):
    """The connection's token could not be refreshed; the user must reconnect."""
    pass


class ConnectionRevokedError(BankSyncError):
    """The connection was disconnected by the user."""
    pass


class InvalidStateError(BankSyncError):
    """OAuth callback state does not belong to the calling user."""
    pass


class NotFoundError(BankSyncError):
    """Entity does not exist or belongs to another user."""
    pass


class ConflictError(BankSyncError):
    pass


class SyncedTransactionError(ConflictError):
    """Financial fields of a provider-sourced transaction are read-only."""
    pass


class BalanceInvariantError(BankSyncError):
    """A balance adjustment targeted a foreign or missing account."""
    pass
