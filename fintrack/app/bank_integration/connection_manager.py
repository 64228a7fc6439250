"""
Connection Manager

Owns the lifecycle of a bank connection:
- Idempotent upsert after an OAuth exchange
- Refresh-on-expiry of the access token
- Status transitions (active, expired, error, revoked)
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar
from datetime import datetime, timedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fintrack.app.models import Connection, ConnectionStatus, utcnow, touch

from .errors import ConnectionRefreshError, ConnectionRevokedError, ProviderAuthError, ProviderDataError
from .locks import SyncLocks
from .providers import TrueLayerClient, TokenResult, InstitutionInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionManager:
    """
    Keeps a connection's tokens valid and its status truthful.

    Connection rows are only written here and by the sync entry points
    (last_synced_at).
    """

    def __init__(self, db: Session, client: TrueLayerClient, locks: SyncLocks):
        self.db = db
        self.client = client
        self.locks = locks

    def upsert_connection(
        self,
        user_id: int,
        provider: str,
        token_result: TokenResult,
        institution: InstitutionInfo
    ) -> Connection:
        """
        Create or refresh the connection for (user, provider, institution).

        Re-authenticating an institution overwrites the existing row in place,
        so repeated OAuth flows never create duplicates.

        Args:
            user_id: Authenticated internal user id
            provider: Aggregator name
            token_result: Result of the code exchange
            institution: Institution the consent covers

        Returns:
            The persisted Connection
        """
        institution_id = institution.provider.provider_id
        connection = self._find(user_id, provider, institution_id)
        is_new = connection is None

        if is_new:
            connection = Connection(user_id=user_id, provider=provider, institution_id=institution_id)
            self.db.add(connection)

        self._apply_grant(connection, token_result, institution)

        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent callback inserted the same connection first
            self.db.rollback()
            connection = self._find(user_id, provider, institution_id)
            if connection is None:
                raise
            self._apply_grant(connection, token_result, institution)
            self.db.commit()
            is_new = False

        self.db.refresh(connection)
        logger.info(
            f"{'Created' if is_new else 'Re-authorized'} connection {connection.id} "
            f"for user {user_id} at {connection.institution_name or institution_id}"
        )
        return connection

    def _find(self, user_id: int, provider: str, institution_id: str) -> Optional[Connection]:
        return self.db.query(Connection).filter(
            Connection.user_id == user_id,
            Connection.provider == provider,
            Connection.institution_id == institution_id
        ).first()

    def _apply_grant(self, connection: Connection, token_result: TokenResult, institution: InstitutionInfo):
        now = utcnow()
        self._store_tokens(connection, token_result, now)
        connection.institution_name = institution.provider.display_name
        connection.consent_id = token_result.consent_id
        connection.provider_metadata = institution.model_dump(mode="json")
        connection.status = ConnectionStatus.ACTIVE
        connection.connection_error = None
        connection.last_synced_at = now
        touch(connection, now)

    @staticmethod
    def _store_tokens(connection: Connection, token_result: TokenResult, now: datetime):
        connection.access_token = token_result.access_token
        # Providers may or may not rotate the refresh token
        if token_result.refresh_token:
            connection.refresh_token = token_result.refresh_token
        connection.token_expires_at = now + timedelta(seconds=token_result.expires_in)

    @staticmethod
    def is_token_fresh(connection: Connection, now: Optional[datetime] = None) -> bool:
        if not connection.access_token or connection.token_expires_at is None:
            return False
        return (now or utcnow()) < connection.token_expires_at

    async def ensure_fresh_token(self, connection: Connection) -> str:
        """
        Return a usable access token, refreshing it first if it has expired.

        Raises:
            ConnectionRefreshError: If the token cannot be refreshed. The
                connection is left in `error` (or `expired` when no refresh
                token exists) and must not be used for data sync.
        """
        if self.is_token_fresh(connection):
            return connection.access_token

        async with self.locks.refreshes.hold(connection.id):
            # Another caller may have refreshed while we waited
            self.db.refresh(connection)
            if self.is_token_fresh(connection):
                return connection.access_token
            return await self._refresh(connection)

    async def force_refresh(self, connection: Connection, stale_token: str) -> str:
        """Refresh after the provider rejected `stale_token`, unless someone already did."""
        async with self.locks.refreshes.hold(connection.id):
            self.db.refresh(connection)
            if connection.access_token and connection.access_token != stale_token:
                return connection.access_token
            return await self._refresh(connection)

    async def _refresh(self, connection: Connection) -> str:
        if connection.status == ConnectionStatus.REVOKED:
            raise ConnectionRevokedError(f"Connection {connection.id} is disconnected. Reconnect first.")
        if not connection.refresh_token:
            self._mark_failed(connection, ConnectionStatus.EXPIRED, "Access token expired and no refresh token is stored")
            raise ConnectionRefreshError(f"Connection {connection.id} has expired. Please reconnect your bank.")

        logger.info(f"Refreshing access token for connection {connection.id}")
        try:
            token_result = await self.client.refresh_token(connection.refresh_token)
        except ProviderAuthError as e:
            logger.error(f"Token refresh failed for connection {connection.id}: {e} (body: {e.body})")
            self._mark_failed(connection, ConnectionStatus.ERROR, str(e))
            raise ConnectionRefreshError(
                f"Could not refresh connection {connection.id}. Please reconnect your bank."
            ) from e

        now = utcnow()
        self._store_tokens(connection, token_result, now)
        connection.status = ConnectionStatus.ACTIVE
        connection.connection_error = None
        touch(connection, now)
        self.db.commit()
        return connection.access_token

    def _mark_failed(self, connection: Connection, status: ConnectionStatus, message: str):
        if connection.status == ConnectionStatus.REVOKED:
            return
        connection.status = status
        connection.connection_error = message
        touch(connection)
        self.db.commit()

    async def call_with_token(self, connection: Connection, call: Callable[[str], Awaitable[T]]) -> T:
        """
        Run a provider data call with a fresh token.

        If the provider answers with an auth failure (401/403) the token is
        refreshed and the call retried exactly once. Any other data error
        propagates unchanged.
        """
        token = await self.ensure_fresh_token(connection)
        try:
            return await call(token)
        except ProviderDataError as e:
            if not e.is_auth_failure:
                raise
            logger.warning(f"Provider rejected token for connection {connection.id} ({e.status_code}), refreshing once")
        token = await self.force_refresh(connection, stale_token=token)
        return await call(token)

    def disconnect(self, connection: Connection) -> Connection:
        """Revoke the connection locally. Accounts and transactions are kept."""
        connection.status = ConnectionStatus.REVOKED
        connection.access_token = None
        connection.refresh_token = None
        connection.token_expires_at = None
        connection.connection_error = None
        touch(connection)
        self.db.commit()
        logger.info(f"Connection {connection.id} revoked by user {connection.user_id}")
        return connection
