"""
Bank Sync Service

Main orchestration service that handles:
- OAuth flow (authorization URL, callback)
- Connection sync (accounts, then transactions per account)
- Disconnecting and deleting connections
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from datetime import date, timedelta
from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.orm import Session

from fintrack.app.models import (
    Account, Connection, ConnectionStatus, SyncLog, SyncStatus, Transaction, utcnow, touch
)

from .account_sync import AccountSynchronizer
from .connection_manager import ConnectionManager
from .errors import BankSyncError, ConnectionRevokedError, InvalidStateError, NotFoundError
from .locks import SyncLocks
from .providers import TrueLayerClient
from .transaction_sync import TransactionSynchronizer

logger = logging.getLogger(__name__)

DEFAULT_SYNC_DAYS = 90


class BankSyncService:
    """
    Entry points the rest of fintrack calls for bank connections.

    Every method receives an already-authenticated user id and only ever
    touches that user's rows.
    """

    def __init__(
        self,
        db: Session,
        client: TrueLayerClient,
        locks: SyncLocks,
        default_sync_days: int = DEFAULT_SYNC_DAYS
    ):
        """
        Initialize service with database session and provider client.

        Args:
            db: SQLAlchemy database session
            client: Configured aggregator client
            locks: Process-wide per-connection lock registry
            default_sync_days: Transaction window when the caller gives none
        """
        self.db = db
        self.client = client
        self.locks = locks
        self.default_sync_days = default_sync_days
        self.connections = ConnectionManager(db, client, locks)
        self.accounts = AccountSynchronizer(db, client, self.connections)
        self.transactions = TransactionSynchronizer(db, client, self.connections)

    def get_authorization_url(self, user_id: int) -> str:
        return self.client.build_authorization_url(user_id)

    async def handle_callback(self, user_id: int, code: str, state: Optional[str] = None) -> Dict[str, Any]:
        """
        Complete the OAuth flow: exchange the code, store the connection and
        sync its accounts.

        Args:
            user_id: Authenticated user
            code: Authorization code from the aggregator redirect
            state: The `state` echoed by the aggregator, if the caller has it

        Returns:
            {
                'connection': Connection,
                'accounts': List[Account],
                'errors': List[str]
            }

        Raises:
            InvalidStateError: If state does not identify this user
            ProviderAuthError: If the code exchange is rejected
            ProviderDataError: If institution info cannot be fetched
        """
        if state is not None and state != str(user_id):
            raise InvalidStateError("OAuth state does not match the current user")

        token_result = await self.client.exchange_code(code)
        institution = await self.client.fetch_institution_info(token_result.access_token)

        connection = self.connections.upsert_connection(
            user_id, self.client.provider_name, token_result, institution
        )

        errors: List[str] = []
        async with self.locks.connections.hold(connection.id):
            accounts = await self.accounts.sync_accounts(user_id, connection, errors)

        return {
            'connection': connection,
            'accounts': accounts,
            'errors': errors
        }

    async def sync_connection(
        self,
        user_id: int,
        connection_id: int,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> Dict[str, Any]:
        """
        Sync accounts and then transactions of a connection.

        Main workflow:
        1. Refresh the token if it has expired
        2. Re-sync accounts (balances are provider-authoritative)
        3. Fetch transactions for every synced account concurrently
        4. Record a SyncLog

        A failure in one account does not stop its siblings; the run is then
        reported as partial.

        Returns:
            {
                'status': 'success' | 'partial' | 'failed',
                'accounts': List[Account],
                'transaction_count': int,
                'accounts_synced': int,
                'accounts_total': int,
                'errors': List[str]
            }

        Raises:
            NotFoundError: Unknown connection for this user
            ConnectionRevokedError: Connection was disconnected
            ConnectionRefreshError: Token could not be refreshed
            ProviderDataError: Account list could not be fetched
        """
        to_date = to_date or date.today()
        from_date = from_date or to_date - timedelta(days=self.default_sync_days)
        if from_date > to_date:
            raise ValueError(f"from_date {from_date} is after to_date {to_date}")

        connection = self.get_connection(user_id, connection_id)
        if connection.status == ConnectionStatus.REVOKED:
            raise ConnectionRevokedError(f"Connection {connection.id} is disconnected. Reconnect first.")

        async with self.locks.connections.hold(connection_id):
            # A disconnect or delete may have run while we waited
            connection = self._reload(connection, connection_id)
            if connection.status == ConnectionStatus.REVOKED:
                raise ConnectionRevokedError(f"Connection {connection.id} is disconnected. Reconnect first.")

            sync_log = SyncLog(
                connection_id=connection.id,
                status=SyncStatus.FAILED,  # Assume failure, update on completion
                from_date=from_date,
                to_date=to_date,
                started_at=utcnow()
            )
            self.db.add(sync_log)
            self.db.commit()

            errors: List[str] = []
            try:
                accounts = await self.accounts.sync_accounts(user_id, connection, errors)
                provider_total = len(accounts) + len(errors)
                results = await asyncio.gather(
                    *(self._sync_account_transactions(user_id, account, connection, from_date, to_date)
                      for account in accounts)
                )
            except Exception as e:
                self.db.rollback()
                self._finish_log(sync_log, SyncStatus.FAILED, error_message=str(e) or type(e).__name__)
                raise

            transaction_count = 0
            accounts_synced = 0
            for account, (inserted, error) in zip(accounts, results):
                if error is not None:
                    errors.append(f"Account {account.name} ({account.id}): {error}")
                    continue
                accounts_synced += 1
                transaction_count += inserted

            if accounts_synced == provider_total:
                status = SyncStatus.SUCCESS
            elif accounts_synced > 0:
                status = SyncStatus.PARTIAL
            else:
                status = SyncStatus.FAILED

            now = utcnow()
            connection.last_synced_at = now
            touch(connection, now)
            self._finish_log(
                sync_log, status,
                accounts_total=provider_total,
                accounts_synced=accounts_synced,
                transactions_imported=transaction_count,
                error_message="; ".join(errors) or None
            )

        logger.info(
            f"Connection {connection.id} sync {status.value}: {accounts_synced} of {provider_total} "
            f"accounts synced, {transaction_count} new transactions"
        )

        return {
            'status': status.value,
            'accounts': accounts,
            'transaction_count': transaction_count,
            'accounts_synced': accounts_synced,
            'accounts_total': provider_total,
            'errors': errors
        }

    async def _sync_account_transactions(
        self,
        user_id: int,
        account: Account,
        connection: Connection,
        from_date: date,
        to_date: date
    ):
        """Run one account's transaction sync, returning (inserted_count, error)."""
        account_id = account.id
        try:
            inserted = await self.transactions.sync_transactions(user_id, account, connection, from_date, to_date)
        except BankSyncError as e:
            logger.error(f"Transaction sync failed for account {account_id}: {e}")
            return 0, str(e)
        return len(inserted), None

    def _finish_log(self, sync_log: SyncLog, status: SyncStatus, **fields):
        sync_log.status = status
        sync_log.completed_at = utcnow()
        for key, value in fields.items():
            setattr(sync_log, key, value)
        self.db.commit()

    async def disconnect_connection(self, user_id: int, connection_id: int) -> Connection:
        connection = self.get_connection(user_id, connection_id)
        async with self.locks.connections.hold(connection_id):
            connection = self._reload(connection, connection_id)
            return self.connections.disconnect(connection)

    async def delete_connection(self, user_id: int, connection_id: int):
        """
        Permanently delete a connection with its accounts and their transactions.
        """
        connection = self.get_connection(user_id, connection_id)
        async with self.locks.connections.hold(connection_id):
            connection = self._reload(connection, connection_id)
            account_ids = [a.id for a in connection.accounts]
            transaction_count = 0
            if account_ids:
                transaction_count = self.db.query(Transaction).filter(
                    Transaction.account_id.in_(account_ids)
                ).count()
            # Connection -> accounts -> transactions, plus sync logs, via the ORM cascade
            self.db.delete(connection)
            self.db.commit()
        self.locks.forget(connection_id)
        logger.info(
            f"Deleted connection {connection_id} with {len(account_ids)} accounts "
            f"and {transaction_count} transactions"
        )

    def _reload(self, connection: Connection, connection_id: int) -> Connection:
        """Re-read a connection after acquiring its lock."""
        try:
            self.db.refresh(connection)
        except InvalidRequestError as e:
            # ObjectDeletedError, or the row was deleted through this session
            raise NotFoundError(f"Connection {connection_id} not found") from e
        return connection

    def get_connection(self, user_id: int, connection_id: int) -> Connection:
        connection = self.db.query(Connection).filter(
            Connection.id == connection_id,
            Connection.user_id == user_id
        ).first()
        if not connection:
            raise NotFoundError(f"Connection {connection_id} not found")
        return connection

    def list_connections(self, user_id: int) -> List[Connection]:
        return self.db.query(Connection).filter(
            Connection.user_id == user_id
        ).order_by(Connection.created_at).all()

    def list_sync_logs(self, user_id: int, connection_id: int, limit: int = 20) -> List[SyncLog]:
        connection = self.get_connection(user_id, connection_id)
        return self.db.query(SyncLog).filter(
            SyncLog.connection_id == connection.id
        ).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit).all()
