"""
Account Synchronizer

Reconciles the aggregator's account list with the local accounts of one
connection. Creates what is new, refreshes balances of what exists, and never
deletes: an account missing from the provider response is left alone.
"""

import asyncio
import logging
from typing import List, Optional
from sqlalchemy.orm import Session

from fintrack.app.models import Account, Connection, utcnow, touch

from .connection_manager import ConnectionManager
from .errors import ProviderError
from .mappers import map_account_type
from .providers import TrueLayerClient, ProviderAccount, ProviderBalance

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_METADATA = {
    'color': '#1976d2',
    'icon': 'account_balance',
    'order': 0
}


class AccountSynchronizer:

    def __init__(self, db: Session, client: TrueLayerClient, connections: ConnectionManager):
        self.db = db
        self.client = client
        self.connections = connections

    async def sync_accounts(
        self,
        user_id: int,
        connection: Connection,
        errors: Optional[List[str]] = None
    ) -> List[Account]:
        """
        Sync the connection's accounts from the aggregator.

        Idempotent: a second run against an unchanged provider only moves
        last_synced_at timestamps.

        Args:
            user_id: Owner of the connection
            connection: Connection to sync
            errors: Optional list collecting per-account failures

        Returns:
            Local accounts that were created or refreshed in this run

        Raises:
            ConnectionRefreshError: If no valid token can be obtained
            ProviderDataError: If the account list itself cannot be fetched
        """
        provider_accounts = await self.connections.call_with_token(connection, self.client.fetch_accounts)
        logger.info(f"Connection {connection.id}: provider reports {len(provider_accounts)} accounts")

        # Balances are independent per account, fetch them concurrently
        balances = await asyncio.gather(
            *(self._fetch_balance(connection, pa) for pa in provider_accounts),
            return_exceptions=True
        )

        synced = []
        for provider_account, balance in zip(provider_accounts, balances):
            if isinstance(balance, BaseException):
                if not isinstance(balance, ProviderError):
                    raise balance
                message = f"Account {provider_account.display_name} ({provider_account.account_id}): {balance}"
                logger.warning(f"Connection {connection.id}: balance fetch failed - {message}")
                if errors is not None:
                    errors.append(message)
                continue
            synced.append(self._upsert_account(user_id, connection, provider_account, balance))

        now = utcnow()
        connection.last_synced_at = now
        touch(connection, now)
        self.db.commit()

        for account in synced:
            self.db.refresh(account)
        return synced

    async def _fetch_balance(self, connection: Connection, provider_account: ProviderAccount) -> ProviderBalance:
        return await self.connections.call_with_token(
            connection,
            lambda token: self.client.fetch_balance(token, provider_account.account_id)
        )

    def _upsert_account(
        self,
        user_id: int,
        connection: Connection,
        provider_account: ProviderAccount,
        balance: ProviderBalance
    ) -> Account:
        now = utcnow()
        account = self.db.query(Account).filter(
            Account.user_id == user_id,
            Account.connection_id == connection.id,
            Account.external_id == provider_account.account_id
        ).first()

        if account:
            # Name, type and institution may have been edited by the user
            account.balance = balance.current
            account.last_synced_at = now
            touch(account, now)
            return account

        account = Account(
            user_id=user_id,
            name=provider_account.display_name,
            account_type=map_account_type(provider_account.account_type),
            institution=connection.institution_name,
            balance=balance.current,
            currency=provider_account.currency,
            is_active=True,
            account_number=provider_account.account_number.masked() if provider_account.account_number else None,
            connection_id=connection.id,
            external_id=provider_account.account_id,
            account_metadata=dict(DEFAULT_ACCOUNT_METADATA),
            last_synced_at=now,
            created_at=now,
            updated_at=now
        )
        self.db.add(account)
        logger.info(f"Connection {connection.id}: discovered account {provider_account.account_id}")
        return account
