"""
Transaction Synchronizer

Imports aggregator transactions for one linked account. Rows are write-once:
the external transaction id is the only dedup key, existing rows are never
updated, and balances are left alone because a linked account's balance comes
from the provider.
"""

import logging
from typing import List, Optional
from datetime import date
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fintrack.app.models import Account, Connection, Transaction, TransactionType, utcnow

from .connection_manager import ConnectionManager
from .errors import BalanceInvariantError
from .mappers import map_transaction_category
from .providers import TrueLayerClient, ProviderTransaction

logger = logging.getLogger(__name__)


class TransactionSynchronizer:

    def __init__(self, db: Session, client: TrueLayerClient, connections: ConnectionManager):
        self.db = db
        self.client = client
        self.connections = connections

    async def sync_transactions(
        self,
        user_id: int,
        account: Account,
        connection: Connection,
        from_date: date,
        to_date: date
    ) -> List[Transaction]:
        """
        Import new provider transactions for `account` over [from_date, to_date].

        Safe to call repeatedly with overlapping windows: ids already stored
        are skipped, and the (account_id, external_id) unique constraint
        catches any insert that slips past the lookup.

        Returns:
            Only the rows inserted by this call
        """
        if from_date > to_date:
            raise ValueError(f"from_date {from_date} is after to_date {to_date}")
        if account.connection_id != connection.id or account.user_id != user_id or not account.external_id:
            raise BalanceInvariantError(f"Account {account.id} is not linked to connection {connection.id}")

        external_account_id = account.external_id
        provider_transactions = await self.connections.call_with_token(
            connection,
            lambda token: self.client.fetch_transactions(token, external_account_id, from_date, to_date)
        )
        logger.info(
            f"Account {account.id}: fetched {len(provider_transactions)} transactions "
            f"for {from_date} to {to_date}"
        )

        inserted = []
        duplicates = 0
        for provider_tx in provider_transactions:
            if self._find_existing(user_id, account.id, provider_tx.transaction_id):
                duplicates += 1
                continue

            transaction = self._build_transaction(user_id, account.id, provider_tx)
            self.db.add(transaction)
            try:
                self.db.commit()
            except IntegrityError:
                # Another sync stored the same external id first
                self.db.rollback()
                duplicates += 1
                logger.info(f"Account {account.id}: transaction {provider_tx.transaction_id} already stored")
                continue
            inserted.append(transaction)

        logger.info(f"Account {account.id}: imported {len(inserted)}, skipped {duplicates} duplicates")
        return inserted

    def _find_existing(self, user_id: int, account_id: int, external_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(
            Transaction.user_id == user_id,
            Transaction.account_id == account_id,
            Transaction.external_id == external_id
        ).first()

    @staticmethod
    def _build_transaction(user_id: int, account_id: int, provider_tx: ProviderTransaction) -> Transaction:
        now = utcnow()
        location = None
        if provider_tx.merchant_location:
            location = provider_tx.merchant_location.model_dump(exclude_none=True) or None

        return Transaction(
            user_id=user_id,
            account_id=account_id,
            date=provider_tx.timestamp.date(),
            # Sign is preserved exactly as the provider reports it
            amount=provider_tx.amount,
            transaction_type=TransactionType.EXPENSE if provider_tx.amount < 0 else TransactionType.INCOME,
            category=map_transaction_category(provider_tx.transaction_category),
            description=provider_tx.description,
            merchant=provider_tx.merchant_name or None,
            external_id=provider_tx.transaction_id,
            is_recurring=False,
            tags=[],
            location=location,
            created_at=now,
            updated_at=now
        )
