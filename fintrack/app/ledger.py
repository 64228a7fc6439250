"""
Balance Ledger

Keeps an account's stored balance consistent with the manual transactions
applied against it.

Sign convention: a transaction's stored amount is signed, negative meaning
money leaving the account. Expenses store -|amount|, income +|amount|, and a
transfer stores the signed amount as entered. The balance effect of a manual
transaction is therefore always its stored amount.

Provider-sourced rows (external_id set) never move a balance, and their
financial fields cannot be edited.
"""

import logging
from typing import Any, Dict, Optional
from decimal import Decimal
from sqlalchemy.orm import Session

from fintrack.app.models import Account, Transaction, TransactionType, utcnow, touch
from fintrack.app.bank_integration.errors import (
    NotFoundError, BalanceInvariantError, SyncedTransactionError
)

logger = logging.getLogger(__name__)

# Fields that describe money movement; read-only on synced rows
FINANCIAL_FIELDS = ('account_id', 'amount', 'transaction_type', 'date')
DESCRIPTIVE_FIELDS = (
    'category', 'subcategory', 'description', 'merchant',
    'is_recurring', 'tags', 'notes', 'location'
)
NON_NULL_FIELDS = ('category', 'is_recurring', 'tags')


def signed_amount(transaction_type: TransactionType, amount: Decimal) -> Decimal:
    amount = Decimal(amount)
    if transaction_type == TransactionType.EXPENSE:
        return -abs(amount)
    if transaction_type == TransactionType.INCOME:
        return abs(amount)
    return amount


class BalanceLedger:
    """
    Create, update and delete manual transactions with their balance effects.

    Each operation commits the balance change and the row change together, and
    reads the transaction row and then the affected accounts FOR UPDATE, so
    concurrent writers to the same rows queue up behind each other.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_transaction(self, user_id: int, data: Dict[str, Any]) -> Transaction:
        account = self._owned_account(user_id, data['account_id'])
        transaction_type = TransactionType(data['transaction_type'])
        amount = signed_amount(transaction_type, data['amount'])

        now = utcnow()
        transaction = Transaction(
            user_id=user_id,
            account_id=account.id,
            date=data['date'],
            amount=amount,
            transaction_type=transaction_type,
            category=data.get('category') or 'Uncategorized',
            subcategory=data.get('subcategory'),
            description=data.get('description'),
            merchant=data.get('merchant'),
            is_recurring=data.get('is_recurring') or False,
            tags=list(data.get('tags') or []),
            notes=data.get('notes'),
            location=data.get('location'),
            created_at=now,
            updated_at=now
        )
        self.db.add(transaction)
        self._apply(account, user_id, amount, now)

        self.db.commit()
        self.db.refresh(transaction)
        logger.info(f"Created transaction {transaction.id} on account {account.id} ({amount})")
        return transaction

    def update_transaction(self, user_id: int, transaction_id: int, changes: Dict[str, Any]) -> Transaction:
        """
        Apply `changes` to a transaction.

        Balance handling: the old amount is reversed on the old account first,
        then the new amount is applied to the (possibly different) new account.
        """
        transaction = self._owned_transaction(user_id, transaction_id)
        changes = {k: v for k, v in changes.items() if k in FINANCIAL_FIELDS + DESCRIPTIVE_FIELDS}

        if transaction.is_synced:
            touched = [
                f for f in FINANCIAL_FIELDS
                if f in changes and changes[f] is not None and changes[f] != getattr(transaction, f)
            ]
            if touched:
                raise SyncedTransactionError(
                    f"Transaction {transaction.id} was imported from the bank; {', '.join(touched)} cannot be changed"
                )

        now = utcnow()
        if not transaction.is_synced:
            self._move_money(user_id, transaction, changes, now)

        for field in DESCRIPTIVE_FIELDS:
            if field not in changes:
                continue
            if changes[field] is None and field in NON_NULL_FIELDS:
                continue
            setattr(transaction, field, changes[field])
        if changes.get('date') is not None:
            transaction.date = changes['date']

        touch(transaction, now)
        self.db.commit()
        self.db.refresh(transaction)
        return transaction

    def _move_money(self, user_id: int, transaction: Transaction, changes: Dict[str, Any], now):
        old_account_id = transaction.account_id
        new_account_id = changes.get('account_id') or old_account_id
        accounts = self._lock_accounts({old_account_id, new_account_id})

        old_account = accounts.get(old_account_id)
        if old_account is None:
            raise BalanceInvariantError(
                f"Account {old_account_id} of transaction {transaction.id} no longer exists"
            )
        new_account = accounts.get(new_account_id)
        if new_account_id != old_account_id and (new_account is None or new_account.user_id != user_id):
            raise NotFoundError(f"Account {new_account_id} not found")

        new_type = TransactionType(changes.get('transaction_type') or transaction.transaction_type)
        if changes.get('amount') is not None:
            new_amount = signed_amount(new_type, changes['amount'])
        elif new_type == TransactionType.TRANSFER:
            new_amount = Decimal(transaction.amount)
        else:
            new_amount = signed_amount(new_type, abs(Decimal(transaction.amount)))

        # Reverse the old effect before applying the new one
        self._apply(old_account, user_id, -Decimal(transaction.amount), now)
        self._apply(new_account, user_id, new_amount, now)

        transaction.account_id = new_account.id
        transaction.transaction_type = new_type
        transaction.amount = new_amount

    def delete_transaction(self, user_id: int, transaction_id: int):
        transaction = self._owned_transaction(user_id, transaction_id)

        if not transaction.is_synced:
            account = self._locked_account(transaction.account_id)
            if account is None:
                raise BalanceInvariantError(
                    f"Account {transaction.account_id} of transaction {transaction.id} no longer exists"
                )
            self._apply(account, user_id, -Decimal(transaction.amount), utcnow())

        self.db.delete(transaction)
        self.db.commit()
        logger.info(f"Deleted transaction {transaction_id}")

    def _apply(self, account: Account, user_id: int, delta: Decimal, now):
        if account.user_id != user_id:
            raise BalanceInvariantError(f"Account {account.id} is not owned by user {user_id}")
        account.balance = Decimal(account.balance or 0) + delta
        touch(account, now)

    def _locked_account(self, account_id: int) -> Optional[Account]:
        return self.db.query(Account).filter(
            Account.id == account_id
        ).with_for_update().populate_existing().first()

    def _lock_accounts(self, account_ids) -> Dict[int, Account]:
        # Always in ascending id order, after the transaction row
        accounts = self.db.query(Account).filter(
            Account.id.in_(account_ids)
        ).order_by(Account.id).with_for_update().populate_existing().all()
        return {account.id: account for account in accounts}

    def _owned_account(self, user_id: int, account_id: int) -> Account:
        account = self._locked_account(account_id)
        if account is None or account.user_id != user_id:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def _owned_transaction(self, user_id: int, transaction_id: int) -> Transaction:
        transaction = self.db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.user_id == user_id
        ).with_for_update().populate_existing().first()
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction
