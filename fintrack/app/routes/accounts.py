import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List

from fintrack.database import get_db
from ..models import Account, AccountType, Connection, ConnectionStatus, Transaction, utcnow, touch
from ..schemas import (
    Account as AccountSchema, AccountCreate, AccountUpdate, Transaction as TransactionSchema
)
from ..auth import get_current_user_id
from ..bank_integration.account_sync import DEFAULT_ACCOUNT_METADATA

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])


def get_owned_account(db: Session, user_id: int, account_id: int) -> Account:
    account = db.query(Account).filter(
        Account.id == account_id,
        Account.user_id == user_id
    ).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.get("/", response_model=List[AccountSchema])
def get_accounts(
    skip: int = 0,
    limit: int = 1000,
    account_type: str = None,
    show_inactive: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    query = db.query(Account).filter(Account.user_id == user_id)
    if not show_inactive:
        query = query.filter(Account.is_active == True)
    if account_type:
        try:
            query = query.filter(Account.account_type == AccountType(account_type.lower()))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown account type: {account_type}")

    return query.order_by(Account.id).offset(skip).limit(limit).all()


@router.post("/", response_model=AccountSchema)
def create_account(
    account: AccountCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    now = utcnow()
    db_account = Account(
        user_id=user_id,
        name=account.name,
        account_type=account.account_type,
        institution=account.institution,
        currency=account.currency.upper(),
        balance=account.balance,
        account_number=account.account_number,
        account_metadata=account.account_metadata or dict(DEFAULT_ACCOUNT_METADATA),
        is_active=True,
        created_at=now,
        updated_at=now
    )
    db.add(db_account)
    db.commit()
    db.refresh(db_account)
    return db_account


@router.get("/{account_id}", response_model=AccountSchema)
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    return get_owned_account(db, user_id, account_id)


@router.put("/{account_id}", response_model=AccountSchema)
def update_account(
    account_id: int,
    account_update: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    account = get_owned_account(db, user_id, account_id)
    update_data = account_update.model_dump(exclude_unset=True)

    # Linked balances come from the bank
    if 'balance' in update_data and account.is_linked:
        raise HTTPException(
            status_code=400,
            detail="Balance of a bank-linked account is updated by sync and cannot be edited"
        )

    for field, value in update_data.items():
        if value is None and field in ('name', 'account_type', 'currency', 'is_active', 'balance'):
            continue
        setattr(account, field, value)
    if account.currency:
        account.currency = account.currency.upper()

    touch(account)
    db.commit()
    db.refresh(account)
    return account


@router.delete("/{account_id}")
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    account = get_owned_account(db, user_id, account_id)

    if account.connection_id is not None:
        connection = db.query(Connection).filter(Connection.id == account.connection_id).first()
        if connection and connection.status != ConnectionStatus.REVOKED:
            raise HTTPException(
                status_code=409,
                detail="Account is linked to an active bank connection. Disconnect the bank first."
            )

    transaction_count = db.query(Transaction).filter(Transaction.account_id == account.id).count()
    db.delete(account)
    db.commit()
    logger.info(f"Deleted account {account_id} with {transaction_count} transactions")
    return {"message": "Account deleted successfully"}


@router.get("/{account_id}/transactions", response_model=List[TransactionSchema])
def get_account_transactions(
    account_id: int,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    account = get_owned_account(db, user_id, account_id)
    return db.query(Transaction).filter(
        Transaction.account_id == account.id
    ).order_by(Transaction.date.desc(), Transaction.id.desc()).offset(skip).limit(limit).all()
