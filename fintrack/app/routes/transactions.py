from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date

from fintrack.database import get_db
from ..models import Transaction, TransactionType
from ..schemas import (
    Transaction as TransactionSchema, TransactionCreate, TransactionUpdate, PaginatedTransactions
)
from ..auth import get_current_user_id
from ..dependencies import get_ledger
from ..ledger import BalanceLedger
from ..bank_integration.errors import (
    BalanceInvariantError, NotFoundError, SyncedTransactionError
)

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("/", response_model=PaginatedTransactions)
def get_transactions(
    skip: int = 0,
    limit: int = 100,
    start_date: date = None,
    end_date: date = None,
    account_id: Optional[int] = None,
    category: Optional[str] = None,
    transaction_type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    query = db.query(Transaction).filter(Transaction.user_id == user_id)

    if start_date:
        query = query.filter(Transaction.date >= start_date)
    if end_date:
        query = query.filter(Transaction.date <= end_date)
    if account_id:
        query = query.filter(Transaction.account_id == account_id)
    if category:
        query = query.filter(Transaction.category == category)
    if transaction_type:
        query = query.filter(Transaction.transaction_type == transaction_type)

    total = query.count()
    transactions = query.order_by(
        Transaction.date.desc(), Transaction.id.desc()
    ).offset(skip).limit(limit).all()

    return {
        "transactions": transactions,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/{transaction_id}", response_model=TransactionSchema)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    transaction = db.query(Transaction).filter(
        Transaction.id == transaction_id,
        Transaction.user_id == user_id
    ).first()
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


@router.post("/", response_model=TransactionSchema)
def create_transaction(
    transaction: TransactionCreate,
    ledger: BalanceLedger = Depends(get_ledger),
    user_id: int = Depends(get_current_user_id)
):
    try:
        return ledger.create_transaction(user_id, transaction.model_dump())
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BalanceInvariantError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/{transaction_id}", response_model=TransactionSchema)
def update_transaction(
    transaction_id: int,
    transaction_update: TransactionUpdate,
    ledger: BalanceLedger = Depends(get_ledger),
    user_id: int = Depends(get_current_user_id)
):
    changes = transaction_update.model_dump(exclude_unset=True)
    if 'amount' in changes and changes['amount'] is not None and changes['amount'] == 0:
        raise HTTPException(status_code=400, detail="amount must not be zero")

    try:
        return ledger.update_transaction(user_id, transaction_id, changes)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncedTransactionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BalanceInvariantError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    ledger: BalanceLedger = Depends(get_ledger),
    user_id: int = Depends(get_current_user_id)
):
    try:
        ledger.delete_transaction(user_id, transaction_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BalanceInvariantError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"message": "Transaction deleted successfully"}
