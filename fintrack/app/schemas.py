from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date as DateType
from decimal import Decimal

from .models import AccountType, ConnectionStatus, SyncStatus, TransactionType


# Connections
class AuthUrlResponse(BaseModel):
    auth_url: str


class CallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: Optional[str] = None


class Connection(BaseModel):
    # Tokens are never serialized
    id: int
    provider: str
    institution_id: str
    institution_name: Optional[str] = None
    status: ConnectionStatus
    connection_error: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    consent_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SyncParams(BaseModel):
    from_date: Optional[DateType] = None
    to_date: Optional[DateType] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        return self


class SyncLog(BaseModel):
    id: int
    status: SyncStatus
    from_date: Optional[DateType] = None
    to_date: Optional[DateType] = None
    accounts_total: int
    accounts_synced: int
    transactions_imported: int
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Accounts
class AccountBase(BaseModel):
    name: str
    account_type: AccountType = AccountType.OTHER
    institution: Optional[str] = None
    currency: str = Field("GBP", min_length=3, max_length=3)


class AccountCreate(AccountBase):
    balance: Decimal = Decimal("0.00")
    account_number: Optional[str] = None
    account_metadata: Optional[Dict[str, Any]] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    account_type: Optional[AccountType] = None
    institution: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    is_active: Optional[bool] = None
    balance: Optional[Decimal] = None
    account_metadata: Optional[Dict[str, Any]] = None


class Account(AccountBase):
    id: int
    balance: Decimal
    is_active: bool
    account_number: Optional[str] = None
    connection_id: Optional[int] = None
    external_id: Optional[str] = None
    account_metadata: Optional[Dict[str, Any]] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Transactions
class TransactionBase(BaseModel):
    date: DateType
    transaction_type: TransactionType
    category: str = "Uncategorized"
    subcategory: Optional[str] = None
    description: Optional[str] = None
    merchant: Optional[str] = None
    is_recurring: bool = False
    tags: List[str] = []
    notes: Optional[str] = None
    location: Optional[Dict[str, Any]] = None


class TransactionCreate(TransactionBase):
    account_id: int
    # Magnitude for income/expense, signed for transfers
    amount: Decimal

    @model_validator(mode="after")
    def check_amount(self):
        if self.amount == 0:
            raise ValueError("amount must not be zero")
        return self


class TransactionUpdate(BaseModel):
    account_id: Optional[int] = None
    date: Optional[DateType] = None
    amount: Optional[Decimal] = None
    transaction_type: Optional[TransactionType] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    description: Optional[str] = None
    merchant: Optional[str] = None
    is_recurring: Optional[bool] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    location: Optional[Dict[str, Any]] = None


class Transaction(TransactionBase):
    id: int
    account_id: int
    amount: Decimal
    external_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaginatedTransactions(BaseModel):
    transactions: List[Transaction]
    total: int
    skip: int
    limit: int


class CallbackResponse(BaseModel):
    connection: Connection
    accounts: List[Account]
    errors: List[str] = []
    message: str = "Bank connection successful"


class SyncResponse(BaseModel):
    status: str
    accounts: List[Account]
    transaction_count: int
    accounts_synced: int
    accounts_total: int
    errors: List[str] = []
    message: Optional[str] = None
