from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, Numeric, Text, JSON, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime, UTC
import enum

from fintrack.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(UTC).replace(tzinfo=None)


def touch(entity, now: datetime = None):
    """Stamp updated_at on a row that is about to be written."""
    entity.updated_at = now or utcnow()
    return entity


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ERROR = "error"


class AccountType(str, enum.Enum):
    BANK = "bank"
    CREDIT = "credit"
    INVESTMENT = "investment"
    LOAN = "loan"
    CASH = "cash"
    OTHER = "other"


class TransactionType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class SyncStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "institution_id", name="uq_connections_user_provider_institution"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="truelayer")

    # OAuth tokens
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # Institution
    institution_id = Column(String(255), nullable=False)
    institution_name = Column(String(255), nullable=True)

    # Connection status
    status = Column(SQLEnum(ConnectionStatus), nullable=False, default=ConnectionStatus.ACTIVE)
    connection_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    # Provider specifics
    consent_id = Column(String(255), nullable=True)
    provider_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    accounts = relationship("Account", back_populates="connection", cascade="all, delete-orphan")
    sync_logs = relationship("SyncLog", back_populates="connection", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Connection(id={self.id}, provider={self.provider}, status={self.status})>"


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="uq_accounts_connection_external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    account_type = Column(SQLEnum(AccountType), nullable=False, default=AccountType.OTHER)
    institution = Column(String(255), nullable=True)
    balance = Column(Numeric(15, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="GBP")
    is_active = Column(Boolean, nullable=False, default=True)
    account_number = Column(String(50), nullable=True)

    # Set only for accounts discovered through a bank connection
    connection_id = Column(Integer, ForeignKey("connections.id", ondelete="CASCADE"), nullable=True, index=True)
    external_id = Column(String(255), nullable=True, index=True)
    account_metadata = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    connection = relationship("Connection", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account", cascade="all, delete-orphan")

    @property
    def is_linked(self) -> bool:
        return self.connection_id is not None

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, name={self.name!r}, balance={self.balance})>"


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        # NULL external ids never collide, so manual rows are unaffected
        UniqueConstraint("account_id", "external_id", name="uq_transactions_account_external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    category = Column(String(100), nullable=False, default="Uncategorized")
    subcategory = Column(String(100), nullable=True)
    description = Column(String(500), nullable=True)
    merchant = Column(String(255), nullable=True)
    external_id = Column(String(255), nullable=True)
    is_recurring = Column(Boolean, nullable=False, default=False)
    tags = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    location = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    account = relationship("Account", back_populates="transactions")

    @property
    def is_synced(self) -> bool:
        return self.external_id is not None


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(SQLEnum(SyncStatus), nullable=False)

    # Date range
    from_date = Column(Date, nullable=True)
    to_date = Column(Date, nullable=True)

    # Results
    accounts_total = Column(Integer, default=0)
    accounts_synced = Column(Integer, default=0)
    transactions_imported = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    # Timing
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    connection = relationship("Connection", back_populates="sync_logs")
