"""Shared pytest fixtures for fintrack tests."""

from datetime import timedelta
from decimal import Decimal
from urllib.parse import parse_qsl

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fintrack.database import Base
from fintrack.app.models import Account, AccountType, Connection, ConnectionStatus, utcnow
from fintrack.app.bank_integration import BankSyncService, ConnectionManager, SyncLocks
from fintrack.app.bank_integration.providers import TrueLayerClient

AUTH_HOST = "auth.test"
API_HOST = "api.test"


class FakeTrueLayer:
    """
    Scripted stand-in for the TrueLayer auth and data APIs.

    Served through httpx.MockTransport so the real client code runs end to end.
    """

    def __init__(self):
        self.institution = {
            "provider": {"provider_id": "ob-monzo", "display_name": "Monzo", "logo_uri": "https://logo.test/monzo.svg"},
            "full_name": "Jane Doe"
        }
        self.accounts = []
        self.balances = {}
        self.transactions = {}
        self.failing_balances = set()
        self.failing_transactions = set()
        self.rejected_tokens = set()
        self.token_status = 200
        self.expires_in = 3600
        self.issued = 0
        self.exchange_calls = 0
        self.refresh_calls = 0
        self.requests = []

    def add_account(self, account_id, balance, account_type="TRANSACTION", display_name=None, currency="GBP"):
        self.accounts.append({
            "account_id": account_id,
            "account_type": account_type,
            "display_name": display_name or f"Account {account_id}",
            "currency": currency,
            "account_number": {"number": "12345678", "sort_code": "01-02-03"},
            "update_timestamp": "2024-01-31T09:00:00Z"
        })
        self.balances[account_id] = balance
        self.transactions.setdefault(account_id, [])

    def add_transaction(self, account_id, transaction_id, amount, timestamp, category="GENERAL", **extra):
        payload = {
            "transaction_id": transaction_id,
            "timestamp": timestamp,
            "description": extra.pop("description", f"Transaction {transaction_id}"),
            "amount": amount,
            "currency": "GBP",
            "transaction_type": "DEBIT" if float(amount) < 0 else "CREDIT",
            "transaction_category": category,
            "transaction_classification": []
        }
        payload.update(extra)
        self.transactions.setdefault(account_id, []).append(payload)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == AUTH_HOST:
            return self._token(request)

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.rejected_tokens:
            return httpx.Response(401, json={"error": "invalid_token"})

        parts = request.url.path.strip("/").split("/")
        if parts == ["data", "v1", "info"]:
            return httpx.Response(200, json={"results": [self.institution]})
        if parts == ["data", "v1", "accounts"]:
            return httpx.Response(200, json={"results": self.accounts})
        if len(parts) == 5 and parts[4] == "balance":
            return self._balance(parts[3])
        if len(parts) == 5 and parts[4] == "transactions":
            return self._transactions(parts[3], request)
        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request):
        form = dict(parse_qsl(request.content.decode()))
        if form.get("grant_type") == "refresh_token":
            self.refresh_calls += 1
        else:
            self.exchange_calls += 1

        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})

        self.issued += 1
        return httpx.Response(200, json={
            "access_token": f"access-{self.issued}",
            "refresh_token": f"refresh-{self.issued}",
            "expires_in": self.expires_in,
            "token_type": "Bearer"
        })

    def _balance(self, account_id):
        if account_id in self.failing_balances:
            return httpx.Response(500, json={"error": "provider_error"})
        return httpx.Response(200, json={"results": [{
            "currency": "GBP",
            "available": self.balances[account_id],
            "current": self.balances[account_id],
            "update_timestamp": "2024-01-31T09:00:00Z"
        }]})

    def _transactions(self, account_id, request):
        if account_id in self.failing_transactions:
            return httpx.Response(500, json={"error": "provider_error"})
        date_from = request.url.params.get("from")
        date_to = request.url.params.get("to")
        results = [
            tx for tx in self.transactions.get(account_id, [])
            if date_from <= tx["timestamp"][:10] <= date_to
        ]
        return httpx.Response(200, json={"results": results})


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads for the duration of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def fake_provider():
    return FakeTrueLayer()


@pytest.fixture
def provider_client(fake_provider):
    return TrueLayerClient(
        client_id="test-client",
        client_secret="test-secret",
        redirect_uri="http://localhost:3000/connections/callback",
        auth_url=f"https://{AUTH_HOST}",
        api_url=f"https://{API_HOST}",
        timeout=5.0,
        transport=httpx.MockTransport(fake_provider.handler)
    )


@pytest.fixture
def sync_locks():
    return SyncLocks()


@pytest.fixture
def connection_manager(db, provider_client, sync_locks):
    return ConnectionManager(db, provider_client, sync_locks)


@pytest.fixture
def service(db, provider_client, sync_locks):
    return BankSyncService(db, provider_client, sync_locks)


@pytest.fixture
def make_connection(db):
    """Insert a connection row directly, bypassing the OAuth flow."""

    def _make(user_id=1, access_token="access-0", refresh_token="refresh-0",
              expires_in=3600, status=ConnectionStatus.ACTIVE, institution_id="ob-monzo"):
        now = utcnow()
        connection = Connection(
            user_id=user_id,
            provider="truelayer",
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=now + timedelta(seconds=expires_in),
            institution_id=institution_id,
            institution_name="Monzo",
            status=status,
            created_at=now,
            updated_at=now
        )
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection

    return _make


@pytest.fixture
def make_account(db):
    """Insert an account row, linked when a connection is given."""

    def _make(user_id=1, name="Checking", balance="100.00", connection=None, external_id=None):
        now = utcnow()
        account = Account(
            user_id=user_id,
            name=name,
            account_type=AccountType.BANK,
            balance=Decimal(balance),
            currency="GBP",
            connection_id=connection.id if connection else None,
            external_id=external_id,
            created_at=now,
            updated_at=now
        )
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return _make
