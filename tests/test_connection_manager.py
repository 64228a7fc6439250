"""Tests for connection lifecycle and token refresh."""

import asyncio
from datetime import timedelta

import pytest

from fintrack.app.models import Connection, ConnectionStatus
from fintrack.app.bank_integration.errors import ConnectionRefreshError, ConnectionRevokedError, ProviderDataError
from fintrack.app.bank_integration.providers import InstitutionInfo, TokenResult


def test_token_is_stale_exactly_at_expiry(make_connection, connection_manager):
    connection = make_connection()
    expires_at = connection.token_expires_at

    assert connection_manager.is_token_fresh(connection, now=expires_at - timedelta(seconds=1))
    assert not connection_manager.is_token_fresh(connection, now=expires_at)


def test_fresh_token_is_returned_without_refresh(make_connection, connection_manager, fake_provider):
    connection = make_connection(access_token="access-0")

    token = asyncio.run(connection_manager.ensure_fresh_token(connection))

    assert token == "access-0"
    assert fake_provider.refresh_calls == 0


def test_expired_token_is_refreshed_and_stored(db, make_connection, connection_manager, fake_provider):
    connection = make_connection(expires_in=-60)

    token = asyncio.run(connection_manager.ensure_fresh_token(connection))

    db.refresh(connection)
    assert token == "access-1"
    assert connection.access_token == "access-1"
    assert connection.refresh_token == "refresh-1"
    assert connection.status == ConnectionStatus.ACTIVE
    assert connection_manager.is_token_fresh(connection)
    assert fake_provider.refresh_calls == 1


def test_concurrent_callers_share_one_refresh(make_connection, connection_manager, fake_provider):
    connection = make_connection(expires_in=-60)

    async def both():
        return await asyncio.gather(
            connection_manager.ensure_fresh_token(connection),
            connection_manager.ensure_fresh_token(connection)
        )

    tokens = asyncio.run(both())

    assert tokens == ["access-1", "access-1"]
    assert fake_provider.refresh_calls == 1


def test_refresh_failure_marks_connection_error(db, make_connection, connection_manager, fake_provider):
    connection = make_connection(expires_in=-60)
    fake_provider.token_status = 400

    with pytest.raises(ConnectionRefreshError):
        asyncio.run(connection_manager.ensure_fresh_token(connection))

    db.refresh(connection)
    assert connection.status == ConnectionStatus.ERROR
    assert "400" in connection.connection_error


def test_missing_refresh_token_marks_connection_expired(db, make_connection, connection_manager, fake_provider):
    connection = make_connection(refresh_token=None, expires_in=-60)

    with pytest.raises(ConnectionRefreshError):
        asyncio.run(connection_manager.ensure_fresh_token(connection))

    db.refresh(connection)
    assert connection.status == ConnectionStatus.EXPIRED
    assert fake_provider.refresh_calls == 0


def test_revoked_connection_is_never_refreshed(db, make_connection, connection_manager, fake_provider):
    connection = make_connection(expires_in=-60, status=ConnectionStatus.REVOKED)

    with pytest.raises(ConnectionRevokedError):
        asyncio.run(connection_manager.ensure_fresh_token(connection))
    connection_manager._mark_failed(connection, ConnectionStatus.ERROR, "refresh failed")

    db.refresh(connection)
    assert connection.status == ConnectionStatus.REVOKED
    assert connection.connection_error is None
    assert fake_provider.refresh_calls == 0


def test_unauthorized_call_is_retried_once_after_refresh(make_connection, connection_manager,
                                                         provider_client, fake_provider):
    connection = make_connection(access_token="stale")
    fake_provider.rejected_tokens.add("stale")

    accounts = asyncio.run(connection_manager.call_with_token(connection, provider_client.fetch_accounts))

    assert accounts == []
    assert fake_provider.refresh_calls == 1
    assert connection.access_token == "access-1"


def test_second_unauthorized_response_propagates(make_connection, connection_manager,
                                                 provider_client, fake_provider):
    connection = make_connection(access_token="stale")
    fake_provider.rejected_tokens.update({"stale", "access-1"})

    with pytest.raises(ProviderDataError) as exc_info:
        asyncio.run(connection_manager.call_with_token(connection, provider_client.fetch_accounts))

    assert exc_info.value.status_code == 401
    assert fake_provider.refresh_calls == 1


def test_non_auth_errors_are_not_retried(make_connection, connection_manager, provider_client, fake_provider):
    connection = make_connection()
    fake_provider.add_account("acc-1", 10.0)
    fake_provider.failing_balances.add("acc-1")

    with pytest.raises(ProviderDataError):
        asyncio.run(connection_manager.call_with_token(
            connection, lambda token: provider_client.fetch_balance(token, "acc-1")
        ))

    assert fake_provider.refresh_calls == 0


def test_upsert_reuses_row_for_same_institution(db, connection_manager):
    institution = InstitutionInfo.model_validate({"provider": {"provider_id": "ob-monzo", "display_name": "Monzo"}})

    first = connection_manager.upsert_connection(
        1, "truelayer", TokenResult(access_token="a1", refresh_token="r1", expires_in=3600), institution
    )
    second = connection_manager.upsert_connection(
        1, "truelayer", TokenResult(access_token="a2", expires_in=3600), institution
    )

    assert first.id == second.id
    assert db.query(Connection).count() == 1
    assert second.access_token == "a2"
    # Kept because the second grant did not rotate it
    assert second.refresh_token == "r1"
    assert second.institution_name == "Monzo"
    assert second.provider_metadata["provider"]["provider_id"] == "ob-monzo"


def test_disconnect_clears_tokens(make_connection, connection_manager):
    connection = make_connection()

    connection_manager.disconnect(connection)

    assert connection.status == ConnectionStatus.REVOKED
    assert connection.access_token is None
    assert connection.refresh_token is None
