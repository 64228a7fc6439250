"""
Bank Connection Routes

User-facing endpoints for:
- Starting the TrueLayer OAuth flow and handling its callback
- Syncing accounts and transactions
- Disconnecting and deleting connections
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, status
from typing import List, Optional

from fintrack.app import schemas
from fintrack.app.auth import get_current_user_id
from fintrack.app.dependencies import get_bank_sync_service
from fintrack.app.bank_integration.service import BankSyncService
from fintrack.app.bank_integration.errors import (
    BankSyncError, ConnectionRefreshError, ConnectionRevokedError, InvalidStateError,
    NotFoundError, ProviderAuthError, ProviderError
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])


def to_http_error(e: BankSyncError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (ProviderAuthError, ConnectionRefreshError)):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Bank authorization failed. Please reconnect your bank. ({e})"
        )
    if isinstance(e, ProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Bank data unavailable: {e}")
    if isinstance(e, (ConnectionRevokedError, InvalidStateError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/auth-url", response_model=schemas.AuthUrlResponse)
def get_auth_url(
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    return {"auth_url": service.get_authorization_url(user_id)}


@router.post("/callback", response_model=schemas.CallbackResponse)
async def oauth_callback(
    request: schemas.CallbackRequest,
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """
    Complete the OAuth flow with the code the aggregator redirected back with.

    Example:
        POST /connections/callback
        {"code": "abc123", "state": "42"}
    """
    try:
        result = await service.handle_callback(user_id, request.code, request.state)
    except BankSyncError as e:
        logger.error(f"OAuth callback failed for user {user_id}: {e}")
        raise to_http_error(e)

    message = "Bank connection successful"
    if result['errors']:
        message = f"Bank connected, {len(result['errors'])} accounts could not be synced"
    return schemas.CallbackResponse(
        connection=result['connection'],
        accounts=result['accounts'],
        errors=result['errors'],
        message=message
    )


@router.get("/", response_model=List[schemas.Connection])
def list_connections(
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    return service.list_connections(user_id)


@router.get("/{connection_id}", response_model=schemas.Connection)
def get_connection(
    connection_id: int,
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    try:
        return service.get_connection(user_id, connection_id)
    except BankSyncError as e:
        raise to_http_error(e)


@router.post("/{connection_id}/sync", response_model=schemas.SyncResponse)
async def sync_connection(
    connection_id: int,
    sync_params: Optional[schemas.SyncParams] = None,
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """
    Sync accounts and transactions for a connection.

    Example:
        POST /connections/1/sync
        {"from_date": "2024-01-01", "to_date": "2024-01-31"}

        Response:
        {
            "status": "partial",
            "accounts": [...],
            "transaction_count": 12,
            "accounts_synced": 1,
            "accounts_total": 2,
            "errors": ["Account Savings (7): ..."],
            "message": "1 of 2 accounts synced"
        }
    """
    from_date = sync_params.from_date if sync_params else None
    to_date = sync_params.to_date if sync_params else None

    try:
        result = await service.sync_connection(user_id, connection_id, from_date, to_date)
    except BankSyncError as e:
        raise to_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return schemas.SyncResponse(
        status=result['status'],
        accounts=result['accounts'],
        transaction_count=result['transaction_count'],
        accounts_synced=result['accounts_synced'],
        accounts_total=result['accounts_total'],
        errors=result['errors'],
        message=f"{result['accounts_synced']} of {result['accounts_total']} accounts synced"
    )


@router.get("/{connection_id}/sync-logs", response_model=List[schemas.SyncLog])
def list_sync_logs(
    connection_id: int,
    limit: int = 20,
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    try:
        return service.list_sync_logs(user_id, connection_id, limit=limit)
    except BankSyncError as e:
        raise to_http_error(e)


@router.post("/{connection_id}/disconnect", response_model=schemas.Connection)
async def disconnect_connection(
    connection_id: int,
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """Revoke the connection but keep its accounts and transactions."""
    try:
        return await service.disconnect_connection(user_id, connection_id)
    except BankSyncError as e:
        raise to_http_error(e)


@router.delete("/{connection_id}")
async def delete_connection(
    connection_id: int,
    user_id: int = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    try:
        await service.delete_connection(user_id, connection_id)
    except BankSyncError as e:
        raise to_http_error(e)
    return {"message": "Connection and associated data removed successfully"}
