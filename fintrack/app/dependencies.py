from functools import lru_cache
from fastapi import Depends
from sqlalchemy.orm import Session

from fintrack.config import get_settings
from fintrack.database import get_db
from .bank_integration import BankSyncService, SyncLocks
from .bank_integration.providers import TrueLayerClient
from .ledger import BalanceLedger


@lru_cache()
def get_sync_locks() -> SyncLocks:
    return SyncLocks()


def get_provider_client() -> TrueLayerClient:
    return TrueLayerClient.from_settings(get_settings())


def get_bank_sync_service(
    db: Session = Depends(get_db),
    client: TrueLayerClient = Depends(get_provider_client),
    locks: SyncLocks = Depends(get_sync_locks)
) -> BankSyncService:
    return BankSyncService(db, client, locks, default_sync_days=get_settings().sync_default_days)


def get_ledger(db: Session = Depends(get_db)) -> BalanceLedger:
    return BalanceLedger(db)
