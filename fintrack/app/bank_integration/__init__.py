"""
Bank Integration Module

Connects fintrack to the TrueLayer aggregator: OAuth connections, account and
transaction sync with write-once deduplication, provider taxonomy mapping.
"""

from .service import BankSyncService
from .connection_manager import ConnectionManager
from .account_sync import AccountSynchronizer
from .transaction_sync import TransactionSynchronizer
from .locks import SyncLocks

__all__ = [
    'BankSyncService', 'ConnectionManager', 'AccountSynchronizer',
    'TransactionSynchronizer', 'SyncLocks'
]
