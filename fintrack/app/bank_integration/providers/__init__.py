"""
Bank Provider Client

TrueLayer client and its validated payload models.
"""

from .truelayer import TrueLayerClient, PROVIDER_NAME
from .schemas import (
    TokenResult, InstitutionInfo, ProviderAccount, ProviderBalance, ProviderTransaction
)

__all__ = [
    'TrueLayerClient', 'PROVIDER_NAME', 'TokenResult', 'InstitutionInfo',
    'ProviderAccount', 'ProviderBalance', 'ProviderTransaction'
]
