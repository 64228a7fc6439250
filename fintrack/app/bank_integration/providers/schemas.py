"""
TrueLayer payload models

Explicit shapes for the aggregator's token and data responses. Required fields
are required; everything the aggregator may omit is Optional. Unknown keys are
ignored so new provider fields never break a sync.
"""

from pydantic import BaseModel, ConfigDict
from typing import Optional, List
from datetime import datetime
from decimal import Decimal


class ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TokenResult(ProviderModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    token_type: str = "Bearer"
    consent_id: Optional[str] = None


class InstitutionProvider(ProviderModel):
    provider_id: str
    display_name: Optional[str] = None
    logo_uri: Optional[str] = None


class InstitutionInfo(ProviderModel):
    provider: InstitutionProvider
    full_name: Optional[str] = None
    update_timestamp: Optional[datetime] = None


class AccountNumber(ProviderModel):
    number: Optional[str] = None
    iban: Optional[str] = None
    sort_code: Optional[str] = None
    swift_bic: Optional[str] = None
    last_4_digits: Optional[str] = None

    def masked(self) -> Optional[str]:
        digits = self.last_4_digits or (self.number or self.iban or "")[-4:]
        return f"****{digits}" if digits else None


class ProviderAccount(ProviderModel):
    account_id: str
    account_type: Optional[str] = None
    display_name: str
    currency: str
    account_number: Optional[AccountNumber] = None
    update_timestamp: Optional[datetime] = None


class ProviderBalance(ProviderModel):
    currency: str
    current: Decimal
    available: Optional[Decimal] = None
    overdraft: Optional[Decimal] = None
    update_timestamp: Optional[datetime] = None


class MerchantLocation(ProviderModel):
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ProviderTransaction(ProviderModel):
    transaction_id: str
    timestamp: datetime
    description: Optional[str] = None
    amount: Decimal
    currency: Optional[str] = None
    transaction_type: Optional[str] = None
    transaction_category: Optional[str] = None
    transaction_classification: List[str] = []
    merchant_name: Optional[str] = None
    merchant_location: Optional[MerchantLocation] = None
