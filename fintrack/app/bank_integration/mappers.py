"""
Provider Type Mappers

Translate TrueLayer enums into fintrack's own vocabulary. Both mappers are
total: anything unknown degrades to a fixed fallback and is logged, so a new
provider value never blocks a sync.
"""

import logging
from typing import Any

from fintrack.app.models import AccountType

logger = logging.getLogger(__name__)

FALLBACK_ACCOUNT_TYPE = AccountType.OTHER
FALLBACK_CATEGORY = "Uncategorized"

ACCOUNT_TYPE_MAP = {
    'TRANSACTION': AccountType.BANK,
    'SAVINGS': AccountType.BANK,
    'BUSINESS_TRANSACTION': AccountType.BANK,
    'BUSINESS_SAVINGS': AccountType.BANK,
    'CREDIT_CARD': AccountType.CREDIT,
    'LOAN': AccountType.LOAN,
    'MORTGAGE': AccountType.LOAN,
    'INVESTMENT': AccountType.INVESTMENT,
    'PENSION': AccountType.INVESTMENT,
}

TRANSACTION_CATEGORY_MAP = {
    'BILLS_AND_SERVICES': 'Bills',
    'ENTERTAINMENT': 'Entertainment',
    'EXPENSES': 'Miscellaneous',
    'FAMILY': 'Family',
    'FOOD_AND_DRINK': 'Food & Dining',
    'GENERAL': 'Miscellaneous',
    'INCOME': 'Income',
    'PAYMENTS': 'Transfers',
    'SAVINGS_AND_INVESTMENTS': 'Investments',
    'SHOPPING': 'Shopping',
    'TRANSPORT': 'Transportation',
    'TRAVEL': 'Travel',
}


def _normalize(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def map_account_type(provider_type: Any) -> AccountType:
    mapped = ACCOUNT_TYPE_MAP.get(_normalize(provider_type))
    if mapped is None:
        logger.info(f"Unmapped provider account type {provider_type!r}, using '{FALLBACK_ACCOUNT_TYPE.value}'")
        return FALLBACK_ACCOUNT_TYPE
    return mapped


def map_transaction_category(provider_category: Any) -> str:
    mapped = TRANSACTION_CATEGORY_MAP.get(_normalize(provider_category))
    if mapped is None:
        logger.info(f"Unmapped provider transaction category {provider_category!r}, using '{FALLBACK_CATEGORY}'")
        return FALLBACK_CATEGORY
    return mapped
