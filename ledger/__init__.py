"""
Account Ledger for Referral Earnings and Wallet Credits

This module provides:
- Per-account balance with per-level earnings buckets
- Atomic credits with immutable audit entries
- Subscription activation and referral code issuance
- Withdrawal request / approve / reject flow
"""

from .models import (
    EntryType,
    WithdrawalStatus,
    Account,
    AccountBalance,
    LedgerEntry,
    WithdrawalRecord,
)
from .service import LedgerService
from .subscriptions import SubscriptionService

__all__ = [
    "EntryType",
    "WithdrawalStatus",
    "Account",
    "AccountBalance",
    "LedgerEntry",
    "WithdrawalRecord",
    "LedgerService",
    "SubscriptionService",
]
