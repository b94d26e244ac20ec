"""
Payment Gateway Client and Settlement Reconciliation

This module provides:
- Signed JazzCash mobile-wallet payloads (salted HMAC-SHA256)
- Response-code interpretation for callbacks and status inquiries
- Pending-transaction holding with scheduled status inquiries
- Exactly-once promotion to settled transactions
"""

from .models import (
    TransactionStatus,
    InquiryStatus,
    PendingTransaction,
    Transaction,
    StatusInquiryResult,
)
from .gateway import (
    JazzCashClient,
    PaymentError,
    GatewayError,
    InvalidSignatureError,
    compute_secure_hash,
)
from .reconciler import SettlementReconciler, PendingTransactionNotFoundError

__all__ = [
    "TransactionStatus",
    "InquiryStatus",
    "PendingTransaction",
    "Transaction",
    "StatusInquiryResult",
    "JazzCashClient",
    "PaymentError",
    "GatewayError",
    "InvalidSignatureError",
    "compute_secure_hash",
    "SettlementReconciler",
    "PendingTransactionNotFoundError",
]
