"""
Orders and the wallet-credit-on-delivery workflow.
"""

from .models import OrderStatus, Order, OrderItem, WalletCredit, WalletCreditResult
from .service import (
    OrderService,
    OrderServiceError,
    OrderNotFoundError,
    InvalidStatusTransitionError,
    OrderNotDeliveredError,
    SubscriptionRequiredError,
)

__all__ = [
    "OrderStatus",
    "Order",
    "OrderItem",
    "WalletCredit",
    "WalletCreditResult",
    "OrderService",
    "OrderServiceError",
    "OrderNotFoundError",
    "InvalidStatusTransitionError",
    "OrderNotDeliveredError",
    "SubscriptionRequiredError",
]
