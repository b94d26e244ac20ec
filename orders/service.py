import secrets
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from core.config import Settings, get_settings
from core.errors import MarketplaceError
from core.logging_core import get_logger
from core.storage import InMemoryStorage
from ledger.models import EntryType, quantize_money
from ledger.service import AccountNotFoundError, LedgerService
from ledger.subscriptions import SubscriptionService

from .models import (
    ALLOWED_TRANSITIONS,
    CreateOrderRequest,
    Order,
    OrderStatus,
    WalletCreditResult,
    wallet_credit_for,
)

logger = get_logger(__name__)


class OrderServiceError(MarketplaceError):
    pass


class OrderNotFoundError(OrderServiceError):
    pass


class InvalidStatusTransitionError(OrderServiceError):
    pass


class OrderNotDeliveredError(OrderServiceError):
    pass


class SubscriptionRequiredError(OrderServiceError):
    pass


class OrderService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        subscriptions: SubscriptionService,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.settings = settings or get_settings()

    def create_order(self, request: CreateOrderRequest, now: Optional[datetime] = None) -> Order:
        now = now or datetime.now(timezone.utc)
        if self.storage.get_account(request.account_id) is None:
            raise AccountNotFoundError(f"Account {request.account_id} not found")

        subtotal = quantize_money(sum(item.actual_price * item.quantity for item in request.items))
        order_data = {
            "id": uuid4(),
            "order_number": f"PM-{now:%Y%m%d}-{secrets.token_hex(3).upper()}",
            "account_id": request.account_id,
            "items": [item.model_dump() for item in request.items],
            "status": OrderStatus.PENDING,
            "shipping_address": request.shipping_address,
            "subtotal": subtotal,
            "shipping": quantize_money(request.shipping),
            "total": quantize_money(subtotal + request.shipping),
            "wallet_credit": {"amount": wallet_credit_for(request.items), "credited": False, "credited_at": None},
            "created_at": now,
            "updated_at": now,
            "delivered_at": None,
        }
        self.storage.insert_order(order_data)
        logger.info("Order %s created for %s (wallet credit %s)",
                    order_data["order_number"], request.account_id, order_data["wallet_credit"]["amount"])
        return Order(**order_data)

    def get_order(self, order_id: UUID) -> Order:
        order_data = self.storage.get_order(order_id)
        if order_data is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return Order(**order_data)

    def update_status(
        self, order_id: UUID, status: OrderStatus, now: Optional[datetime] = None
    ) -> tuple[Order, Optional[WalletCreditResult]]:
        """Move the order along its lifecycle.

        Reaching ``delivered`` releases the wallet credit. A refused credit
        (inactive subscription) is logged and stays claimable through
        ``credit_on_delivery``.
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            order = self.get_order(order_id)
            if status not in ALLOWED_TRANSITIONS[order.status]:
                raise InvalidStatusTransitionError(
                    f"Cannot move order {order.order_number} from {order.status.value} to {status.value}"
                )

            def apply(doc: dict) -> None:
                doc["status"] = status
                doc["updated_at"] = now
                if status == OrderStatus.DELIVERED:
                    doc["delivered_at"] = now

            self.storage.update_order(order_id, apply)

        logger.info("Order %s moved %s -> %s", order.order_number, order.status.value, status.value)

        credit = None
        if status == OrderStatus.DELIVERED:
            try:
                credit = self.credit_on_delivery(order_id, now)
            except SubscriptionRequiredError as e:
                logger.info("Wallet credit for %s deferred: %s", order.order_number, e)
        return self.get_order(order_id), credit

    def credit_on_delivery(self, order_id: UUID, now: Optional[datetime] = None) -> WalletCreditResult:
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            order = self.get_order(order_id)
            credit = order.wallet_credit
            if credit.credited:
                return WalletCreditResult(
                    order_id=order_id, amount=credit.amount, credited=True, already_credited=True,
                    credited_at=credit.credited_at, message="Wallet credit already applied",
                )

            if order.status != OrderStatus.DELIVERED:
                raise OrderNotDeliveredError(
                    f"Order {order.order_number} is {order.status.value}, wallet credit needs delivery"
                )

            if credit.amount > 0:
                if (self.settings.wallet_credit_requires_active_subscription
                        and not self.subscriptions.has_active_subscription(order.account_id, now)):
                    raise SubscriptionRequiredError(
                        f"Account {order.account_id} needs an active subscription for wallet credit"
                    )
                self.ledger.credit(
                    order.account_id,
                    credit.amount,
                    EntryType.WALLET_CREDIT,
                    reference=f"order:{order.order_number}",
                    description=f"Discount refund for order {order.order_number}",
                    now=now,
                )

            def apply(doc: dict) -> None:
                doc["wallet_credit"]["credited"] = True
                doc["wallet_credit"]["credited_at"] = now
                doc["updated_at"] = now

            self.storage.update_order(order_id, apply)

        logger.info("Wallet credit of %s released for order %s", credit.amount, order.order_number)
        return WalletCreditResult(
            order_id=order_id, amount=credit.amount, credited=True, credited_at=now,
            message="Wallet credit applied" if credit.amount > 0 else "No wallet credit owed",
        )
