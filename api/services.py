from datetime import datetime
from typing import Optional

from core.config import Settings, get_settings
from core.logging_core import get_logger
from core.storage import InMemoryStorage
from core.worker import PeriodicWorker
from ledger.models import Account, CreateAccountRequest
from ledger.service import LedgerService
from ledger.subscriptions import SubscriptionService
from orders.service import OrderService
from payments.gateway import JazzCashClient
from payments.reconciler import SettlementReconciler
from referrals.commission import CommissionDistributor
from referrals.graph import ReferralGraph
from referrals.models import LinkResult

logger = get_logger(__name__)


class Services:
    """All services of one application instance, sharing a single store."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[InMemoryStorage] = None,
        gateway: Optional[JazzCashClient] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.gateway = gateway or JazzCashClient(self.settings)

        self.ledger = LedgerService(self.storage, self.settings)
        self.subscriptions = SubscriptionService(self.storage, self.settings)
        self.graph = ReferralGraph(self.storage, self.settings)
        self.distributor = CommissionDistributor(self.ledger, self.graph)
        self.reconciler = SettlementReconciler(
            self.storage, self.gateway, self.subscriptions, self.distributor, self.settings,
        )
        self.orders = OrderService(self.storage, self.ledger, self.subscriptions, self.settings)

        self.workers = [
            PeriodicWorker("settlement-scan", self.reconciler.process_due, self.settings.scan_interval_seconds),
            PeriodicWorker(
                "subscription-expiry",
                self.subscriptions.expire_subscriptions,
                self.settings.subscription_expiry_scan_seconds,
            ),
        ]

    def register_account(
        self, request: CreateAccountRequest, now: Optional[datetime] = None
    ) -> tuple[Account, LinkResult]:
        """Create the account, then attach it under the referral code if one was given.

        An unusable code leaves the account registered without a referrer.
        """
        account = self.ledger.create_account(request, now=now)
        link = self.graph.link_new_account(account.id, request.referral_code, now)
        return self.ledger.get_account(account.id), link

    def start_workers(self) -> None:
        for worker in self.workers:
            if not worker.is_running:
                worker.start()

    def stop_workers(self, timeout: Optional[float] = 5.0) -> None:
        for worker in self.workers:
            worker.stop(timeout)

    def close(self) -> None:
        self.stop_workers()
        self.gateway.close()
        logger.info("Services shut down")
