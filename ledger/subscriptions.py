import math
import secrets
import string
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from core.config import Settings, get_settings
from core.errors import DuplicateKeyError
from core.logging_core import get_logger
from core.storage import InMemoryStorage

from .models import Account, SubscriptionStatus, quantize_money
from .service import AccountNotFoundError, LedgerServiceError

logger = get_logger(__name__)

REFERRAL_CODE_PREFIX = "PM"
REFERRAL_CODE_LENGTH = 6
_CODE_ALPHABET = string.ascii_uppercase + string.digits
_MAX_CODE_ATTEMPTS = 10


def make_referral_code() -> str:
    return REFERRAL_CODE_PREFIX + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


class SubscriptionService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def _account(self, account_id: UUID) -> Account:
        doc = self.storage.get_account(account_id)
        if doc is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account(**doc)

    def has_active_subscription(self, account_id: UUID, now: Optional[datetime] = None) -> bool:
        return self._account(account_id).subscription.is_current(now or datetime.now(timezone.utc))

    def activate(
        self, account_id: UUID, amount: Decimal, reference: str, now: Optional[datetime] = None
    ) -> tuple[Account, bool]:
        """Activate the subscription unless one is already current.

        Returns the account and whether this call activated it. The referral
        code is generated either way if the account has none.
        """
        now = now or datetime.now(timezone.utc)
        activated = False
        with self.storage.atomic():
            account = self._account(account_id)
            if not account.subscription.is_current(now):
                def apply(doc: dict) -> None:
                    doc["subscription"] = {
                        "is_active": True,
                        "purchase_date": now,
                        "expiry_date": now + timedelta(days=self.settings.subscription_duration_days),
                        "amount_paid": quantize_money(amount),
                        "subscription_id": reference,
                    }

                self.storage.update_account(account_id, apply)
                activated = True
            self.generate_referral_code(account_id)
            account = self._account(account_id)

        if activated:
            logger.info("Subscription activated for %s until %s (ref=%s)",
                        account_id, account.subscription.expiry_date, reference)
        else:
            logger.info("Subscription for %s already active, ref=%s left it unchanged", account_id, reference)
        return account, activated

    def generate_referral_code(self, account_id: UUID) -> str:
        account = self._account(account_id)
        if account.referral_code:
            return account.referral_code

        for _ in range(_MAX_CODE_ATTEMPTS):
            try:
                code = self.storage.assign_referral_code(account_id, make_referral_code())
            except DuplicateKeyError:
                continue
            if code is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            logger.info("Referral code %s assigned to %s", code, account_id)
            return code
        raise LedgerServiceError("Could not generate a unique referral code")

    def status(self, account_id: UUID, now: Optional[datetime] = None) -> SubscriptionStatus:
        now = now or datetime.now(timezone.utc)
        account = self._account(account_id)
        subscription = account.subscription
        is_active = subscription.is_current(now)
        days_remaining = 0
        if is_active:
            days_remaining = math.ceil((subscription.expiry_date - now).total_seconds() / 86400)

        return SubscriptionStatus(
            is_active=is_active,
            purchase_date=subscription.purchase_date,
            expiry_date=subscription.expiry_date,
            referral_code=account.referral_code,
            days_remaining=days_remaining,
        )

    def expire_subscriptions(self, now: Optional[datetime] = None) -> list[UUID]:
        now = now or datetime.now(timezone.utc)
        expired = self.storage.find_accounts(
            lambda d: d["subscription"]["is_active"]
            and d["subscription"]["expiry_date"] is not None
            and d["subscription"]["expiry_date"] < now
        )

        def deactivate(doc: dict) -> None:
            if doc["subscription"]["expiry_date"] < now:
                doc["subscription"]["is_active"] = False

        for doc in expired:
            self.storage.update_account(doc["id"], deactivate)
        if expired:
            logger.info("Expired %d subscription(s)", len(expired))
        return [doc["id"] for doc in expired]
