from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from core.config import Settings, get_settings
from core.logging_core import get_logger
from core.storage import InMemoryStorage
from ledger.models import LEVELS, MAX_REFERRAL_DEPTH, Account, Subscription, level_key
from ledger.service import AccountNotFoundError

from .models import AncestorLink, LinkResult, ReferralStats

logger = get_logger(__name__)


class ReferralGraph:
    """Referral tree over ``referral.referrer`` pointers.

    The pointer chain is the source of truth. ``referral.levels`` on each
    account is a derived index of the accounts N hops below it and can be
    rebuilt from the chain at any time.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def ancestor_chain(self, start_id: Optional[UUID], max_depth: int = MAX_REFERRAL_DEPTH) -> list[AncestorLink]:
        """Walk upward from ``start_id`` (level 1) following referrer pointers."""
        chain: list[AncestorLink] = []
        seen: set[UUID] = set()
        current = start_id
        level = 1
        while current is not None and level <= max_depth:
            if current in seen:
                logger.error("Referral cycle detected at account %s", current)
                break
            doc = self.storage.get_account(current)
            if doc is None:
                break
            seen.add(current)
            chain.append(AncestorLink(account_id=current, level=level))
            current = doc["referral"]["referrer"]
            level += 1
        return chain

    def link_new_account(
        self, new_account_id: UUID, referral_code: Optional[str] = None, now: Optional[datetime] = None
    ) -> LinkResult:
        now = now or datetime.now(timezone.utc)
        if not referral_code or not referral_code.strip():
            return LinkResult(linked=False, message="No referral code supplied")

        with self.storage.atomic():
            if self.storage.get_account(new_account_id) is None:
                raise AccountNotFoundError(f"Account {new_account_id} not found")

            referrer = self.storage.find_account_by_referral_code(referral_code)
            if referrer is None:
                logger.info("Referral code %r does not resolve, %s left unlinked", referral_code, new_account_id)
                return LinkResult(linked=False, message="Referral code not found")

            referrer_id = referrer["id"]
            if referrer_id == new_account_id:
                logger.info("Account %s tried to use its own referral code", new_account_id)
                return LinkResult(linked=False, message="Self-referral is not allowed")

            if self.settings.referral_code_requires_active_subscription:
                if not Subscription(**referrer["subscription"]).is_current(now):
                    logger.info("Referral code %r belongs to an inactive subscription", referral_code)
                    return LinkResult(linked=False, message="Referral code is not active")

            chain = self.ancestor_chain(referrer_id)
            if any(link.account_id == new_account_id for link in chain):
                logger.warning("Linking %s under %s would create a cycle", new_account_id, referrer_id)
                return LinkResult(linked=False, message="Referral would create a cycle")

            stored = self.storage.set_if_unset(new_account_id, ("referral", "referrer"), referrer_id)
            if stored != referrer_id:
                logger.warning("Account %s already referred by %s, link to %s ignored",
                               new_account_id, stored, referrer_id)
                return LinkResult(linked=False, referrer_id=stored, message="Account already has a referrer")

            for link in chain:
                self.storage.add_to_set(link.account_id, ("referral", "levels", level_key(link.level)), new_account_id)

        logger.info("Account %s linked under %s (%d ancestor levels)", new_account_id, referrer_id, len(chain))
        return LinkResult(linked=True, referrer_id=referrer_id, chain=chain, message="Referral linked")

    def rebuild_level_index(self, account_id: UUID) -> list[AncestorLink]:
        """Re-add ``account_id`` to every ancestor's level set along its chain."""
        doc = self.storage.get_account(account_id)
        if doc is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        chain = self.ancestor_chain(doc["referral"]["referrer"])
        with self.storage.atomic():
            added = sum(
                self.storage.add_to_set(link.account_id, ("referral", "levels", level_key(link.level)), account_id)
                for link in chain
            )
        if added:
            logger.info("Restored %d level index entries for %s", added, account_id)
        return chain

    def stats(self, account_id: UUID, now: Optional[datetime] = None) -> ReferralStats:
        now = now or datetime.now(timezone.utc)
        doc = self.storage.get_account(account_id)
        if doc is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        account = Account(**doc)

        counts = {level_key(n): len(account.referral.levels.get(level_key(n), [])) for n in LEVELS}
        direct = account.referral.levels.get(level_key(1), [])
        active = 0
        for member_id in direct:
            member = self.storage.get_account(member_id)
            if member and Subscription(**member["subscription"]).is_current(now):
                active += 1

        return ReferralStats(
            account_id=account_id,
            referral_code=account.referral_code,
            is_subscription_active=account.subscription.is_current(now),
            direct_referrals_total=len(direct),
            direct_referrals_active=active,
            counts=counts,
            total_referrals=sum(counts.values()),
            earnings_by_level=account.referral.earnings_by_level,
            total_earnings=account.referral.total_earnings,
        )
