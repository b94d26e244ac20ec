from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from core.logging_core import get_logger
from ledger.models import EntryType, level_key, quantize_money
from ledger.service import InvalidAmountError, LedgerService

from .graph import ReferralGraph
from .models import CommissionPayout, DistributionResult, percentage_for

logger = get_logger(__name__)


def commission_for(amount: Decimal, level: int) -> Decimal:
    return quantize_money(Decimal(str(amount)) * percentage_for(level))


class CommissionDistributor:
    """Pays the fixed level percentages up the buyer's ancestor chain.

    Performs no de-duplication: callers must invoke it once per qualifying
    payment, from a path that is itself exactly-once.
    """

    def __init__(self, ledger: LedgerService, graph: ReferralGraph):
        self.ledger = ledger
        self.graph = graph

    def distribute(
        self, buyer_id: UUID, amount: Decimal, reference: Optional[str] = None, now: Optional[datetime] = None
    ) -> DistributionResult:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise InvalidAmountError(f"Distribution amount must be positive, got {amount}")

        buyer = self.ledger.get_account(buyer_id)
        result = DistributionResult(buyer_id=buyer_id, amount=amount, reference=reference)
        if buyer.referral.referrer is None:
            logger.info("Buyer %s has no referrer, nothing to distribute", buyer_id)
            return result

        for link in self.graph.ancestor_chain(buyer.referral.referrer):
            if link.account_id == buyer_id:
                break
            commission = commission_for(amount, link.level)
            if commission <= 0:
                continue

            payout = CommissionPayout(
                account_id=link.account_id,
                level=link.level,
                percentage=percentage_for(link.level),
                amount=commission,
                credited=False,
            )
            try:
                self.ledger.credit(
                    link.account_id,
                    commission,
                    EntryType.COMMISSION,
                    bucket=level_key(link.level),
                    reference=reference,
                    description=f"Level {link.level} commission from {buyer.username}",
                    now=now,
                )
                payout.credited = True
            except Exception as e:
                logger.exception("Level %d commission of %s to %s failed (ref=%s)",
                                 link.level, commission, link.account_id, reference)
                payout.error = str(e)
            result.payouts.append(payout)

        logger.info("Distributed %s of %s from buyer %s across %d level(s)",
                    result.total_paid, amount, buyer_id, len(result.payouts))
        return result
