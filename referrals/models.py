from decimal import Decimal
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field

# Level 1 is the direct referrer. Sums to 67% of the triggering amount.
REFERRAL_PERCENTAGES: tuple[Decimal, ...] = (
    Decimal("0.20"),
    Decimal("0.12"),
    Decimal("0.10"),
    Decimal("0.08"),
    Decimal("0.07"),
    Decimal("0.02"),
    Decimal("0.02"),
    Decimal("0.02"),
    Decimal("0.02"),
    Decimal("0.02"),
)


def percentage_for(level: int) -> Decimal:
    return REFERRAL_PERCENTAGES[level - 1]


class AncestorLink(BaseModel):
    account_id: UUID
    level: int = Field(..., ge=1, le=len(REFERRAL_PERCENTAGES))


class LinkResult(BaseModel):
    linked: bool
    referrer_id: Optional[UUID] = None
    chain: list[AncestorLink] = Field(default_factory=list)
    message: str


class CommissionPayout(BaseModel):
    account_id: UUID
    level: int
    percentage: Decimal
    amount: Decimal
    credited: bool
    error: Optional[str] = None


class DistributionResult(BaseModel):
    buyer_id: UUID
    amount: Decimal
    reference: Optional[str] = None
    payouts: list[CommissionPayout] = Field(default_factory=list)

    @property
    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self.payouts if p.credited), Decimal("0.00"))


class ReferralStats(BaseModel):
    account_id: UUID
    referral_code: Optional[str] = None
    is_subscription_active: bool
    direct_referrals_total: int
    direct_referrals_active: int
    counts: dict[str, int]
    total_referrals: int
    earnings_by_level: dict[str, Decimal]
    total_earnings: Decimal
