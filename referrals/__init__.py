"""
Multi-level Referral Engine

Provides the referral tree builder (ancestor chain, level index, cycle and
self-referral guards) and the 10-level commission distributor.
"""

from .models import (
    REFERRAL_PERCENTAGES,
    AncestorLink,
    LinkResult,
    CommissionPayout,
    DistributionResult,
    ReferralStats,
)
from .graph import ReferralGraph
from .commission import CommissionDistributor, commission_for

__all__ = [
    "REFERRAL_PERCENTAGES",
    "AncestorLink",
    "LinkResult",
    "CommissionPayout",
    "DistributionResult",
    "ReferralStats",
    "ReferralGraph",
    "CommissionDistributor",
    "commission_for",
]
