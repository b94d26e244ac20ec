from uuid import UUID
from fastapi import APIRouter, Depends

from api.deps import get_services, http_error
from api.services import Services
from ledger.service import LedgerServiceError

from .models import AncestorLink, ReferralStats

router = APIRouter(prefix="/referrals", tags=["Referrals"])


@router.get("/{account_id}/stats", response_model=ReferralStats)
def get_referral_stats(account_id: UUID, services: Services = Depends(get_services)):
    try:
        return services.graph.stats(account_id)
    except LedgerServiceError as e:
        raise http_error(e)


@router.get("/{account_id}/ancestors", response_model=list[AncestorLink])
def get_ancestors(account_id: UUID, services: Services = Depends(get_services)):
    try:
        account = services.ledger.get_account(account_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return services.graph.ancestor_chain(account.referral.referrer)


@router.post("/{account_id}/rebuild", response_model=list[AncestorLink])
def rebuild_level_index(account_id: UUID, services: Services = Depends(get_services)):
    try:
        return services.graph.rebuild_level_index(account_id)
    except LedgerServiceError as e:
        raise http_error(e)
