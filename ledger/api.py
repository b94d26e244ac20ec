from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from api.deps import get_services, http_error
from api.services import Services
from referrals.models import LinkResult

from .models import (
    Account, AccountBalance, BankDetailsRequest, CreateAccountRequest,
    LedgerHistoryResponse, RejectWithdrawalRequest, SubscriptionStatus, WithdrawalResponse,
)
from .service import LedgerServiceError

router = APIRouter(prefix="/accounts", tags=["Accounts"])


class RegistrationResponse(BaseModel):
    account: Account
    referral: LinkResult


@router.post("", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register_account(request: CreateAccountRequest, services: Services = Depends(get_services)):
    try:
        account, link = services.register_account(request)
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return RegistrationResponse(account=account, referral=link)


@router.get("/{account_id}", response_model=Account)
def get_account(account_id: UUID, services: Services = Depends(get_services)):
    try:
        return services.ledger.get_account(account_id)
    except LedgerServiceError as e:
        raise http_error(e)


@router.get("/{account_id}/balance", response_model=AccountBalance)
def get_balance(account_id: UUID, services: Services = Depends(get_services)):
    try:
        return services.ledger.get_balance(account_id)
    except LedgerServiceError as e:
        raise http_error(e)


@router.get("/{account_id}/ledger", response_model=LedgerHistoryResponse)
def get_ledger(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    try:
        return services.ledger.get_ledger_history(account_id, limit, offset)
    except LedgerServiceError as e:
        raise http_error(e)


@router.get("/{account_id}/subscription", response_model=SubscriptionStatus)
def get_subscription(account_id: UUID, services: Services = Depends(get_services)):
    try:
        return services.subscriptions.status(account_id)
    except LedgerServiceError as e:
        raise http_error(e)


@router.put("/{account_id}/bank-details", response_model=Account)
def update_bank_details(account_id: UUID, request: BankDetailsRequest, services: Services = Depends(get_services)):
    try:
        return services.ledger.update_bank_details(account_id, request)
    except LedgerServiceError as e:
        raise http_error(e)


@router.post("/{account_id}/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
def request_withdrawal(account_id: UUID, services: Services = Depends(get_services)):
    try:
        record = services.ledger.request_withdrawal(account_id)
        account = services.ledger.get_account(account_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return WithdrawalResponse(
        withdrawal=record,
        total_earnings=account.referral.total_earnings,
        message="Withdrawal request submitted",
    )


@router.post("/{account_id}/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalResponse)
def approve_withdrawal(account_id: UUID, withdrawal_id: UUID, services: Services = Depends(get_services)):
    try:
        record = services.ledger.approve_withdrawal(account_id, withdrawal_id)
        account = services.ledger.get_account(account_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return WithdrawalResponse(
        withdrawal=record,
        total_earnings=account.referral.total_earnings,
        message="Withdrawal approved",
    )


@router.post("/{account_id}/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalResponse)
def reject_withdrawal(
    account_id: UUID,
    withdrawal_id: UUID,
    request: RejectWithdrawalRequest,
    services: Services = Depends(get_services),
):
    try:
        record = services.ledger.reject_withdrawal(account_id, withdrawal_id, request.reason)
        account = services.ledger.get_account(account_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return WithdrawalResponse(
        withdrawal=record,
        total_earnings=account.referral.total_earnings,
        message="Withdrawal rejected",
    )
