from typing import Any, Optional
from uuid import UUID
from fastapi import APIRouter, Body, Depends, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from api.deps import get_services, status_code_for
from api.services import Services
from core.errors import MarketplaceError
from core.logging_core import get_logger

from .models import ApiEnvelope, InitiatePaymentRequest, Transaction

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

GENERIC_FAILURE = "Payment processing failed"


def envelope(success: bool, message: str, data: Any = None, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    body = ApiEnvelope(success=success, message=message, data=data)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def failure(services: Services, error: Exception) -> JSONResponse:
    if isinstance(error, MarketplaceError):
        return envelope(False, str(error), status_code=status_code_for(error))
    logger.exception("Unhandled payment error")
    detail: Optional[str] = str(error) if services.settings.debug else None
    return envelope(False, GENERIC_FAILURE, data=detail, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.post("", response_model=ApiEnvelope, status_code=status.HTTP_201_CREATED)
def initiate_payment(request: InitiatePaymentRequest, services: Services = Depends(get_services)):
    try:
        result = services.reconciler.initiate_payment(request)
    except Exception as e:
        return failure(services, e)
    return envelope(True, "Payment submitted, awaiting confirmation", result, status.HTTP_201_CREATED)


@router.get("/{txn_ref}/status", response_model=ApiEnvelope)
def check_payment_status(txn_ref: str, services: Services = Depends(get_services)):
    try:
        result = services.reconciler.check_now(txn_ref)
    except Exception as e:
        return failure(services, e)
    return envelope(True, f"Transaction is {result.status.value}", result)


@router.post("/callback", response_model=ApiEnvelope)
def payment_callback(payload: dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    try:
        result = services.reconciler.handle_callback(payload)
    except Exception as e:
        return failure(services, e)
    return envelope(True, f"Transaction is {result.status.value}", result)


@router.get("/accounts/{account_id}", response_model=ApiEnvelope)
def list_account_transactions(account_id: UUID, services: Services = Depends(get_services)):
    try:
        transactions = [Transaction(**doc) for doc in services.storage.list_transactions(account_id)]
    except Exception as e:
        return failure(services, e)
    transactions.sort(key=lambda t: t.created_at, reverse=True)
    return envelope(True, f"{len(transactions)} transaction(s)", transactions)
