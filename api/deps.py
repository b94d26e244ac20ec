from fastapi import HTTPException, Request, status

from core.errors import DuplicateKeyError, MarketplaceError
from ledger.service import AccountNotFoundError
from orders.service import OrderNotFoundError
from payments.reconciler import PendingTransactionNotFoundError

from .services import Services

NOT_FOUND_ERRORS = (AccountNotFoundError, OrderNotFoundError, PendingTransactionNotFoundError)


def get_services(request: Request) -> Services:
    return request.app.state.services


def status_code_for(error: MarketplaceError) -> int:
    if isinstance(error, NOT_FOUND_ERRORS):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, DuplicateKeyError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


def http_error(error: MarketplaceError) -> HTTPException:
    return HTTPException(status_code=status_code_for(error), detail=str(error))
