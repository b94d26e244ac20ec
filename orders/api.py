from uuid import UUID
from fastapi import APIRouter, Depends, status

from api.deps import get_services, http_error
from api.services import Services
from core.errors import MarketplaceError

from .models import CreateOrderRequest, Order, OrderStatusResponse, UpdateOrderStatusRequest, WalletCreditResult

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("", response_model=Order, status_code=status.HTTP_201_CREATED)
def create_order(request: CreateOrderRequest, services: Services = Depends(get_services)):
    try:
        return services.orders.create_order(request)
    except MarketplaceError as e:
        raise http_error(e)


@router.get("/{order_id}", response_model=Order)
def get_order(order_id: UUID, services: Services = Depends(get_services)):
    try:
        return services.orders.get_order(order_id)
    except MarketplaceError as e:
        raise http_error(e)


@router.patch("/{order_id}/status", response_model=OrderStatusResponse)
def update_order_status(
    order_id: UUID, request: UpdateOrderStatusRequest, services: Services = Depends(get_services)
):
    try:
        order, credit = services.orders.update_status(order_id, request.status)
    except MarketplaceError as e:
        raise http_error(e)
    return OrderStatusResponse(order=order, wallet_credit=credit)


@router.post("/{order_id}/wallet-credit", response_model=WalletCreditResult)
def claim_wallet_credit(order_id: UUID, services: Services = Depends(get_services)):
    try:
        return services.orders.credit_on_delivery(order_id)
    except MarketplaceError as e:
        raise http_error(e)
