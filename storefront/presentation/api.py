import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from storefront.presentation.schemas import (
    CheckoutRequestBody, OrderResponse, OrderListResponse, CancelOrderRequest, UpdateStatusRequest,
    RefundRequest, WebhookResponse, ErrorResponse
)
from storefront.application.checkout import CheckoutOrchestrator, CheckoutRequest, CheckoutResult, PaymentOutcome
from storefront.application.order_lifecycle import OrderLifecycle
from storefront.application.refund_order import RefundOrderUseCase, RefundOrderDTO, RefundOutcome
from storefront.domain.exceptions import DomainException, ErrorKind, NotAuthorizedError, StockConflictError
from storefront.container import Container

logger = logging.getLogger(__name__)

router = APIRouter()

HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.STOCK_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.GATEWAY_CONFIGURATION: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.GATEWAY_CALL: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.WEBHOOK_SIGNATURE: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.NOT_AUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorKind.UNSUPPORTED: status.HTTP_501_NOT_IMPLEMENTED,
    ErrorKind.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 409, 501, 502, 503)}


def to_http_exception(error: DomainException) -> HTTPException:
    detail = {"kind": error.kind.value, "message": str(error), "retryable": error.retryable}
    if getattr(error, "errors", None):
        detail["errors"] = error.errors
    if getattr(error, "reason", None):
        detail["reason"] = error.reason
    if isinstance(error, StockConflictError):
        detail["product_id"] = error.product_id
        detail["available"] = error.available
    return HTTPException(status_code=HTTP_STATUS_BY_KIND[error.kind], detail=detail)


# Dependencies
def get_container(request: Request) -> Container:
    return request.app.state.container


def get_checkout(container: Container = Depends(get_container)) -> CheckoutOrchestrator:
    return container.checkout


def get_order_lifecycle(container: Container = Depends(get_container)) -> OrderLifecycle:
    return container.order_lifecycle


def get_refund_use_case(container: Container = Depends(get_container)) -> RefundOrderUseCase:
    return container.refund_order


def require_admin(x_user_role: Optional[str] = Header(default=None)) -> None:
    if x_user_role != "admin":
        raise to_http_exception(NotAuthorizedError("Admin access required"))


# Checkout
@router.post(
    "/checkout",
    response_model=CheckoutResult,
    responses=ERROR_RESPONSES,
    status_code=status.HTTP_201_CREATED
)
async def initiate_checkout(
    body: CheckoutRequestBody,
    x_user_id: str = Header(...),
    checkout: CheckoutOrchestrator = Depends(get_checkout)
):
    """Create a pending order, reserve stock and start a payment"""
    try:
        return await checkout.initiate_checkout(
            x_user_id, CheckoutRequest(items=body.items, address=body.address, gateway_name=body.gateway)
        )
    except DomainException as e:
        raise to_http_exception(e)


@router.post("/checkout/{order_id}/verify", response_model=PaymentOutcome, responses=ERROR_RESPONSES)
async def verify_payment(
    order_id: str,
    payload: dict,
    checkout: CheckoutOrchestrator = Depends(get_checkout)
):
    """Confirm a payment from the client side callback payload"""
    try:
        return await checkout.verify_payment(order_id, payload)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/checkout/status/{correlation_id}", response_model=PaymentOutcome, responses=ERROR_RESPONSES)
async def check_payment_status(
    correlation_id: str,
    gateway: Optional[str] = Query(default=None),
    checkout: CheckoutOrchestrator = Depends(get_checkout)
):
    try:
        return await checkout.check_payment_status(correlation_id, gateway)
    except DomainException as e:
        raise to_http_exception(e)


@router.post("/webhooks/{gateway_name}", response_model=WebhookResponse, responses=ERROR_RESPONSES)
async def payment_webhook(
    gateway_name: str,
    request: Request,
    checkout: CheckoutOrchestrator = Depends(get_checkout)
):
    """Provider webhook. The raw body and signature header are passed on untouched."""
    try:
        gateway = checkout.get_webhook_gateway(gateway_name)
        raw_payload = await request.body()
        signature = request.headers.get(gateway.SIGNATURE_HEADER)
        outcome = await checkout.handle_webhook(raw_payload, signature, gateway_name)
        return WebhookResponse(status="ok", order_id=outcome.order_id, order_status=outcome.status,
                               changed=outcome.changed)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/payments/config")
async def payment_config(container: Container = Depends(get_container)):
    return {
        "default_gateway": container.default_gateway,
        "gateways": container.checkout.available_gateways()
    }


# Orders
@router.get("/orders/{order_id}", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def get_order(
    order_id: str,
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle)
):
    try:
        order = await lifecycle.get_order(order_id)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/users/{user_id}/orders", response_model=OrderListResponse)
async def list_user_orders(
    user_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle)
):
    result = await lifecycle.list_user_orders(user_id, page=page, limit=limit)
    return OrderListResponse.from_page(result)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def cancel_order(
    order_id: str,
    body: CancelOrderRequest,
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle)
):
    try:
        order = await lifecycle.cancel_order(
            order_id, user_id=x_user_id, is_admin=x_user_role == "admin", reason=body.reason
        )
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_exception(e)


@router.patch(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)]
)
async def update_order_status(
    order_id: str,
    body: UpdateStatusRequest,
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle)
):
    try:
        order = await lifecycle.update_status(order_id, body.status, reason=body.reason)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_exception(e)


@router.post(
    "/orders/{order_id}/refund",
    response_model=RefundOutcome,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)]
)
async def refund_order(
    order_id: str,
    body: RefundRequest,
    use_case: RefundOrderUseCase = Depends(get_refund_use_case)
):
    try:
        return await use_case(RefundOrderDTO(order_id=order_id, amount=body.amount, reason=body.reason))
    except DomainException as e:
        raise to_http_exception(e)
