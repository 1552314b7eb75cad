"""API routes exposing billing functionality."""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from ..billing import BillingError, CancellationResult, CatalogListing, VoucherRedemption, WebhookReceipt
from ..schemas.billing import (
    CreateSubscriptionRequest,
    EntitlementListResponse,
    PurchaseListResponse,
    RedeemVoucherRequest,
    ReprocessEventsResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
)
from ..services.billing import get_billing_config, get_billing_service
from .dependencies import get_current_user

logger = logging.getLogger("billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook/razorpay", response_model=WebhookReceipt)
async def receive_razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
) -> WebhookReceipt:
    raw_body = await request.body()
    if not raw_body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty webhook body")

    service = get_billing_service()
    return service.handle_webhook(raw_body, x_razorpay_signature, x_razorpay_event_id)


@router.get("/purchases", response_model=PurchaseListResponse)
def list_purchases(
    limit: int = Query(20, ge=1, le=100),
    *,
    current_user=Depends(get_current_user),
) -> PurchaseListResponse:
    service = get_billing_service()
    purchases = service.list_purchases(str(current_user.id), limit=limit)
    return PurchaseListResponse(purchases=list(purchases))


@router.get("/subscriptions", response_model=SubscriptionListResponse)
def list_subscriptions(
    limit: int = Query(20, ge=1, le=100),
    *,
    current_user=Depends(get_current_user),
) -> SubscriptionListResponse:
    service = get_billing_service()
    subscriptions = service.list_subscriptions(str(current_user.id), limit=limit)
    return SubscriptionListResponse(subscriptions=list(subscriptions))


@router.get("/catalog", response_model=CatalogListing)
def list_catalog() -> CatalogListing:
    return get_billing_service().list_catalog()


@router.post("/subscriptions", response_model=SubscriptionResponse)
def create_subscription(
    payload: CreateSubscriptionRequest,
    *,
    current_user=Depends(get_current_user),
) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        result = service.create_subscription(str(current_user.id), payload.plan)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_result(result)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=CancellationResult)
def cancel_subscription(
    subscription_id: str,
    *,
    current_user=Depends(get_current_user),
) -> CancellationResult:
    service = get_billing_service()
    try:
        return service.cancel_subscription(str(current_user.id), subscription_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/vouchers/redeem", response_model=VoucherRedemption)
def redeem_voucher(
    payload: RedeemVoucherRequest,
    *,
    current_user=Depends(get_current_user),
) -> VoucherRedemption:
    service = get_billing_service()
    try:
        return service.redeem_voucher(str(current_user.id), payload.code)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.get("/entitlements", response_model=EntitlementListResponse)
def list_entitlements(
    *,
    current_user=Depends(get_current_user),
) -> EntitlementListResponse:
    service = get_billing_service()
    user_id = str(current_user.id)
    return EntitlementListResponse(
        effective_plan=service.access.effective_plan(user_id),
        content=list(service.list_content_grants(user_id)),
        plans=list(service.list_plan_grants(user_id)),
    )


@router.post("/admin/reprocess-events", response_model=ReprocessEventsResponse)
def reprocess_events(
    limit: int = Query(25, ge=1, le=200),
    x_admin_token: Optional[str] = Header(None),
) -> ReprocessEventsResponse:
    config = get_billing_config()
    if not config.admin_token or not x_admin_token or not hmac.compare_digest(
        config.admin_token, x_admin_token
    ):
        logger.warning("Rejected event reprocessing request with a bad admin token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    service = get_billing_service()
    receipts = service.reprocess_pending_events(limit=limit)
    return ReprocessEventsResponse.from_receipts(receipts)


__all__ = ["router"]
