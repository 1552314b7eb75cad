"""API routes for access checks and checkout."""
from __future__ import annotations

from typing import Union

from fastapi import APIRouter, Depends, HTTPException, status

from ..billing import BillingError, ContentTarget, PlanTarget
from ..schemas.billing import (
    AccessDecisionResponse,
    DiagResponse,
    OrderResponse,
    PayPlanRequest,
    PurchaseContentRequest,
    VerifyResponse,
)
from ..services.billing import get_billing_config, get_billing_service
from .dependencies import get_current_user, get_optional_current_user

router = APIRouter(prefix="/api", tags=["access"])


@router.get("/access/{content_type}/{content_id}", response_model=AccessDecisionResponse)
def get_access(
    content_type: str,
    content_id: str,
    *,
    current_user=Depends(get_optional_current_user),
) -> AccessDecisionResponse:
    service = get_billing_service()
    user_id = str(current_user.id) if current_user is not None else None
    decision = service.decide(user_id, content_type, content_id)
    return AccessDecisionResponse.from_decision(decision)


@router.post(
    "/purchase-content",
    response_model=Union[OrderResponse, VerifyResponse, DiagResponse],
)
def purchase_content(
    payload: PurchaseContentRequest,
    *,
    current_user=Depends(get_current_user),
) -> Union[OrderResponse, VerifyResponse, DiagResponse]:
    service = get_billing_service()
    user_id = str(current_user.id)

    if payload.action == "diag":
        config = get_billing_config()
        access = None
        if payload.content_type and payload.content_id:
            access = AccessDecisionResponse.from_decision(
                service.decide(user_id, payload.content_type, payload.content_id)
            )
        return DiagResponse(mock=service.mock_mode, has_key=config.has_credentials, access=access)

    try:
        if payload.action == "verify":
            result = service.verify_payment(
                user_id,
                order_id=payload.order_id,
                payment_id=payload.razorpay_payment_id,
                signature=payload.razorpay_signature,
                content_type=payload.content_type,
                content_id=payload.content_id,
            )
            return VerifyResponse(success=result.success, mock=result.mock, price_paid=result.price_paid)

        if not payload.content_type or not payload.content_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "MISSING_FIELDS", "message": "content_type and content_id are required."},
            )
        target = ContentTarget(
            content_type=payload.content_type,
            content_id=payload.content_id,
            price_override=payload.price_override,
        )
        return OrderResponse.from_result(service.create_order(user_id, target))
    except BillingError as exc:
        http_exc = exc.to_http_exception()
        if exc.code == "NO_PRICE" and get_billing_config().debug:
            decision = service.decide(user_id, payload.content_type, payload.content_id)
            http_exc.detail["debug_access"] = AccessDecisionResponse.from_decision(decision).model_dump()
        raise http_exc from exc


@router.post("/pay-plan", response_model=Union[OrderResponse, VerifyResponse])
def pay_plan(
    payload: PayPlanRequest,
    *,
    current_user=Depends(get_current_user),
) -> Union[OrderResponse, VerifyResponse]:
    service = get_billing_service()
    user_id = str(current_user.id)

    try:
        if payload.action == "verify":
            result = service.verify_payment(
                user_id,
                order_id=payload.order_id,
                payment_id=payload.razorpay_payment_id,
                signature=payload.razorpay_signature,
            )
            return VerifyResponse(success=result.success, mock=result.mock, price_paid=result.price_paid)

        if not payload.plan:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "MISSING_FIELDS", "message": "plan is required."},
            )
        return OrderResponse.from_result(service.create_order(user_id, PlanTarget(plan=payload.plan)))
    except BillingError as exc:
        raise exc.to_http_exception() from exc


__all__ = ["router"]
