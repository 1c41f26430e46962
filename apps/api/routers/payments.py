"""Credit purchase router: packages, checkout form, gateway callbacks."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import payment_gateway_configured, settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.rate_limit import rate_limit
from services.packages import get_credit_package_by_id, get_credit_packages, serialize_package
from services.payment_gateway import (
    IyzicoGateway,
    PaymentGateway,
    PaymentGatewayError,
    build_checkout_request,
)
from services.payments import (
    ReconciliationStatus,
    reconcile_order_paid_event,
    reconcile_payment_callback,
    record_payment_session,
)
from services.webhook_security import WebhookVerificationError, verify_polar_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


class InitializeFormRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=128)


def get_payment_gateway() -> PaymentGateway:
    """Gateway dependency; tests override it with a fake."""
    if not payment_gateway_configured():
        raise HTTPException(status_code=503, detail="Payment gateway is not configured.")
    return IyzicoGateway(
        api_key=settings.IYZICO_API_KEY,
        secret_key=settings.IYZICO_SECRET_KEY,
        base_url=settings.IYZICO_BASE_URL,
        timeout_seconds=float(settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS),
    )


def _result_redirect(status: str, reason: Optional[str] = None) -> RedirectResponse:
    params = {"status": status}
    if reason:
        params["reason"] = reason
    separator = "&" if "?" in settings.PAYMENT_RESULT_URL else "?"
    return RedirectResponse(url=f"{settings.PAYMENT_RESULT_URL}{separator}{urlencode(params)}", status_code=303)


@router.get("/packages")
async def list_packages(
    _rate_limit: None = Depends(rate_limit("read")),
    db: AsyncSession = Depends(get_db),
):
    packages = await get_credit_packages(db)
    return {"packages": [serialize_package(package) for package in packages]}


@router.post("/initialize-form")
async def initialize_form(
    payload: InitializeFormRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("default")),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    package = await get_credit_package_by_id(payload.package_id, db)
    if package is None or package.active is False:
        raise HTTPException(status_code=404, detail="Package not found")

    checkout_request = build_checkout_request(
        user_id=auth.user_id,
        email=auth.email,
        package_id=package.id,
        package_name=package.name,
        price=float(package.price),
        buyer_ip=request.client.host if request.client else None,
    )
    try:
        checkout = await gateway.initialize(checkout_request)
    except PaymentGatewayError as exc:
        logger.error("Failed to initialize checkout form for user %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=502, detail="Failed to initialize payment form") from exc

    await record_payment_session(
        checkout.token,
        auth.user_id,
        db,
        conversation_id=checkout_request["conversationId"],
        package_id=package.id,
        price=float(package.price),
        locale=checkout_request["locale"],
    )
    return {
        "token": checkout.token,
        "checkout_form_content": checkout.checkout_form_content,
        "payment_page_url": checkout.payment_page_url,
        "package": serialize_package(package),
    }


@router.post("/callback")
async def payment_callback(
    token: Optional[str] = Form(default=None),
    token_query: Optional[str] = Query(default=None, alias="token"),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    _rate_limit: None = Depends(rate_limit("default")),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    result = await reconcile_payment_callback(
        token or token_query,
        gateway=gateway,
        db=db,
        session_user_id=auth.user_id if auth else None,
        session_email=auth.email if auth else None,
    )
    if result.status == ReconciliationStatus.INVALID:
        raise HTTPException(status_code=400, detail=result.error or "Missing payment token")
    if result.success:
        return _result_redirect("success")
    return _result_redirect("failed", result.status.value)


@router.post("/webhooks/polar")
async def polar_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    if not settings.POLAR_WEBHOOK_SECRET:
        logger.error("Rejected Polar webhook: POLAR_WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=503, detail="Polar webhook is not configured")

    body = await request.body()
    webhook_id = request.headers.get("webhook-id")
    try:
        payload = verify_polar_webhook(body, request.headers, settings.POLAR_WEBHOOK_SECRET)
    except WebhookVerificationError as exc:
        logger.warning("Rejected Polar webhook %s: %s", webhook_id, exc)
        raise HTTPException(status_code=403, detail="Invalid webhook signature") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    result = await reconcile_order_paid_event(payload, db, webhook_id=webhook_id)
    if result.status == ReconciliationStatus.INVALID:
        raise HTTPException(status_code=400, detail=result.error)
    if result.status == ReconciliationStatus.PACKAGE_NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.error)
    return {"received": True, "status": result.status.value, "credits": result.credits}
