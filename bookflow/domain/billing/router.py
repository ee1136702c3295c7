"""Billing router - FastAPI endpoints for billing operations"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ...database import SessionLocal, get_db
from ...security import verify_internal_api_key
from ..payments import PaymentGateway
from .cron import manual_billing_handler
from .schemas import (
    CancelSubscriptionRequest,
    ConfirmTransactionRequest,
    CreateTransactionRequest,
    FinishInscriptionRequest,
    StartInscriptionRequest,
    StartTrialRequest,
    StatusCountsResponse,
    SubscriptionResponse,
)
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"], dependencies=[Depends(verify_internal_api_key)])


def get_gateway(request: Request) -> PaymentGateway:
    """The gateway built once at startup"""
    return request.app.state.gateway


def get_session_factory(request: Request):
    return getattr(request.app.state, "session_factory", SessionLocal)


def get_subscription_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db, gateway)


# ============================================================================
# DAILY RUN
# ============================================================================


@router.post("/run-daily")
async def run_daily_billing(
    gateway: PaymentGateway = Depends(get_gateway),
    session_factory=Depends(get_session_factory),
):
    """Manually trigger the daily billing run"""
    envelope = await manual_billing_handler(gateway=gateway, session_factory=session_factory)
    return JSONResponse(status_code=envelope["statusCode"], content=envelope)


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================


@router.get("/subscriptions/stats", response_model=StatusCountsResponse)
async def get_subscription_stats(service: SubscriptionService = Depends(get_subscription_service)):
    """Subscription counts per status"""
    return service.get_stats()


@router.get("/subscriptions/{organization_id}", response_model=SubscriptionResponse)
async def get_subscription(
    organization_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.get_subscription(organization_id)


@router.post("/trials", response_model=SubscriptionResponse, status_code=201)
async def start_trial(
    body: StartTrialRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Start a trial subscription"""
    return service.start_trial(body)


@router.post("/subscriptions/{organization_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    organization_id: str,
    body: CancelSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel at period end (default) or immediately"""
    return service.cancel(organization_id, at_period_end=body.cancel_at_period_end)


# ============================================================================
# ONECLICK CARD ON FILE
# ============================================================================


@router.post("/oneclick/inscriptions")
async def start_inscription(
    body: StartInscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.start_inscription(body)


@router.post("/oneclick/inscriptions/finish")
async def finish_inscription(
    body: FinishInscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.finish_inscription(body)


@router.delete("/oneclick/inscriptions/{organization_id}")
async def remove_inscription(
    organization_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.remove_inscription(organization_id)


# ============================================================================
# WEBPAY PLUS
# ============================================================================


@router.post("/transactions")
async def create_transaction(
    body: CreateTransactionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Start a one-time Webpay Plus payment for the subscription"""
    return await service.create_transaction(body)


@router.post("/transactions/confirm")
async def confirm_transaction(
    body: ConfirmTransactionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.confirm_transaction(body)
