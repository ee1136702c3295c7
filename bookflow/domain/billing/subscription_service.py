"""Subscription service - operational subscription, card on file and Webpay flows"""

import logging
import time
from contextlib import contextmanager
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...config import FRONTEND_URL
from ...exceptions import (
    ConcurrentUpdateError,
    DuplicateSubscriptionError,
    GatewayError,
    InvalidTransitionError,
    StoreError,
    SubscriptionNotFoundError,
)
from ...models import Subscription
from ..payments import PaymentGateway, generate_buy_order
from .orchestrator import interval_seconds
from .repository import ONE_DAY_SECONDS, SubscriptionRepository
from .schemas import (
    ConfirmTransactionRequest,
    CreateTransactionRequest,
    FinishInscriptionRequest,
    StartInscriptionRequest,
    StartTrialRequest,
)

logger = logging.getLogger(__name__)

# Transbank rejects OneClick usernames longer than this
ONECLICK_USERNAME_MAX_LENGTH = 40


def oneclick_username(organization_id: str) -> str:
    return f"bf-{organization_id}"[:ONECLICK_USERNAME_MAX_LENGTH]


@contextmanager
def http_errors():
    """Translate billing errors into HTTP responses"""
    try:
        yield
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (DuplicateSubscriptionError, InvalidTransitionError, ConcurrentUpdateError) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=503, detail="Subscription store unavailable") from e
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=f"Payment provider error: {e}") from e


class SubscriptionService:
    """Service for subscription management outside the daily run"""

    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.repo = SubscriptionRepository(db)

    def _require(self, organization_id: str) -> Subscription:
        subscription = self.repo.get_by_organization(organization_id)
        if not subscription:
            raise SubscriptionNotFoundError(f"No subscription found for organization {organization_id}")
        return subscription

    def get_subscription(self, organization_id: str) -> Subscription:
        with http_errors():
            return self._require(organization_id)

    def get_stats(self) -> dict:
        with http_errors():
            return self.repo.get_status_counts()

    def start_trial(self, request: StartTrialRequest) -> Subscription:
        """Create a trialing subscription; the first charge happens when the trial ends"""
        now = int(time.time())
        trial_end = now + request.trial_days * ONE_DAY_SECONDS

        with http_errors():
            subscription = self.repo.create(
                organization_id=request.organization_id,
                customer_email=request.customer_email,
                plan_id=request.plan_id,
                plan_name=request.plan_name,
                amount=request.amount,
                currency=request.currency,
                interval=request.interval,
                status="trialing",
                current_period_start=now,
                current_period_end=trial_end,
                trial_start=now,
                trial_end=trial_end,
            )

        logger.info(f"✅ Trial started for organization {request.organization_id} until {trial_end}")
        return subscription

    def cancel(self, organization_id: str, at_period_end: bool) -> Subscription:
        with http_errors():
            return self.repo.request_cancellation(organization_id, at_period_end=at_period_end)

    # ------------------------------------------------------------------
    # OneClick card on file
    # ------------------------------------------------------------------

    async def start_inscription(self, request: StartInscriptionRequest) -> dict:
        with http_errors():
            self._require(request.organization_id)
            started = await self.gateway.start_inscription(
                oneclick_username(request.organization_id),
                request.email,
                request.return_url or f"{FRONTEND_URL}/settings?tab=subscription&inscription=finish",
            )
        return {"token": started.token, "redirect_url": started.redirect_url}

    async def finish_inscription(self, request: FinishInscriptionRequest) -> dict:
        with http_errors():
            self._require(request.organization_id)
            result = await self.gateway.finish_inscription(request.token)

            if not result.success or not result.card_token:
                logger.warning(
                    f"⚠️ Card inscription rejected for organization {request.organization_id}: "
                    f"response_code={result.response_code}"
                )
                return {"success": False, "response_code": result.response_code}

            self.repo.store_card(
                request.organization_id,
                username=oneclick_username(request.organization_id),
                card_token=result.card_token,
                card_type=result.card_brand,
                card_last4=result.masked_card_number,
            )

        logger.info(f"✅ Card on file saved for organization {request.organization_id}")
        return {
            "success": True,
            "card_type": result.card_brand,
            "card_last4": result.masked_card_number,
        }

    async def remove_inscription(self, organization_id: str) -> dict:
        with http_errors():
            subscription = self._require(organization_id)
            card_token = self.repo.get_card_token(subscription)
            if card_token:
                await self.gateway.remove_inscription(card_token, subscription.oneclick_username)
            self.repo.deactivate_card(organization_id)

        logger.info(f"Card on file removed for organization {organization_id}")
        return {"success": True}

    # ------------------------------------------------------------------
    # Webpay Plus one-time purchase
    # ------------------------------------------------------------------

    async def create_transaction(self, request: CreateTransactionRequest) -> dict:
        with http_errors():
            subscription = self._require(request.organization_id)
            if subscription.is_terminal:
                # Terminal subscriptions cannot be reactivated by a payment
                raise InvalidTransitionError(subscription.status, "active")

            order_id = generate_buy_order("BFW")
            created = await self.gateway.create_transaction(
                order_id,
                request.organization_id,
                subscription.amount,
                request.return_url or f"{FRONTEND_URL}/settings?tab=subscription&payment=return",
            )
            self.repo.update_status(subscription.id, {"transbank_order_id": order_id})

        return {"token": created.token, "redirect_url": created.redirect_url, "order_id": order_id}

    async def confirm_transaction(self, request: ConfirmTransactionRequest) -> dict:
        """Commit the Webpay transaction and activate the subscription it paid for"""
        with http_errors():
            confirmation = await self.gateway.confirm_transaction(request.token)
            if not confirmation.authorized:
                return {"success": False, "status": confirmation.status}

            subscription = self.repo.get_by_transbank_order_id(confirmation.order_id)
            if not subscription:
                logger.error(
                    f"❌ RECONCILE Webpay order {confirmation.order_id} "
                    f"(authorization {confirmation.authorization_code}) was authorized but has no subscription"
                )
                raise HTTPException(
                    status_code=404,
                    detail=self._reconciliation_detail(confirmation, "No subscription for this order"),
                )

        now = int(time.time())
        subscription_id = subscription.id
        try:
            updated = self.repo.update_status(
                subscription_id,
                {
                    "status": "active",
                    "current_period_start": now,
                    "current_period_end": now + interval_seconds(subscription.interval),
                    "payment_attempts": 0,
                    "retry_payment_at": None,
                    "last_payment_date": now,
                    "transbank_transaction_id": confirmation.authorization_code,
                    "failed_card_suffixes": None,
                    "failure_streak_started_at": None,
                },
            )
        except StoreError as e:
            # Transbank already captured this payment
            logger.error(
                f"❌ RECONCILE subscription {subscription_id}: Webpay order {confirmation.order_id} "
                f"(authorization {confirmation.authorization_code}) succeeded but the update failed: {e}"
            )
            conflict = isinstance(e, (InvalidTransitionError, ConcurrentUpdateError))
            raise HTTPException(
                status_code=409 if conflict else 503,
                detail=self._reconciliation_detail(confirmation, str(e), subscription_id),
            ) from e

        logger.info(f"✅ Subscription {updated.id} activated by Webpay order {confirmation.order_id}")
        return {
            "success": True,
            "order_id": confirmation.order_id,
            "authorization_code": confirmation.authorization_code,
            "status": updated.status,
        }

    @staticmethod
    def _reconciliation_detail(confirmation, message: str, subscription_id: Optional[str] = None) -> dict:
        return {
            "message": f"Payment authorized but not applied: {message}",
            "needs_reconciliation": True,
            "subscription_id": subscription_id,
            "order_id": confirmation.order_id,
            "authorization_code": confirmation.authorization_code,
            "amount": confirmation.amount,
        }
