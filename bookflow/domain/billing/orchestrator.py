"""
Billing orchestrator - the daily billing state machine

Stages, in order:
1. Trial pre-expiry notice (trialing, trial_end within 24h)
2. Expired trial charge (trialing → active | past_due)
2b. Renewal charge (active → active | past_due)
3. Past due retry (past_due → active | unpaid)

Each subscription is processed to completion before the next one starts.
Per-item failures are counted and recorded, never raised.
"""

import logging
import time
from typing import Callable, Optional

from ...exceptions import GatewayError, StoreError
from ...models import Subscription
from ..payments import PaymentGateway, generate_buy_order
from .repository import ONE_DAY_SECONDS, SubscriptionRepository
from .schemas import (
    BillingAttempt,
    DailyBillingResult,
    NotificationEvent,
    ReconciliationItem,
    StageResult,
)

logger = logging.getLogger(__name__)

INTERVAL_SECONDS = {
    "month": 30 * ONE_DAY_SECONDS,
    "year": 365 * ONE_DAY_SECONDS,
}

# Shown to customers in payment_failed emails; operator detail stays in result.errors
CUSTOMER_FAILURE_MESSAGES = {
    "no_card": "No hay una tarjeta activa registrada para tu suscripción",
    "rejected": "El pago fue rechazado por el emisor de tu tarjeta",
    "processing": "No pudimos completar el cobro con tu medio de pago",
}

# Card suffixes remembered for one failure streak
MAX_FAILED_CARDS = 10


def interval_seconds(interval: str) -> int:
    try:
        return INTERVAL_SECONDS[interval]
    except KeyError:
        raise ValueError(f"Unknown billing interval: {interval}") from None


def split_card_suffixes(value: Optional[str]) -> list[str]:
    """"1111,2222" -> ["1111", "2222"]"""
    return [suffix for suffix in (value or "").split(",") if suffix]


class BudgetExhausted(Exception):
    """Raised internally to stop the run once the time budget is spent"""

    pass


class BillingOrchestrator:
    """Runs the daily billing pipeline against a store and a payment gateway"""

    def __init__(
        self,
        store: SubscriptionRepository,
        gateway: PaymentGateway,
        *,
        max_payment_attempts: int,
        retry_backoff_days: float = 1,
        time_budget_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.monotonic,
    ):
        if max_payment_attempts < 2:
            raise ValueError("max_payment_attempts must allow a first charge and at least one retry")
        if retry_backoff_days <= 0:
            raise ValueError("retry_backoff_days must be positive")

        self.store = store
        self.gateway = gateway
        self.max_payment_attempts = max_payment_attempts
        self.retry_backoff_days = retry_backoff_days
        self.time_budget_seconds = time_budget_seconds
        self.clock = clock
        self.timer = timer
        self._deadline: Optional[float] = None

    def retry_delay_seconds(self, attempts: int) -> int:
        """Exponential backoff: backoff_days * 2**attempts days"""
        return int(self.retry_backoff_days * (2**attempts) * ONE_DAY_SECONDS)

    async def run_daily_billing(self) -> DailyBillingResult:
        """Run every stage once and return the aggregated result"""
        result = DailyBillingResult()
        now = int(self.clock())
        self._deadline = (
            self.timer() + self.time_budget_seconds if self.time_budget_seconds is not None else None
        )
        touched: set[str] = set()

        logger.info(f"🔄 Starting daily billing run (as_of={now})")

        try:
            await self._notify_expiring_trials(now, result, touched)
            await self._charge_stage(
                "expired trials",
                lambda: self.store.get_expired_trials(now),
                now,
                result,
                result.charge_results,
                touched,
                is_retry=False,
            )
            await self._charge_stage(
                "renewals",
                lambda: self.store.get_renewals_due(now),
                now,
                result,
                result.charge_results,
                touched,
                is_retry=False,
            )
            await self._charge_stage(
                "past due retries",
                lambda: self.store.get_past_due_eligible_for_retry(now, self.max_payment_attempts),
                now,
                result,
                result.retry_results,
                touched,
                is_retry=True,
            )
        except BudgetExhausted:
            pass

        logger.info(
            f"✅ Daily billing run finished: trial_notices={len(result.trial_notifications)}, "
            f"charges={result.charge_results.successful}/{result.charge_results.processed}, "
            f"retries={result.retry_results.successful}/{result.retry_results.processed}, "
            f"notifications={result.total_notifications}, errors={len(result.errors)}, "
            f"deferred={result.deferred}"
        )
        if result.reconciliation:
            logger.error(
                f"❌ {len(result.reconciliation)} charge(s) need manual reconciliation: "
                f"{[item.order_id for item in result.reconciliation]}"
            )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_budget(self, result: DailyBillingResult, remaining: int, stage: str) -> None:
        if self._deadline is None or self.timer() < self._deadline:
            return
        result.deferred += remaining
        message = (
            f"Time budget of {self.time_budget_seconds}s exhausted during {stage}: "
            f"{remaining} subscription(s) deferred to the next run"
        )
        result.errors.append(message)
        logger.warning(f"⚠️ {message}")
        raise BudgetExhausted()

    def _fetch(self, stage: str, fetch: Callable[[], list], result: DailyBillingResult) -> Optional[list]:
        try:
            return fetch()
        except StoreError as e:
            message = f"Failed to fetch candidates for {stage}: {e}"
            result.errors.append(message)
            logger.error(f"❌ {message}")
            return None

    @staticmethod
    def _queue(result: DailyBillingResult, event: NotificationEvent) -> None:
        result.notifications.append(event)

    @staticmethod
    def _event(event_type: str, subscription: Subscription, data: dict) -> NotificationEvent:
        return NotificationEvent(
            type=event_type,
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            customer_email=subscription.customer_email,
            data=data,
        )

    # ------------------------------------------------------------------
    # Stage 1: trial ending notices
    # ------------------------------------------------------------------

    async def _notify_expiring_trials(self, now: int, result: DailyBillingResult, touched: set) -> None:
        candidates = self._fetch("expiring trials", lambda: self.store.get_expiring_trials(now), result)
        if candidates is None:
            return

        logger.info(f"📧 {len(candidates)} trial(s) ending within 24h")

        for index, subscription in enumerate(candidates):
            self._check_budget(result, len(candidates) - index, "trial notices")
            touched.add(subscription.id)

            event = self._event(
                "trial_ending",
                subscription,
                {
                    "plan_name": subscription.plan_name,
                    "amount": subscription.amount,
                    "currency": subscription.currency,
                    "trial_end_date": subscription.trial_end,
                    "next_billing_date": subscription.trial_end,
                },
            )
            trial_end = subscription.trial_end

            try:
                self.store.mark_trial_ending_notified(subscription.id, trial_end)
            except StoreError as e:
                # Not queued: without the marker a later run could send it twice
                message = f"Failed to record trial notice for subscription {subscription.id}: {e}"
                result.errors.append(message)
                logger.error(f"❌ {message}")
                continue

            result.trial_notifications.append(event)
            self._queue(result, event)

    # ------------------------------------------------------------------
    # Stages 2, 2b and 3: charging
    # ------------------------------------------------------------------

    async def _charge_stage(
        self,
        stage: str,
        fetch: Callable[[], list],
        now: int,
        result: DailyBillingResult,
        counters: StageResult,
        touched: set,
        is_retry: bool,
    ) -> None:
        candidates = self._fetch(stage, fetch, result)
        if candidates is None:
            return

        # A subscription handled earlier in this run is never charged again
        candidates = [s for s in candidates if s.id not in touched]
        logger.info(f"💳 {len(candidates)} subscription(s) to process for {stage}")

        for index, subscription in enumerate(candidates):
            self._check_budget(result, len(candidates) - index, stage)
            touched.add(subscription.id)

            if subscription.cancel_at_period_end:
                self._cancel_at_period_end(subscription, now, result)
                continue

            await self._charge_subscription(subscription, now, result, counters, is_retry)

    def _cancel_at_period_end(self, subscription: Subscription, now: int, result: DailyBillingResult) -> None:
        event = self._event(
            "subscription_canceled",
            subscription,
            {
                "plan_name": subscription.plan_name,
                "amount": subscription.amount,
                "currency": subscription.currency,
                "reason": "cancel_at_period_end",
            },
        )
        try:
            self.store.update_status(
                subscription.id,
                {"status": "canceled", "canceled_at": now},
                expected_version=subscription.version,
            )
        except StoreError as e:
            message = f"Failed to cancel subscription {subscription.id} at period end: {e}"
            result.errors.append(message)
            logger.error(f"❌ {message}")
            return

        logger.info(f"Subscription {subscription.id} canceled at period end")
        self._queue(result, event)

    async def _charge_subscription(
        self,
        subscription: Subscription,
        now: int,
        result: DailyBillingResult,
        counters: StageResult,
        is_retry: bool,
    ) -> None:
        # Snapshot before any commit expires the instance
        subscription_id = subscription.id
        organization_id = subscription.organization_id
        version = subscription.version
        amount = subscription.amount
        currency = subscription.currency
        period_end = subscription.current_period_end
        attempt_number = (subscription.payment_attempts or 0) + 1
        username = subscription.oneclick_username
        card_last4 = subscription.oneclick_card_last4
        customer_email = subscription.customer_email
        failed_cards = split_card_suffixes(subscription.failed_card_suffixes)
        streak_started_at = subscription.failure_streak_started_at
        base_data = {"plan_name": subscription.plan_name, "amount": amount, "currency": currency}

        order_id = generate_buy_order("BF")
        charge = None
        failure_reason = None
        customer_reason = CUSTOMER_FAILURE_MESSAGES["processing"]
        error_code = None
        card_token = None

        try:
            new_period_end = period_end + interval_seconds(subscription.interval)
            card_token = self.store.get_card_token(subscription)
        except ValueError as e:
            failure_reason = str(e)

        if not failure_reason and (not card_token or not username):
            failure_reason = "No active card on file"
            customer_reason = CUSTOMER_FAILURE_MESSAGES["no_card"]

        if not failure_reason:
            try:
                charge = await self.gateway.charge_inscribed_card(username, card_token, order_id, amount)
            except GatewayError as e:
                failure_reason = str(e)
                error_code = f"http_{e.status_code}" if e.status_code else None
            except Exception as e:
                logger.exception(f"❌ Unexpected error charging subscription {subscription_id}")
                failure_reason = f"Unexpected gateway error: {e}"

            if charge is not None and not charge.success:
                failure_reason = f"Payment rejected by Transbank (response_code={charge.response_code})"
                error_code = str(charge.response_code) if charge.response_code is not None else None
                customer_reason = CUSTOMER_FAILURE_MESSAGES["rejected"]

        if charge is not None and charge.success:
            result.attempts.append(
                BillingAttempt(
                    subscription_id=subscription_id,
                    organization_id=organization_id,
                    amount=amount,
                    currency=currency,
                    attempt_number=attempt_number,
                    success=True,
                    response_code=charge.response_code,
                    transaction_id=charge.authorization_code,
                    order_id=charge.order_id or order_id,
                    card_last4=charge.card_last4 or card_last4,
                )
            )
            counters.record_success()

            try:
                self.store.update_status(
                    subscription_id,
                    {
                        "status": "active",
                        "current_period_start": period_end,
                        "current_period_end": new_period_end,
                        "payment_attempts": 0,
                        "last_payment_attempt": now,
                        "last_payment_date": now,
                        "retry_payment_at": None,
                        "transbank_order_id": charge.order_id or order_id,
                        "transbank_transaction_id": charge.authorization_code,
                        "failed_card_suffixes": None,
                        "failure_streak_started_at": None,
                    },
                    expected_version=version,
                )
            except StoreError as e:
                # Charged at Transbank but not recorded here; retrying would double-charge
                item = ReconciliationItem(
                    subscription_id=subscription_id,
                    organization_id=organization_id,
                    order_id=charge.order_id or order_id,
                    authorization_code=charge.authorization_code,
                    amount=amount,
                    error=str(e),
                )
                result.reconciliation.append(item)
                message = (
                    f"RECONCILE subscription {subscription_id}: charge {item.order_id} "
                    f"(authorization {item.authorization_code}) succeeded but the update failed: {e}"
                )
                result.errors.append(message)
                logger.error(f"❌ {message}")
                return

            logger.info(f"✅ Charged subscription {subscription_id} ({amount} {currency}), period extended")
            self._queue(
                result,
                NotificationEvent(
                    type="payment_success",
                    subscription_id=subscription_id,
                    organization_id=organization_id,
                    customer_email=customer_email,
                    data={
                        **base_data,
                        "transaction_id": charge.authorization_code,
                        "order_id": charge.order_id or order_id,
                        "next_billing_date": new_period_end,
                        "retry_attempt": is_retry,
                        "card_last4": charge.card_last4 or card_last4,
                    },
                ),
            )
            return

        # Failure path
        final_attempt = attempt_number >= self.max_payment_attempts
        next_retry_at = None if final_attempt else now + self.retry_delay_seconds(attempt_number)

        # A streak starts at the first failure after a successful charge
        if attempt_number == 1 or streak_started_at is None:
            failed_cards = []
            streak_started_at = now
        if card_last4 and card_last4 not in failed_cards:
            failed_cards = (failed_cards + [card_last4])[-MAX_FAILED_CARDS:]

        result.attempts.append(
            BillingAttempt(
                subscription_id=subscription_id,
                organization_id=organization_id,
                amount=amount,
                currency=currency,
                attempt_number=attempt_number,
                success=False,
                error_message=failure_reason,
                response_code=charge.response_code if charge is not None else None,
                order_id=order_id,
                card_last4=card_last4,
            )
        )
        counters.record_failure()

        message = (
            f"Charge failed for subscription {subscription_id} (organization {organization_id}, "
            f"attempt {attempt_number}/{self.max_payment_attempts}): {failure_reason}"
        )
        result.errors.append(message)
        logger.warning(f"⚠️ {message}")

        try:
            self.store.update_status(
                subscription_id,
                {
                    "status": "unpaid" if final_attempt else "past_due",
                    "payment_attempts": attempt_number,
                    "last_payment_attempt": now,
                    "retry_payment_at": next_retry_at,
                    "transbank_order_id": order_id,
                    "failed_card_suffixes": ",".join(failed_cards) or None,
                    "failure_streak_started_at": streak_started_at,
                },
                expected_version=version,
            )
        except StoreError as e:
            store_message = f"Failed to record failed charge for subscription {subscription_id}: {e}"
            result.errors.append(store_message)
            logger.error(f"❌ {store_message}")

        if final_attempt:
            logger.warning(f"⚠️ Subscription {subscription_id} exhausted its payment attempts → unpaid")

        self._queue(
            result,
            NotificationEvent(
                type="payment_failed",
                subscription_id=subscription_id,
                organization_id=organization_id,
                customer_email=customer_email,
                data={
                    **base_data,
                    "attempt_number": attempt_number,
                    "max_attempts": self.max_payment_attempts,
                    "error_message": customer_reason,
                    "error_code": error_code,
                    "final_attempt": final_attempt,
                    "next_retry_date": next_retry_at,
                    "failed_cards": failed_cards,
                    "failure_streak_started_at": streak_started_at,
                    "attempted_at": now,
                    "card_last4": card_last4,
                },
            ),
        )
