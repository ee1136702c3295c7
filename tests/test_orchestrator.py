import pytest
from sqlalchemy import text

from bookflow.domain.billing.alerts import AlertAnalyzer
from bookflow.domain.billing.orchestrator import CUSTOMER_FAILURE_MESSAGES, BillingOrchestrator
from bookflow.domain.billing.repository import SubscriptionRepository
from bookflow.exceptions import GatewayError, StoreError
from conftest import CARD_TOKEN, DAY, HOUR, NOW, approved, make_subscription, rejected


def build(db, gateway, **kwargs):
    kwargs.setdefault("max_payment_attempts", 3)
    kwargs.setdefault("retry_backoff_days", 1)
    return BillingOrchestrator(SubscriptionRepository(db), gateway, clock=lambda: NOW, **kwargs)


def reload(db, subscription_id):
    return SubscriptionRepository(db).get_by_id(subscription_id)


def assert_counters_consistent(result):
    for counters in (result.charge_results, result.retry_results):
        assert counters.processed == counters.successful + counters.failed


async def test_expired_trial_charge_succeeds(db, gateway):
    sub = make_subscription(db)
    old_end = sub.current_period_end

    result = await build(db, gateway).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "active"
    assert updated.current_period_end == old_end + 30 * DAY
    assert updated.current_period_start == old_end
    assert updated.payment_attempts == 0
    assert result.charge_results.successful == 1
    assert [n.type for n in result.notifications] == ["payment_success"]
    assert gateway.charges[0]["amount"] == 12990
    assert_counters_consistent(result)


async def test_expired_trial_charge_rejected(db, gateway):
    sub = make_subscription(db)
    gateway.outcomes[sub.oneclick_username] = rejected(-1)

    result = await build(db, gateway).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "past_due"
    assert updated.payment_attempts == 1
    assert updated.retry_payment_at == NOW + 2 * DAY
    assert result.charge_results.failed == 1
    assert len(result.errors) == 1
    failed = [n for n in result.notifications if n.type == "payment_failed"]
    assert len(failed) == 1
    assert failed[0].data["attempt_number"] == 1
    assert failed[0].data["final_attempt"] is False
    assert_counters_consistent(result)


async def test_trial_ending_tomorrow_is_only_notified(db, gateway):
    sub = make_subscription(db, trial_end=NOW + 20 * HOUR, current_period_end=NOW + 20 * HOUR)

    result = await build(db, gateway).run_daily_billing()

    assert [n.type for n in result.trial_notifications] == ["trial_ending"]
    assert result.trial_notifications[0].subscription_id == sub.id
    assert result.charge_results.processed == 0
    assert result.retry_results.processed == 0
    assert gateway.charges == []
    assert reload(db, sub.id).status == "trialing"


async def test_second_run_does_not_repeat_trial_notice(db, gateway):
    make_subscription(db, trial_end=NOW + 20 * HOUR, current_period_end=NOW + 20 * HOUR)
    orchestrator = build(db, gateway)

    first = await orchestrator.run_daily_billing()
    second = await orchestrator.run_daily_billing()

    assert len(first.trial_notifications) == 1
    assert second.trial_notifications == []


async def test_trial_notice_fetch_failure_does_not_stop_other_stages(db, gateway, monkeypatch):
    sub = make_subscription(db)
    orchestrator = build(db, gateway)

    def unavailable(*args, **kwargs):
        raise StoreError("table unreachable")

    monkeypatch.setattr(orchestrator.store, "get_expiring_trials", unavailable)

    result = await orchestrator.run_daily_billing()

    assert result.trial_notifications == []
    assert len(result.errors) == 1
    assert "expiring trials" in result.errors[0]
    assert result.charge_results.successful == 1
    assert reload(db, sub.id).status == "active"


async def test_gateway_error_is_isolated_per_subscription(db, gateway):
    subs = [make_subscription(db, trial_end=NOW - (3 - i) * HOUR) for i in range(3)]
    gateway.outcomes[subs[1].oneclick_username] = GatewayError("Transbank request failed: timeout")

    result = await build(db, gateway).run_daily_billing()

    assert result.charge_results.processed == 3
    assert result.charge_results.successful == 2
    assert result.charge_results.failed == 1
    assert len(result.errors) >= 1
    assert reload(db, subs[0].id).status == "active"
    assert reload(db, subs[1].id).status == "past_due"
    assert reload(db, subs[2].id).status == "active"


async def test_unexpected_gateway_exception_is_counted_as_failure(db, gateway):
    sub = make_subscription(db)
    gateway.outcomes[sub.oneclick_username] = RuntimeError("socket closed")

    result = await build(db, gateway).run_daily_billing()

    assert result.charge_results.failed == 1
    assert "socket closed" in result.errors[0]
    assert reload(db, sub.id).status == "past_due"


@pytest.mark.parametrize("status", ["canceled", "unpaid"])
async def test_terminal_subscriptions_are_never_charged(db, gateway, status):
    sub = make_subscription(db, status=status, retry_payment_at=None, payment_attempts=1)
    orchestrator = build(db, gateway)

    await orchestrator.run_daily_billing()
    result = await orchestrator.run_daily_billing()

    assert gateway.charges == []
    assert reload(db, sub.id).status == status
    assert result.notifications == []


async def test_subscription_charged_in_stage_two_is_not_retried(db, gateway, monkeypatch):
    sub = make_subscription(db)
    gateway.outcomes[sub.oneclick_username] = rejected(-1)
    orchestrator = build(db, gateway)
    store = orchestrator.store
    real_fetch = store.get_past_due_eligible_for_retry

    def fetch_including_stage_two(as_of, max_attempts):
        return real_fetch(as_of, max_attempts) + [store.get_by_id(sub.id)]

    monkeypatch.setattr(store, "get_past_due_eligible_for_retry", fetch_including_stage_two)

    result = await orchestrator.run_daily_billing()

    assert len(gateway.charges) == 1
    assert result.charge_results.processed == 1
    assert result.retry_results.processed == 0


async def test_past_due_retry_succeeds(db, gateway):
    sub = make_subscription(
        db,
        status="past_due",
        payment_attempts=1,
        retry_payment_at=NOW - 10,
        current_period_end=NOW - 2 * DAY,
    )

    result = await build(db, gateway).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "active"
    assert updated.payment_attempts == 0
    assert updated.retry_payment_at is None
    assert result.retry_results.successful == 1
    success = result.notifications[0]
    assert success.type == "payment_success"
    assert success.data["retry_attempt"] is True


async def test_past_due_not_yet_due_is_skipped(db, gateway):
    make_subscription(db, status="past_due", payment_attempts=1, retry_payment_at=NOW + DAY)

    result = await build(db, gateway).run_daily_billing()

    assert gateway.charges == []
    assert result.retry_results.processed == 0


async def test_retry_exhaustion_moves_to_unpaid(db, gateway):
    sub = make_subscription(db, status="past_due", payment_attempts=2, retry_payment_at=NOW - 10)
    gateway.outcomes[sub.oneclick_username] = rejected(-1)

    result = await build(db, gateway, max_payment_attempts=3).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "unpaid"
    assert updated.payment_attempts == 3
    assert updated.retry_payment_at is None
    assert result.retry_results.failed == 1
    event = result.notifications[0]
    assert event.type == "payment_failed"
    assert event.data["final_attempt"] is True
    assert event.data["attempt_number"] == 3


async def test_intermediate_retry_failure_backs_off_exponentially(db, gateway):
    sub = make_subscription(db, status="past_due", payment_attempts=1, retry_payment_at=NOW - 10)
    gateway.outcomes[sub.oneclick_username] = rejected(-1)

    await build(db, gateway, max_payment_attempts=4).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "past_due"
    assert updated.payment_attempts == 2
    assert updated.retry_payment_at == NOW + 4 * DAY


async def test_active_renewal_is_charged(db, gateway):
    sub = make_subscription(
        db,
        status="active",
        trial_end=None,
        trial_start=None,
        interval="year",
        current_period_end=NOW - 10,
    )

    result = await build(db, gateway).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "active"
    assert updated.current_period_end == NOW - 10 + 365 * DAY
    assert result.charge_results.successful == 1


async def test_failed_renewal_moves_to_past_due(db, gateway):
    sub = make_subscription(db, status="active", trial_end=None, current_period_end=NOW - 10)
    gateway.outcomes[sub.oneclick_username] = rejected(-5)

    result = await build(db, gateway).run_daily_billing()

    assert reload(db, sub.id).status == "past_due"
    assert result.charge_results.failed == 1
    assert result.notifications[0].data["error_code"] == "-5"


async def test_cancel_at_period_end_cancels_instead_of_charging(db, gateway):
    sub = make_subscription(db, cancel_at_period_end=True)

    result = await build(db, gateway).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "canceled"
    assert updated.canceled_at == NOW
    assert gateway.charges == []
    assert result.charge_results.processed == 0
    assert [n.type for n in result.notifications] == ["subscription_canceled"]


async def test_missing_card_counts_as_failure(db, gateway):
    sub = make_subscription(db, oneclick_active=False, oneclick_tbk_user=None)

    result = await build(db, gateway).run_daily_billing()

    assert gateway.charges == []
    assert reload(db, sub.id).status == "past_due"
    assert result.charge_results.failed == 1
    assert "No active card on file" in result.errors[0]
    assert result.notifications[0].type == "payment_failed"


async def test_concurrent_change_after_successful_charge_needs_reconciliation(db, gateway):
    sub = make_subscription(db)

    def cancel_meanwhile(order_id, amount):
        db.execute(
            text("UPDATE subscriptions SET status = 'canceled', version = version + 1 WHERE id = :id"),
            {"id": sub.id},
        )
        db.commit()
        return approved(order_id=order_id, amount=amount, authorization_code="9999")

    gateway.outcomes[sub.oneclick_username] = cancel_meanwhile

    result = await build(db, gateway).run_daily_billing()

    assert result.charge_results.successful == 1
    assert len(result.reconciliation) == 1
    item = result.reconciliation[0]
    assert item.subscription_id == sub.id
    assert item.authorization_code == "9999"
    assert any("RECONCILE" in error for error in result.errors)
    assert reload(db, sub.id).status == "canceled"
    assert result.notifications == []


async def test_time_budget_defers_remaining_subscriptions(db, gateway):
    subs = [make_subscription(db, trial_end=NOW - (3 - i) * HOUR) for i in range(3)]
    clock = {"now": 0.0}

    def slow_charge(order_id, amount):
        clock["now"] += 6
        return approved(order_id=order_id, amount=amount)

    for sub in subs:
        gateway.outcomes[sub.oneclick_username] = slow_charge

    orchestrator = build(db, gateway, time_budget_seconds=10, timer=lambda: clock["now"])
    result = await orchestrator.run_daily_billing()

    assert result.charge_results.processed == 2
    assert result.deferred == 1
    assert any("Time budget" in error for error in result.errors)
    assert reload(db, subs[2].id).status == "trialing"


def test_max_payment_attempts_must_allow_a_retry(db, gateway):
    with pytest.raises(ValueError):
        build(db, gateway, max_payment_attempts=1)


async def test_gateway_error_detail_stays_out_of_customer_email(db, gateway):
    sub = make_subscription(db)
    gateway.outcomes[sub.oneclick_username] = RuntimeError("socket closed")

    result = await build(db, gateway).run_daily_billing()

    event = result.notifications[0]
    assert event.type == "payment_failed"
    assert event.data["error_message"] == CUSTOMER_FAILURE_MESSAGES["processing"]
    assert "socket closed" not in event.data["error_message"]
    assert "socket closed" in result.errors[0]


async def test_rejected_charge_uses_customer_reason(db, gateway):
    sub = make_subscription(db)
    gateway.outcomes[sub.oneclick_username] = rejected(-1)

    result = await build(db, gateway).run_daily_billing()

    assert result.notifications[0].data["error_message"] == CUSTOMER_FAILURE_MESSAGES["rejected"]
    assert "response_code=-1" in result.errors[0]


async def test_card_swapping_across_retries_is_flagged_as_fraud(db, gateway):
    sub = make_subscription(db, organization_id="org-swap", oneclick_card_last4="1111")
    gateway.outcomes[sub.oneclick_username] = rejected(-1)
    clock = {"now": NOW}
    orchestrator = BillingOrchestrator(
        SubscriptionRepository(db),
        gateway,
        clock=lambda: clock["now"],
        max_payment_attempts=3,
        retry_backoff_days=1,
    )
    store = orchestrator.store

    first = await orchestrator.run_daily_billing()
    assert AlertAnalyzer().detect_fraud_patterns(first.notifications) == []

    store.store_card("org-swap", sub.oneclick_username, CARD_TOKEN, "Visa", "2222")
    clock["now"] = NOW + 2 * DAY
    second = await orchestrator.run_daily_billing()
    assert second.retry_results.failed == 1

    store.store_card("org-swap", sub.oneclick_username, CARD_TOKEN, "Visa", "3333")
    clock["now"] = NOW + 6 * DAY
    third = await orchestrator.run_daily_billing()

    assert reload(db, sub.id).status == "unpaid"
    event = third.notifications[0]
    assert event.data["attempt_number"] == 3
    assert event.data["failed_cards"] == ["1111", "2222", "3333"]
    assert event.data["failure_streak_started_at"] == NOW

    alerts = AlertAnalyzer().detect_fraud_patterns(third.notifications)
    assert len(alerts) == 1
    assert alerts[0].type == "payment_fraud"
    assert alerts[0].organization_id == "org-swap"
    assert alerts[0].data["distinct_cards"] == ["1111", "2222", "3333"]


async def test_successful_retry_clears_failure_streak(db, gateway):
    sub = make_subscription(
        db,
        status="past_due",
        payment_attempts=1,
        retry_payment_at=NOW - 10,
        failure_streak_started_at=NOW - 2 * DAY,
        failed_card_suffixes="1111",
    )

    await build(db, gateway).run_daily_billing()

    updated = reload(db, sub.id)
    assert updated.status == "active"
    assert updated.failure_streak_started_at is None
    assert updated.failed_card_suffixes is None
