"""
Billing alerts - detect operator-worthy conditions in a run and deliver them

AlertAnalyzer only builds CriticalAlert records. Delivery goes through
AlertSender and its channels (email, webhook, logging).
"""

import logging
from collections import defaultdict
from typing import Optional

import httpx
from pydantic import BaseModel

from ... import config
from ...email_service import compile_mjml_to_html, send_rendered_email
from ...email_templates import admin_alert_template
from ...exceptions import AlertDeliveryError, NotificationError
from .repository import ONE_DAY_SECONDS
from .schemas import CriticalAlert, DailyBillingResult, DeliveryReport, NotificationEvent

logger = logging.getLogger(__name__)

# Gateway error fragments that always warrant an operator look
CRITICAL_ERROR_PATTERNS = ["insufficient_funds", "card_expired", "card_blocked", "fraud_suspected"]


class AlertThresholds(BaseModel):
    failure_rate_threshold: float = 0.30
    critical_failure_rate: float = 0.50
    min_sample_size: int = 5
    max_consecutive_failures: int = 3
    max_errors_per_run: int = 10
    max_final_failures_per_run: int = 3
    fraud_failures_per_org: int = 3
    fraud_distinct_cards: int = 2
    fraud_window_days: int = 7
    fraud_shared_error_orgs: int = 5

    @classmethod
    def from_config(cls) -> "AlertThresholds":
        return cls(
            failure_rate_threshold=config.ALERT_FAILURE_RATE_THRESHOLD,
            critical_failure_rate=config.ALERT_CRITICAL_FAILURE_RATE,
            min_sample_size=config.ALERT_MIN_SAMPLE_SIZE,
            max_consecutive_failures=config.ALERT_MAX_CONSECUTIVE_FAILURES,
            max_errors_per_run=config.ALERT_MAX_ERRORS_PER_RUN,
            max_final_failures_per_run=config.ALERT_MAX_FINAL_FAILURES_PER_RUN,
            fraud_failures_per_org=config.ALERT_FRAUD_FAILURES_PER_ORG,
            fraud_distinct_cards=config.ALERT_FRAUD_DISTINCT_CARDS,
            fraud_window_days=config.ALERT_FRAUD_WINDOW_DAYS,
            fraud_shared_error_orgs=config.ALERT_FRAUD_SHARED_ERROR_ORGS,
        )


class AlertAnalyzer:
    """Turns a billing run result into CriticalAlert records"""

    def __init__(self, thresholds: Optional[AlertThresholds] = None):
        self.thresholds = thresholds or AlertThresholds()

    def analyze(self, result: DailyBillingResult, notifications: list[NotificationEvent]) -> list[CriticalAlert]:
        alerts: list[CriticalAlert] = []
        alerts.extend(self._failure_rate(result))
        alerts.extend(self._consecutive_failures(result))
        alerts.extend(self._critical_error_patterns(result))
        alerts.extend(self._final_failures(notifications))
        alerts.extend(self._system_errors(result))
        alerts.extend(self.detect_fraud_patterns(notifications))

        if alerts:
            logger.warning(f"⚠️ Alert analysis produced {len(alerts)} alert(s)")
        return alerts

    def _failure_rate(self, result: DailyBillingResult) -> list[CriticalAlert]:
        processed = result.charge_results.processed + result.retry_results.processed
        failed = result.charge_results.failed + result.retry_results.failed
        if processed < self.thresholds.min_sample_size or processed == 0:
            return []

        rate = failed / processed
        if rate <= self.thresholds.failure_rate_threshold:
            return []

        severity = "critical" if rate > self.thresholds.critical_failure_rate else "high"
        return [
            CriticalAlert(
                type="high_failure_rate",
                severity=severity,
                title=f"High billing failure rate: {rate:.0%}",
                message=f"{failed} of {processed} charge attempts failed in today's billing run.",
                data={
                    "processed": processed,
                    "failed": failed,
                    "failure_rate": round(rate, 4),
                    "threshold": self.thresholds.failure_rate_threshold,
                    "charge_results": result.charge_results.model_dump(),
                    "retry_results": result.retry_results.model_dump(),
                },
            )
        ]

    def _consecutive_failures(self, result: DailyBillingResult) -> list[CriticalAlert]:
        # Latest attempt per subscription in this run
        latest = {}
        for attempt in result.attempts:
            latest[attempt.subscription_id] = attempt

        alerts = []
        for attempt in latest.values():
            if attempt.success or attempt.attempt_number < self.thresholds.max_consecutive_failures:
                continue
            alerts.append(
                CriticalAlert(
                    type="billing_failure",
                    severity="high",
                    title=f"Repeated payment failures for organization {attempt.organization_id}",
                    message=(
                        f"Subscription {attempt.subscription_id} has failed "
                        f"{attempt.attempt_number} consecutive charge attempts."
                    ),
                    data={
                        "organization_id": attempt.organization_id,
                        "subscription_id": attempt.subscription_id,
                        "consecutive_failures": attempt.attempt_number,
                        "amount": attempt.amount,
                        "currency": attempt.currency,
                        "last_error": attempt.error_message,
                        "last_attempt_at": attempt.timestamp.isoformat(),
                    },
                    organization_id=attempt.organization_id,
                    subscription_id=attempt.subscription_id,
                )
            )
        return alerts

    def _critical_error_patterns(self, result: DailyBillingResult) -> list[CriticalAlert]:
        matches = defaultdict(list)
        for error in result.errors:
            lowered = error.lower()
            for pattern in CRITICAL_ERROR_PATTERNS:
                if pattern in lowered:
                    matches[pattern].append(error)

        if not matches:
            return []

        return [
            CriticalAlert(
                type="billing_failure",
                severity="critical",
                title="Critical payment errors detected",
                message=f"Billing errors matched critical patterns: {', '.join(sorted(matches))}.",
                data={
                    "patterns": {pattern: len(errors) for pattern, errors in matches.items()},
                    "examples": [errors[0] for errors in matches.values()],
                },
            )
        ]

    def _final_failures(self, notifications: list[NotificationEvent]) -> list[CriticalAlert]:
        final = [
            n for n in notifications if n.type == "payment_failed" and n.data.get("final_attempt")
        ]
        if len(final) <= self.thresholds.max_final_failures_per_run:
            return []

        return [
            CriticalAlert(
                type="billing_failure",
                severity="medium",
                title=f"{len(final)} subscriptions became unpaid",
                message=f"{len(final)} subscriptions exhausted their payment retries in one run.",
                data={
                    "count": len(final),
                    "subscription_ids": [n.subscription_id for n in final],
                    "organization_ids": [n.organization_id for n in final],
                },
            )
        ]

    def _system_errors(self, result: DailyBillingResult) -> list[CriticalAlert]:
        alerts = []
        if len(result.errors) > self.thresholds.max_errors_per_run:
            alerts.append(
                CriticalAlert(
                    type="system_error",
                    severity="high",
                    title=f"Billing run logged {len(result.errors)} errors",
                    message="The daily billing run produced an unusual number of errors.",
                    data={"error_count": len(result.errors), "first_errors": result.errors[:10]},
                )
            )

        for item in result.reconciliation:
            alerts.append(
                CriticalAlert(
                    type="system_error",
                    severity="critical",
                    title="Charge needs manual reconciliation",
                    message=(
                        f"Transbank authorized order {item.order_id} for subscription "
                        f"{item.subscription_id} but the subscription could not be updated. "
                        "Do not retry the charge."
                    ),
                    data=item.model_dump(),
                    organization_id=item.organization_id,
                    subscription_id=item.subscription_id,
                )
            )
        return alerts

    def detect_fraud_patterns(self, notifications: list[NotificationEvent]) -> list[CriticalAlert]:
        """
        Heuristic scan of payment_failed events for suspicious repetition

        Each event carries its subscription's current failure streak (attempt
        number, start time and the card suffixes tried), so the per-organization
        rule sees failures from earlier runs as well as this one.
        """
        failures = [n for n in notifications if n.type == "payment_failed"]
        alerts = []
        window_seconds = self.thresholds.fraud_window_days * ONE_DAY_SECONDS

        by_organization = defaultdict(list)
        for event in failures:
            by_organization[event.organization_id].append(event)

        for organization_id, events in by_organization.items():
            failure_count = max(int(e.data.get("attempt_number") or 1) for e in events)
            cards = sorted({card for e in events for card in (e.data.get("failed_cards") or [])})
            started = [
                e.data["failure_streak_started_at"] for e in events if e.data.get("failure_streak_started_at")
            ]
            attempted = [e.data["attempted_at"] for e in events if e.data.get("attempted_at")]

            if failure_count < self.thresholds.fraud_failures_per_org:
                continue
            if len(cards) < self.thresholds.fraud_distinct_cards:
                continue
            if started and attempted and max(attempted) - min(started) > window_seconds:
                continue

            alerts.append(
                CriticalAlert(
                    type="payment_fraud",
                    severity="critical",
                    title=f"Suspicious payment failures for organization {organization_id}",
                    message=(
                        f"{failure_count} consecutive failed payments with {len(cards)} different cards "
                        f"within {self.thresholds.fraud_window_days} days."
                    ),
                    data={
                        "organization_id": organization_id,
                        "failure_count": failure_count,
                        "distinct_cards": cards,
                        "streak_started_at": min(started) if started else None,
                        "subscription_ids": sorted({e.subscription_id for e in events}),
                    },
                    organization_id=organization_id,
                )
            )

        by_error_code = defaultdict(set)
        for event in failures:
            error_code = event.data.get("error_code")
            if error_code:
                by_error_code[error_code].add(event.organization_id)

        for error_code, organizations in by_error_code.items():
            if len(organizations) < self.thresholds.fraud_shared_error_orgs:
                continue
            alerts.append(
                CriticalAlert(
                    type="payment_fraud",
                    severity="critical",
                    title=f"Same payment error across {len(organizations)} organizations",
                    message=f"Error code {error_code} was returned for {len(organizations)} unrelated organizations.",
                    data={"error_code": error_code, "organization_ids": sorted(organizations)},
                )
            )

        return alerts

    def alert_for_exception(self, exc: BaseException) -> CriticalAlert:
        return CriticalAlert(
            type="system_error",
            severity="critical",
            title="Daily billing run failed",
            message=f"The billing run aborted with {type(exc).__name__}: {exc}",
            data={"error_type": type(exc).__name__, "error": str(exc)},
        )


# ============================================================================
# DELIVERY
# ============================================================================


class EmailAlertChannel:
    """Emails alerts to the admin list"""

    name = "email"

    def __init__(self, recipients: list[str], sender=None, compiler=None):
        self.recipients = recipients
        self.sender = sender or send_rendered_email
        self.compiler = compiler or compile_mjml_to_html

    async def send(self, alert: CriticalAlert) -> None:
        mjml_content = admin_alert_template(
            title=alert.title,
            message=alert.message,
            severity=alert.severity,
            alert_type=alert.type,
            data=alert.data,
            timestamp=alert.timestamp.isoformat(),
        )
        text = f"[{alert.severity.upper()}] {alert.title}\n\n{alert.message}\n\n{alert.data}"
        try:
            html = self.compiler(mjml_content)
        except NotificationError as e:
            raise AlertDeliveryError(f"Email alert could not be rendered: {e}") from e

        response = await self.sender(
            to=self.recipients,
            subject=f"[BookFlow {alert.severity.upper()}] {alert.title}",
            html=html,
            text=text,
        )
        if not response.get("success"):
            raise AlertDeliveryError(f"Email alert failed: {response.get('error', 'unknown error')}")


class WebhookAlertChannel:
    """Posts alerts as JSON to a Slack-compatible webhook"""

    name = "webhook"

    def __init__(self, url: str, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self.http_client = http_client
        self.timeout = timeout

    async def send(self, alert: CriticalAlert) -> None:
        payload = {
            "text": f"[{alert.severity.upper()}] {alert.title}: {alert.message}",
            "alert": alert.model_dump(mode="json"),
        }
        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as http_client:
                    response = await http_client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise AlertDeliveryError(f"Webhook alert failed: {e}") from e

        if response.status_code >= 300:
            raise AlertDeliveryError(f"Webhook alert rejected ({response.status_code}): {response.text[:200]}")


class LoggingAlertChannel:
    """Fallback when no delivery channel is configured"""

    name = "logging"

    async def send(self, alert: CriticalAlert) -> None:
        log = logger.critical if alert.severity == "critical" else logger.error
        log(f"🚨 [{alert.severity.upper()}] {alert.type}: {alert.title} - {alert.message} {alert.data}")


class AlertSender:
    """Delivers alerts through every channel; an alert counts as sent when any channel delivers it"""

    def __init__(self, channels: list):
        self.channels = channels or [LoggingAlertChannel()]

    @classmethod
    def from_config(cls) -> "AlertSender":
        channels = []
        if config.ADMIN_ALERT_EMAILS:
            channels.append(EmailAlertChannel(config.ADMIN_ALERT_EMAILS))
        if config.ALERT_WEBHOOK_URL:
            channels.append(WebhookAlertChannel(config.ALERT_WEBHOOK_URL))
        if not channels:
            logger.warning("⚠️ No alert channels configured, alerts will only be logged")
        return cls(channels)

    async def send_alerts(self, alerts: list[CriticalAlert]) -> DeliveryReport:
        report = DeliveryReport()

        for alert in alerts:
            delivered = False
            for channel in self.channels:
                try:
                    await channel.send(alert)
                    delivered = True
                except AlertDeliveryError as e:
                    report.errors.append(f"{channel.name}: {alert.title}: {e}")
                    logger.error(f"❌ Alert delivery via {channel.name} failed: {e}")

            if delivered:
                report.sent += 1
            else:
                report.failed += 1

        if alerts:
            logger.info(f"🚨 Alerts delivered: sent={report.sent}, failed={report.failed}")
        return report
