"""
Scheduled billing entry point

run_billing_job runs the orchestrator, emails every queued event, analyzes the
run and delivers alerts. billing_cron_handler wraps the result into the
{statusCode, headers, body} envelope consumed by the scheduler.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ... import config
from ...database import SessionLocal
from ..payments import PaymentGateway, TransbankGateway
from .alerts import AlertAnalyzer, AlertSender, AlertThresholds
from .notifications import NotificationDispatcher
from .orchestrator import BillingOrchestrator
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}


def iso_timestamp() -> str:
    """2024-05-01T09:00:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def run_billing_job(
    gateway: PaymentGateway,
    session_factory: Callable[[], Session] = SessionLocal,
    dispatcher: Optional[NotificationDispatcher] = None,
    analyzer: Optional[AlertAnalyzer] = None,
    alert_sender: Optional[AlertSender] = None,
    max_payment_attempts: Optional[int] = None,
    retry_backoff_days: Optional[float] = None,
    time_budget_seconds: Optional[float] = None,
) -> dict:
    """Run one daily billing pass and return the JSON-ready result body"""
    start = time.monotonic()
    dispatcher = dispatcher or NotificationDispatcher()
    analyzer = analyzer or AlertAnalyzer(AlertThresholds.from_config())
    alert_sender = alert_sender or AlertSender.from_config()

    logger.info("🔄 Daily billing job started")

    db = session_factory()
    try:
        orchestrator = BillingOrchestrator(
            SubscriptionRepository(db),
            gateway,
            max_payment_attempts=max_payment_attempts or config.BILLING_MAX_PAYMENT_ATTEMPTS,
            retry_backoff_days=retry_backoff_days or config.BILLING_RETRY_BACKOFF_DAYS,
            time_budget_seconds=(
                time_budget_seconds if time_budget_seconds is not None else config.BILLING_TIME_BUDGET_SECONDS
            ),
        )
        result = await orchestrator.run_daily_billing()

        email_report = await dispatcher.send_billing_notifications(result.notifications)

        alerts = analyzer.analyze(result, result.notifications)
        alert_report = await alert_sender.send_alerts(alerts)

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"✅ Daily billing job completed in {duration_ms}ms: "
            f"charges={result.charge_results.model_dump()}, retries={result.retry_results.model_dump()}, "
            f"emails sent={email_report.sent} failed={email_report.failed}, "
            f"alerts={len(alerts)}, errors={len(result.errors)}"
        )
        for error in result.errors:
            logger.warning(f"⚠️ Billing error: {error}")

        return {
            "success": True,
            "message": "Daily billing completed successfully",
            "duration": f"{duration_ms}ms",
            "results": {
                "trialNotifications": len(result.trial_notifications),
                "chargeResults": result.charge_results.model_dump(),
                "retryResults": result.retry_results.model_dump(),
                "totalNotifications": result.total_notifications,
                "errorsCount": len(result.errors),
                "alertsGenerated": len(alerts),
                "alertsSent": alert_report.sent,
                "alertsFailed": alert_report.failed,
                "emailsSent": email_report.sent,
                "emailsFailed": email_report.failed,
            },
            "timestamp": iso_timestamp(),
        }
    except Exception as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.exception(f"❌ Daily billing job failed after {duration_ms}ms: {e}")

        try:
            await alert_sender.send_alerts([analyzer.alert_for_exception(e)])
        except Exception as alert_error:
            logger.error(f"❌ Could not deliver billing failure alert: {alert_error}")

        return {
            "success": False,
            "message": "Daily billing job failed",
            "error": str(e),
            "duration": f"{duration_ms}ms",
            "timestamp": iso_timestamp(),
        }
    finally:
        db.close()


async def billing_cron_handler(
    event: Optional[dict],
    context=None,
    gateway: Optional[PaymentGateway] = None,
    **job_kwargs,
) -> dict:
    """Scheduler entry point returning {statusCode, headers, body}"""
    logger.info(f"⏰ Billing cron triggered: {(event or {}).get('source', 'unknown')}")

    owned_gateway = None
    if gateway is None:
        owned_gateway = gateway = TransbankGateway.from_config()

    try:
        body = await run_billing_job(gateway, **job_kwargs)
    finally:
        if owned_gateway is not None:
            await owned_gateway.aclose()

    return {
        "statusCode": 200 if body["success"] else 500,
        "headers": JSON_HEADERS,
        "body": json.dumps(body),
    }


def build_manual_event() -> dict:
    """Synthesize the payload the scheduler would send"""
    return {
        "source": "manual.trigger",
        "detail-type": "Manual Billing Trigger",
        "time": iso_timestamp(),
        "detail": {"triggeredBy": "operator"},
    }


async def manual_billing_handler(gateway: Optional[PaymentGateway] = None, **job_kwargs) -> dict:
    """Operational trigger: same handler, synthetic event"""
    logger.info("🔧 Manual billing run requested")
    return await billing_cron_handler(build_manual_event(), None, gateway=gateway, **job_kwargs)
