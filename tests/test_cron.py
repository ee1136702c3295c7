import json

from bookflow.domain.billing import cron
from bookflow.domain.billing.alerts import AlertSender
from bookflow.domain.billing.cron import billing_cron_handler, build_manual_event, manual_billing_handler, run_billing_job
from bookflow.domain.billing.notifications import NotificationDispatcher
from bookflow.domain.billing.orchestrator import BillingOrchestrator
from conftest import RecordingSender, fake_compiler, make_subscription, rejected

RESULT_KEYS = {
    "trialNotifications",
    "chargeResults",
    "retryResults",
    "totalNotifications",
    "errorsCount",
    "alertsGenerated",
    "alertsSent",
    "alertsFailed",
    "emailsSent",
    "emailsFailed",
}


class RecordingChannel:
    name = "recording"

    def __init__(self):
        self.alerts = []

    async def send(self, alert):
        self.alerts.append(alert)


def job_kwargs(session_factory, sender=None, channel=None):
    return {
        "session_factory": session_factory,
        "dispatcher": NotificationDispatcher(sender=sender or RecordingSender(), compiler=fake_compiler),
        "alert_sender": AlertSender([channel or RecordingChannel()]),
        "max_payment_attempts": 3,
        "retry_backoff_days": 1,
        "time_budget_seconds": None,
    }


async def test_run_billing_job_reports_counts(db, session_factory, gateway, email_sender):
    make_subscription(db)
    failing = make_subscription(db)
    gateway.outcomes[failing.oneclick_username] = rejected(-1)

    body = await run_billing_job(gateway, **job_kwargs(session_factory, sender=email_sender))

    assert body["success"] is True
    assert body["message"] == "Daily billing completed successfully"
    assert body["duration"].endswith("ms")
    assert body["timestamp"].endswith("Z")
    results = body["results"]
    assert set(results) == RESULT_KEYS
    assert results["chargeResults"] == {"processed": 2, "successful": 1, "failed": 1}
    assert results["retryResults"] == {"processed": 0, "successful": 0, "failed": 0}
    assert results["totalNotifications"] == 2
    assert results["emailsSent"] == 2
    assert results["errorsCount"] == 1
    assert len(email_sender.sent) == 2


async def test_run_billing_job_failure_sends_alert(session_factory, gateway, monkeypatch):
    async def explode(self):
        raise RuntimeError("store offline")

    monkeypatch.setattr(BillingOrchestrator, "run_daily_billing", explode)
    channel = RecordingChannel()

    body = await run_billing_job(gateway, **job_kwargs(session_factory, channel=channel))

    assert body["success"] is False
    assert body["message"] == "Daily billing job failed"
    assert body["error"] == "store offline"
    assert "results" not in body
    assert len(channel.alerts) == 1
    assert channel.alerts[0].severity == "critical"


async def test_cron_handler_envelope(db, session_factory, gateway):
    make_subscription(db)

    response = await billing_cron_handler(
        {"source": "arq.cron"}, None, gateway=gateway, **job_kwargs(session_factory)
    )

    assert response["statusCode"] == 200
    assert response["headers"] == {"Content-Type": "application/json"}
    body = json.loads(response["body"])
    assert body["success"] is True
    assert body["results"]["chargeResults"]["successful"] == 1


async def test_cron_handler_failure_is_500(session_factory, gateway, monkeypatch):
    async def explode(self):
        raise RuntimeError("boom")

    monkeypatch.setattr(BillingOrchestrator, "run_daily_billing", explode)

    response = await billing_cron_handler({}, None, gateway=gateway, **job_kwargs(session_factory))

    assert response["statusCode"] == 500
    assert json.loads(response["body"])["success"] is False


async def test_manual_handler_uses_synthetic_event(session_factory, gateway, monkeypatch):
    seen = []
    real_handler = cron.billing_cron_handler

    async def spy(event, context=None, **kwargs):
        seen.append(event)
        return await real_handler(event, context, **kwargs)

    monkeypatch.setattr(cron, "billing_cron_handler", spy)

    response = await manual_billing_handler(gateway=gateway, **job_kwargs(session_factory))

    assert response["statusCode"] == 200
    assert seen[0]["source"] == "manual.trigger"


def test_manual_event_shape():
    event = build_manual_event()

    assert event["source"] == "manual.trigger"
    assert event["time"].endswith("Z")
