"""Notification dispatcher - renders billing events into emails and sends them"""

import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from ... import email_templates
from ...email_service import compile_mjml_to_html, send_rendered_email
from ...exceptions import NotificationError
from .schemas import DeliveryReport, NotificationEvent

logger = logging.getLogger(__name__)

EmailSender = Callable[..., Awaitable[dict]]

SUBJECTS = {
    "trial_ending": "Tu período de prueba gratuito termina mañana - BookFlow",
    "payment_success": "✅ Pago procesado exitosamente - BookFlow",
    "payment_failed": "❌ Problema con tu pago - BookFlow",
    "subscription_canceled": "Tu suscripción ha sido cancelada - BookFlow",
}


class RenderedEmail(BaseModel):
    subject: str
    html: str
    text: str


def _trial_ending(event: NotificationEvent, ids: dict) -> tuple[str, str]:
    data = event.data
    kwargs = dict(
        **ids,
        plan_name=data.get("plan_name", ""),
        amount=data.get("amount"),
        currency=data.get("currency", "CLP"),
        trial_end_date=data.get("trial_end_date"),
        next_billing_date=data.get("next_billing_date"),
    )
    return email_templates.trial_ending_template(**kwargs), email_templates.trial_ending_text(**kwargs)


def _payment_success(event: NotificationEvent, ids: dict) -> tuple[str, str]:
    data = event.data
    kwargs = dict(
        **ids,
        plan_name=data.get("plan_name", ""),
        amount=data.get("amount"),
        currency=data.get("currency", "CLP"),
        transaction_id=data.get("transaction_id"),
        next_billing_date=data.get("next_billing_date"),
        retry_attempt=bool(data.get("retry_attempt")),
        card_last4=data.get("card_last4"),
    )
    return email_templates.payment_success_template(**kwargs), email_templates.payment_success_text(**kwargs)


def _payment_failed(event: NotificationEvent, ids: dict) -> tuple[str, str]:
    data = event.data
    kwargs = dict(
        **ids,
        plan_name=data.get("plan_name", ""),
        amount=data.get("amount"),
        currency=data.get("currency", "CLP"),
        attempt_number=data.get("attempt_number", 1),
        max_attempts=data.get("max_attempts", 1),
        final_attempt=bool(data.get("final_attempt")),
        error_message=data.get("error_message"),
        next_retry_date=data.get("next_retry_date"),
    )
    return email_templates.payment_failed_template(**kwargs), email_templates.payment_failed_text(**kwargs)


def _subscription_canceled(event: NotificationEvent, ids: dict) -> tuple[str, str]:
    data = event.data
    kwargs = dict(
        **ids,
        plan_name=data.get("plan_name", ""),
        amount=data.get("amount"),
        currency=data.get("currency", "CLP"),
    )
    return (
        email_templates.subscription_canceled_template(**kwargs),
        email_templates.subscription_canceled_text(**kwargs),
    )


TEMPLATE_BUILDERS = {
    "trial_ending": _trial_ending,
    "payment_success": _payment_success,
    "payment_failed": _payment_failed,
    "subscription_canceled": _subscription_canceled,
}


class NotificationDispatcher:
    """Sends customer billing emails, one event at a time"""

    def __init__(
        self,
        sender: Optional[EmailSender] = None,
        compiler: Optional[Callable[[str], str]] = None,
    ):
        self.sender = sender or send_rendered_email
        self.compiler = compiler or compile_mjml_to_html

    def render(self, event: NotificationEvent) -> RenderedEmail:
        """Pick the template for event.type and render subject, HTML and plaintext"""
        builder = TEMPLATE_BUILDERS.get(event.type)
        if builder is None:
            raise NotificationError(f"No template for notification type {event.type}")

        ids = {"organization_id": event.organization_id, "subscription_id": event.subscription_id}
        mjml_content, text = builder(event, ids)
        return RenderedEmail(subject=SUBJECTS[event.type], html=self.compiler(mjml_content), text=text)

    async def send_billing_notifications(self, events: list[NotificationEvent]) -> DeliveryReport:
        report = DeliveryReport()

        for event in events:
            if not event.customer_email:
                report.failed += 1
                report.errors.append(
                    f"No recipient for {event.type} notification (subscription {event.subscription_id})"
                )
                logger.warning(f"⚠️ Skipping {event.type} for subscription {event.subscription_id}: no email")
                continue

            try:
                rendered = self.render(event)
                response = await self.sender(
                    to=event.customer_email,
                    subject=rendered.subject,
                    html=rendered.html,
                    text=rendered.text,
                )
            except NotificationError as e:
                report.failed += 1
                report.errors.append(f"Failed to send {event.type} to subscription {event.subscription_id}: {e}")
                logger.error(f"❌ {event.type} notification failed for {event.subscription_id}: {e}")
                continue

            if response.get("success"):
                report.sent += 1
            else:
                report.failed += 1
                report.errors.append(
                    f"Failed to send {event.type} to subscription {event.subscription_id}: "
                    f"{response.get('error', 'unknown error')}"
                )

        logger.info(f"📧 Billing notifications: sent={report.sent}, failed={report.failed}")
        return report
