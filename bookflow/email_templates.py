"""
MJML Email Templates
Billing emails (MJML for responsive HTML, plus a plaintext body)
"""

import html
from datetime import datetime, timezone
from typing import Optional

from .config import FRONTEND_URL, SUPPORT_EMAIL

# BookFlow brand colors - Indigo/Slate color scheme
THEME = {
    "primary": "#4f46e5",
    "primary_dark": "#4338ca",
    "primary_light": "#e0e7ff",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "success": "#10b981",
    "warning": "#f59e0b",
    "danger": "#ef4444",
}

LOGO_URL = "https://bookflow.cl/logo.png"
SUBSCRIPTION_SETTINGS_URL = f"{FRONTEND_URL}/settings?tab=subscription"

SEVERITY_COLORS = {
    "low": THEME["text_muted"],
    "medium": THEME["warning"],
    "high": THEME["danger"],
    "critical": THEME["danger"],
}


def format_clp(amount: Optional[int], currency: str = "CLP") -> str:
    """12990 -> $12.990 CLP"""
    if amount is None:
        return "-"
    return f"${amount:,.0f}".replace(",", ".") + f" {currency}"


def format_date(timestamp: Optional[int]) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%d-%m-%Y")


def _e(value) -> str:
    return html.escape(str(value)) if value is not None else ""


def _reference_block(organization_id: str, subscription_id: str) -> str:
    return f"""
    <mj-text font-size="12px" color="{THEME['text_muted']}" padding="24px 0 0 0">
      Referencia para soporte: organización {_e(organization_id)} · suscripción {_e(subscription_id)}
    </mj-text>
    """


def _reference_text(organization_id: str, subscription_id: str) -> str:
    return f"Referencia para soporte: organización {organization_id} · suscripción {subscription_id}"


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button
              href="{cta_url}"
              background-color="{THEME['primary']}"
              color="#ffffff"
              font-weight="600"
              border-radius="8px"
              padding="18px 40px"
              font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', 'Helvetica Neue', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="32px 20px">
          <mj-column>
            <mj-image src="{LOGO_URL}" alt="BookFlow" width="140px" href="https://bookflow.cl" padding="0" />
          </mj-column>
        </mj-section>

        <mj-section background-color="#ffffff" padding="0 40px 48px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" line-height="1.3" padding="0 0 16px 0">
              {title}
            </mj-text>

            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="0">
              ¿Preguntas? Escríbenos a {SUPPORT_EMAIL}
            </mj-text>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="12px 0 0 0">
              © BookFlow. Todos los derechos reservados.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


# ============================================
# Customer billing emails
# ============================================


def trial_ending_template(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
    trial_end_date: Optional[int], next_billing_date: Optional[int],
) -> str:
    """Trial ends tomorrow MJML template"""
    content = f"""
    <mj-text>
      Tu período de prueba gratuito del plan <strong>{_e(plan_name)}</strong> termina el
      <strong>{format_date(trial_end_date)}</strong>.
    </mj-text>

    <mj-text padding="0 0 0 20px">
      • El {format_date(next_billing_date)} se cobrará automáticamente <strong>{format_clp(amount, currency)}</strong><br/>
      • Tu servicio continuará sin interrupciones<br/>
      • Puedes cancelar en cualquier momento desde tu panel de control
    </mj-text>
    {_reference_block(organization_id, subscription_id)}
    """
    return get_base_template(
        title="Tu período de prueba termina mañana",
        preview_text=f"Tu prueba de {plan_name} termina el {format_date(trial_end_date)}",
        content_sections=content,
        cta_url=SUBSCRIPTION_SETTINGS_URL,
        cta_label="Gestionar suscripción",
    )


def trial_ending_text(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
    trial_end_date: Optional[int], next_billing_date: Optional[int],
) -> str:
    return (
        "BookFlow - Tu período de prueba termina mañana\n\n"
        f"Tu período de prueba gratuito del plan {plan_name} termina el {format_date(trial_end_date)}.\n"
        f"El {format_date(next_billing_date)} se cobrará automáticamente {format_clp(amount, currency)}.\n\n"
        f"Gestiona tu suscripción en: {SUBSCRIPTION_SETTINGS_URL}\n"
        f"Si tienes preguntas, contacta a {SUPPORT_EMAIL}\n\n"
        f"{_reference_text(organization_id, subscription_id)}\n"
    )


def payment_success_template(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
    transaction_id: Optional[str], next_billing_date: Optional[int], retry_attempt: bool = False,
    card_last4: Optional[str] = None,
) -> str:
    """Payment processed MJML template"""
    intro = (
        "Tu pago pendiente ha sido procesado correctamente."
        if retry_attempt
        else "Tu pago ha sido procesado correctamente."
    )
    card_line = f"• Tarjeta: terminada en {_e(card_last4)}<br/>" if card_last4 else ""
    content = f"""
    <mj-text>{intro}</mj-text>

    <mj-text padding="0 0 0 20px">
      • Plan: {_e(plan_name)}<br/>
      • Monto: {format_clp(amount, currency)}<br/>
      • ID de transacción: {_e(transaction_id or '-')}<br/>
      {card_line}
      • Próximo cobro: {format_date(next_billing_date)}
    </mj-text>
    {_reference_block(organization_id, subscription_id)}
    """
    return get_base_template(
        title="Pago procesado exitosamente",
        preview_text=f"Recibimos tu pago de {format_clp(amount, currency)}",
        content_sections=content,
        cta_url=SUBSCRIPTION_SETTINGS_URL,
        cta_label="Ver detalles de suscripción",
    )


def payment_success_text(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
    transaction_id: Optional[str], next_billing_date: Optional[int], retry_attempt: bool = False,
    card_last4: Optional[str] = None,
) -> str:
    intro = (
        "Tu pago pendiente ha sido procesado correctamente."
        if retry_attempt
        else "Tu pago ha sido procesado correctamente."
    )
    card_line = f"- Tarjeta: terminada en {card_last4}\n" if card_last4 else ""
    return (
        "BookFlow - Pago procesado exitosamente\n\n"
        f"{intro}\n\n"
        f"- Plan: {plan_name}\n"
        f"- Monto: {format_clp(amount, currency)}\n"
        f"- ID de transacción: {transaction_id or '-'}\n"
        f"{card_line}"
        f"- Próximo cobro: {format_date(next_billing_date)}\n\n"
        f"Ver detalles: {SUBSCRIPTION_SETTINGS_URL}\n\n"
        f"{_reference_text(organization_id, subscription_id)}\n"
    )


def _payment_failed_intro(attempt_number: int, max_attempts: int, final_attempt: bool) -> str:
    if final_attempt:
        return (
            "No pudimos procesar tu pago después de varios intentos. "
            "Tu suscripción quedó suspendida por falta de pago."
        )
    return (
        f"No pudimos procesar tu pago (intento {attempt_number}/{max_attempts}). "
        "Intentaremos nuevamente en unos días."
    )


def payment_failed_template(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
    attempt_number: int, max_attempts: int, final_attempt: bool = False,
    error_message: Optional[str] = None, next_retry_date: Optional[int] = None,
) -> str:
    """Payment failed MJML template (regular and final attempt variants)"""
    reason_line = f"• Motivo: {_e(error_message)}<br/>" if error_message else ""
    retry_line = (
        f"• Próximo intento: {format_date(next_retry_date)}<br/>" if next_retry_date and not final_attempt else ""
    )
    final_tip = "<br/>• Configura un nuevo método de pago para reactivar tu suscripción" if final_attempt else ""
    content = f"""
    <mj-text>{_payment_failed_intro(attempt_number, max_attempts, final_attempt)}</mj-text>

    <mj-text padding="0 0 0 20px">
      • Plan: {_e(plan_name)}<br/>
      • Monto: {format_clp(amount, currency)}<br/>
      • Intento: {attempt_number}/{max_attempts}<br/>
      {reason_line}
      {retry_line}
    </mj-text>

    <mj-text color="{THEME['text_muted']}">
      • Verifica que tu tarjeta tenga fondos suficientes<br/>
      • Confirma que los datos de tu tarjeta sean correctos<br/>
      • Contacta a tu banco si el problema persiste{final_tip}
    </mj-text>
    {_reference_block(organization_id, subscription_id)}
    """
    return get_base_template(
        title="Problema con tu pago",
        preview_text="No pudimos procesar tu pago",
        content_sections=content,
        cta_url=SUBSCRIPTION_SETTINGS_URL,
        cta_label="Configurar método de pago" if final_attempt else "Revisar suscripción",
    )


def payment_failed_text(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
    attempt_number: int, max_attempts: int, final_attempt: bool = False,
    error_message: Optional[str] = None, next_retry_date: Optional[int] = None,
) -> str:
    reason_line = f"- Motivo: {error_message}\n" if error_message else ""
    retry_line = (
        f"- Próximo intento: {format_date(next_retry_date)}\n" if next_retry_date and not final_attempt else ""
    )
    action = "Configura un nuevo método de pago en:" if final_attempt else "Revisa tu suscripción en:"
    return (
        "BookFlow - Problema con tu pago\n\n"
        f"{_payment_failed_intro(attempt_number, max_attempts, final_attempt)}\n\n"
        f"- Plan: {plan_name}\n"
        f"- Monto: {format_clp(amount, currency)}\n"
        f"- Intento: {attempt_number}/{max_attempts}\n"
        f"{reason_line}{retry_line}\n"
        f"{action} {SUBSCRIPTION_SETTINGS_URL}\n"
        f"Si necesitas ayuda, contacta a {SUPPORT_EMAIL}\n\n"
        f"{_reference_text(organization_id, subscription_id)}\n"
    )


def subscription_canceled_template(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
) -> str:
    """Subscription canceled MJML template"""
    content = f"""
    <mj-text>
      Tu suscripción al plan <strong>{_e(plan_name)}</strong> ({format_clp(amount, currency)}) ha sido cancelada.
    </mj-text>

    <mj-text padding="0 0 0 20px">
      • No se realizarán más cobros<br/>
      • Tus datos están seguros y no se eliminarán<br/>
      • Puedes reactivar tu suscripción en cualquier momento
    </mj-text>
    {_reference_block(organization_id, subscription_id)}
    """
    return get_base_template(
        title="Tu suscripción ha sido cancelada",
        preview_text=f"Tu suscripción a {plan_name} ha sido cancelada",
        content_sections=content,
        cta_url=SUBSCRIPTION_SETTINGS_URL,
        cta_label="Reactivar suscripción",
    )


def subscription_canceled_text(
    organization_id: str, subscription_id: str, plan_name: str, amount: int, currency: str,
) -> str:
    return (
        "BookFlow - Tu suscripción ha sido cancelada\n\n"
        f"Tu suscripción al plan {plan_name} ({format_clp(amount, currency)}) ha sido cancelada.\n"
        "No se realizarán más cobros. Puedes reactivarla en cualquier momento en:\n"
        f"{SUBSCRIPTION_SETTINGS_URL}\n\n"
        f"{_reference_text(organization_id, subscription_id)}\n"
    )


# ============================================
# Operator alerts
# ============================================


def admin_alert_template(
    title: str, message: str, severity: str, alert_type: str, data: dict, timestamp: str
) -> str:
    """Operator alert MJML template"""
    rows = "".join(f"• {_e(key)}: {_e(value)}<br/>" for key, value in data.items())
    content = f"""
    <mj-text font-weight="600" color="{SEVERITY_COLORS.get(severity, THEME['danger'])}">
      {_e(severity.upper())} · {_e(alert_type)}
    </mj-text>

    <mj-text>{_e(message)}</mj-text>

    <mj-text font-size="14px" padding="0 0 0 20px">
      {rows}
    </mj-text>

    <mj-text font-size="12px" color="{THEME['text_muted']}">{_e(timestamp)}</mj-text>
    """
    return get_base_template(
        title=_e(title),
        preview_text=_e(message)[:120],
        content_sections=content,
    )
