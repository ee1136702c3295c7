"""
Email Service using Resend
Compiles MJML templates and sends billing and alert emails
"""

import io
import logging
from typing import Optional, Union

import resend
from mjml import mjml_to_html

from .config import EMAIL_FROM_ADDRESS, RESEND_API_KEY
from .exceptions import NotificationError

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


def compile_mjml_to_html(mjml_content: str) -> str:
    """Compile MJML template to production-ready HTML"""
    try:
        result = mjml_to_html(io.StringIO(mjml_content))
    except Exception as e:
        logger.error(f"MJML compilation error: {e}")
        raise NotificationError(f"Failed to compile MJML template: {str(e)}") from e

    # mjml_to_html returns a mapping with 'html' and 'errors' keys
    if isinstance(result, dict):
        if result.get("errors"):
            logger.warning(f"MJML compilation warnings: {result['errors']}")
        return result.get("html", "")
    html = getattr(result, "html", None)
    return html if html is not None else str(result)


async def send_rendered_email(
    to: Union[str, list[str]],
    subject: str,
    html: str,
    text: Optional[str] = None,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an already rendered email through Resend

    Returns:
        {"success": True, "messageId": ...} or {"success": False, "error": ...}
    """
    recipients = [to] if isinstance(to, str) else to

    if not RESEND_API_KEY:
        logger.error(f"❌ RESEND_API_KEY not configured, cannot email {recipients}")
        return {"success": False, "error": "Email provider not configured"}

    email_data = {
        "from": from_address or EMAIL_FROM_ADDRESS,
        "to": recipients,
        "subject": subject,
        "html": html,
    }
    if text:
        email_data["text"] = text

    try:
        response = resend.Emails.send(email_data)
    except Exception as e:
        logger.error(f"❌ Email send error to {recipients}: {e}")
        return {"success": False, "error": str(e)}

    message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    logger.info(f"📧 Email sent via Resend to {recipients}: {message_id}")
    return {"success": True, "messageId": message_id}
