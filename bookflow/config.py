import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookflow.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Fernet key for OneClick card tokens (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
# Falls back to a key derived from SECRET_KEY when unset
CARD_TOKEN_ENCRYPTION_KEY = os.getenv("CARD_TOKEN_ENCRYPTION_KEY")

# Shared secret for internal/operational endpoints (manual billing trigger, card inscriptions)
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY")

# Frontend base URL for redirects and email links
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@bookflow.cl")

# Transbank Configuration
# "integration" or "production" - default to integration for safety
TRANSBANK_ENVIRONMENT = os.getenv("TRANSBANK_ENVIRONMENT", "integration")
# Oneclick Mall parent commerce code (integration default: ONECLICK_MALL)
TRANSBANK_COMMERCE_CODE = os.getenv("TRANSBANK_COMMERCE_CODE", "597055555541")
# Oneclick Mall child store that receives the recurring charges
TRANSBANK_CHILD_COMMERCE_CODE = os.getenv("TRANSBANK_CHILD_COMMERCE_CODE", "597055555542")
# Webpay Plus commerce code for one-time purchases
TRANSBANK_WEBPAY_COMMERCE_CODE = os.getenv("TRANSBANK_WEBPAY_COMMERCE_CODE", "597055555532")
# Integration API key published by Transbank; production keys come from the environment only
TRANSBANK_API_KEY = os.getenv(
    "TRANSBANK_API_KEY", "579B532A7440BB0C9079DED94D31EA1615BACEB56610332264630D42D0A36B1C"
)
TRANSBANK_TIMEOUT_SECONDS = float(os.getenv("TRANSBANK_TIMEOUT_SECONDS", "30"))

# Billing policy
# Total charge attempts (first charge + retries) before a past_due subscription becomes unpaid
BILLING_MAX_PAYMENT_ATTEMPTS = int(os.getenv("BILLING_MAX_PAYMENT_ATTEMPTS", "3"))
# Retry n is scheduled BILLING_RETRY_BACKOFF_DAYS * 2**n days after the failure
BILLING_RETRY_BACKOFF_DAYS = float(os.getenv("BILLING_RETRY_BACKOFF_DAYS", "1"))
# Wall-clock budget for one daily run; keep below the ARQ job timeout
BILLING_TIME_BUDGET_SECONDS = float(os.getenv("BILLING_TIME_BUDGET_SECONDS", "540"))
BILLING_CRON_HOUR = int(os.getenv("BILLING_CRON_HOUR", "9"))  # 09:00 UTC, 06:00 Chile
BILLING_CRON_MINUTE = int(os.getenv("BILLING_CRON_MINUTE", "0"))

# Alert thresholds
ALERT_FAILURE_RATE_THRESHOLD = float(os.getenv("ALERT_FAILURE_RATE_THRESHOLD", "0.30"))
ALERT_CRITICAL_FAILURE_RATE = float(os.getenv("ALERT_CRITICAL_FAILURE_RATE", "0.50"))
ALERT_MIN_SAMPLE_SIZE = int(os.getenv("ALERT_MIN_SAMPLE_SIZE", "5"))
ALERT_MAX_CONSECUTIVE_FAILURES = int(os.getenv("ALERT_MAX_CONSECUTIVE_FAILURES", "3"))
ALERT_MAX_ERRORS_PER_RUN = int(os.getenv("ALERT_MAX_ERRORS_PER_RUN", "10"))
ALERT_MAX_FINAL_FAILURES_PER_RUN = int(os.getenv("ALERT_MAX_FINAL_FAILURES_PER_RUN", "3"))
ALERT_FRAUD_FAILURES_PER_ORG = int(os.getenv("ALERT_FRAUD_FAILURES_PER_ORG", "3"))
ALERT_FRAUD_DISTINCT_CARDS = int(os.getenv("ALERT_FRAUD_DISTINCT_CARDS", "2"))
ALERT_FRAUD_WINDOW_DAYS = int(os.getenv("ALERT_FRAUD_WINDOW_DAYS", "7"))
ALERT_FRAUD_SHARED_ERROR_ORGS = int(os.getenv("ALERT_FRAUD_SHARED_ERROR_ORGS", "5"))

# Alert delivery channels
ADMIN_ALERT_EMAILS = [
    email.strip() for email in os.getenv("ADMIN_ALERT_EMAILS", "").split(",") if email.strip()
]
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "BookFlow <facturacion@bookflow.cl>")
