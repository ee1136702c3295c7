import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, String, Text

from .database import Base

SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "canceled", "unpaid", "incomplete")
TERMINAL_STATUSES = ("canceled", "unpaid")


def generate_subscription_id():
    """Generate a unique subscription identifier"""
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class Subscription(Base):
    """Billing projection of an organization's commercial state (one per organization)"""

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_subscription_id)
    organization_id = Column(String(255), unique=True, index=True, nullable=False)
    customer_email = Column(String(255), nullable=True)  # Billing contact for notifications

    plan_id = Column(String(100), nullable=False)
    plan_name = Column(String(255), nullable=False)
    amount = Column(Integer, nullable=False)  # CLP has no minor unit
    currency = Column(String(3), nullable=False, default="CLP")
    interval = Column(String(10), nullable=False, default="month")  # month, year

    status = Column(String(20), nullable=False, index=True)  # see SUBSCRIPTION_STATUSES

    # Epoch seconds
    current_period_start = Column(BigInteger, nullable=False)
    current_period_end = Column(BigInteger, nullable=False)
    trial_start = Column(BigInteger, nullable=True)
    trial_end = Column(BigInteger, nullable=True)

    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(BigInteger, nullable=True)

    # Transbank references
    transbank_order_id = Column(String(64), nullable=True, index=True)
    transbank_transaction_id = Column(String(255), nullable=True)

    # OneClick card on file
    oneclick_username = Column(String(255), nullable=True)
    oneclick_tbk_user = Column(Text, nullable=True)  # Encrypted card token
    oneclick_card_type = Column(String(50), nullable=True)
    oneclick_card_last4 = Column(String(4), nullable=True)
    oneclick_active = Column(Boolean, default=False, nullable=False)
    oneclick_inscribed_at = Column(BigInteger, nullable=True)

    # Retry bookkeeping
    payment_attempts = Column(Integer, default=0, nullable=False)  # Consecutive failed charges
    last_payment_attempt = Column(BigInteger, nullable=True)
    retry_payment_at = Column(BigInteger, nullable=True)
    last_payment_date = Column(BigInteger, nullable=True)

    # Current failure streak, cleared by the next successful charge
    failure_streak_started_at = Column(BigInteger, nullable=True)
    failed_card_suffixes = Column(String(255), nullable=True)  # "1111,2222"

    # trial_end value a "trial ending" notice was already queued for
    trial_ending_notified_for = Column(BigInteger, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("ix_subscriptions_status_trial_end", "status", "trial_end"),)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Subscription {self.id} org={self.organization_id} status={self.status}>"
