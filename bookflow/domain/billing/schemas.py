"""Billing domain schemas - Pydantic models for run results, events and requests"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

NotificationType = Literal["trial_ending", "payment_success", "payment_failed", "subscription_canceled"]
AlertType = Literal["billing_failure", "payment_fraud", "system_error", "high_failure_rate"]
AlertSeverity = Literal["low", "medium", "high", "critical"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# RUN RECORDS
# ============================================================================


class BillingAttempt(BaseModel):
    """One charge attempt made during a run"""

    subscription_id: str
    organization_id: str
    amount: int
    currency: str = "CLP"
    attempt_number: int
    success: bool
    error_message: Optional[str] = None
    response_code: Optional[int] = None
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    card_last4: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class NotificationEvent(BaseModel):
    """Customer-facing billing event queued by the orchestrator"""

    type: NotificationType
    subscription_id: str
    organization_id: str
    customer_email: Optional[str] = None
    data: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


class CriticalAlert(BaseModel):
    """Operator-facing alert produced by the alert analyzer"""

    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    data: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
    organization_id: Optional[str] = None
    subscription_id: Optional[str] = None


class StageResult(BaseModel):
    """Counters for one charging stage; processed == successful + failed"""

    processed: int = 0
    successful: int = 0
    failed: int = 0

    def record_success(self) -> None:
        self.processed += 1
        self.successful += 1

    def record_failure(self) -> None:
        self.processed += 1
        self.failed += 1


class ReconciliationItem(BaseModel):
    """A charge that succeeded at Transbank but could not be saved locally"""

    subscription_id: str
    organization_id: str
    order_id: Optional[str] = None
    authorization_code: Optional[str] = None
    amount: int
    error: str


class DailyBillingResult(BaseModel):
    trial_notifications: list[NotificationEvent] = Field(default_factory=list)
    charge_results: StageResult = Field(default_factory=StageResult)
    retry_results: StageResult = Field(default_factory=StageResult)
    notifications: list[NotificationEvent] = Field(default_factory=list)  # Every event queued in the run
    errors: list[str] = Field(default_factory=list)
    attempts: list[BillingAttempt] = Field(default_factory=list)
    reconciliation: list[ReconciliationItem] = Field(default_factory=list)
    deferred: int = 0

    @property
    def total_notifications(self) -> int:
        return len(self.notifications)


class DeliveryReport(BaseModel):
    """Aggregate outcome of sending a batch of emails or alerts"""

    sent: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


# ============================================================================
# OPERATIONAL REQUESTS / RESPONSES
# ============================================================================


class StartTrialRequest(BaseModel):
    """Schema for starting a trial subscription"""

    organization_id: str
    customer_email: Optional[str] = None
    plan_id: str
    plan_name: str
    amount: int
    currency: str = "CLP"
    interval: str = "month"
    trial_days: int = 14

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("amount must be positive")
        return v

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        if v not in {"month", "year"}:
            raise ValueError("interval must be 'month' or 'year'")
        return v

    @field_validator("trial_days")
    @classmethod
    def validate_trial_days(cls, v: int) -> int:
        if v < 1 or v > 90:
            raise ValueError("trial_days must be between 1 and 90")
        return v


class CancelSubscriptionRequest(BaseModel):
    """Schema for canceling a subscription"""

    cancel_at_period_end: bool = True


class StartInscriptionRequest(BaseModel):
    organization_id: str
    email: str
    return_url: Optional[str] = None


class FinishInscriptionRequest(BaseModel):
    organization_id: str
    token: str


class CreateTransactionRequest(BaseModel):
    """Schema for a one-time Webpay Plus purchase"""

    organization_id: str
    return_url: Optional[str] = None


class ConfirmTransactionRequest(BaseModel):
    token: str


class SubscriptionResponse(BaseModel):
    """Subscription summary; never includes the card token"""

    id: str
    organization_id: str
    plan_id: str
    plan_name: str
    amount: int
    currency: str
    interval: str
    status: str
    current_period_start: int
    current_period_end: int
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    cancel_at_period_end: bool
    canceled_at: Optional[int] = None
    payment_attempts: int
    retry_payment_at: Optional[int] = None
    oneclick_active: bool
    oneclick_card_type: Optional[str] = None
    oneclick_card_last4: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StatusCountsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
