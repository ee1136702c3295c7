import os

# Configure before bookflow.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

import uuid  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from bookflow.database import Base  # noqa: E402
from bookflow.domain.payments import (  # noqa: E402
    ChargeResult,
    InscriptionRemoved,
    InscriptionResult,
    InscriptionStarted,
    TransactionConfirmation,
    TransactionCreated,
)
from bookflow.models import Subscription  # noqa: E402
from bookflow.security import encrypt_token  # noqa: E402

NOW = 1_750_000_000
HOUR = 60 * 60
DAY = 24 * HOUR
CARD_TOKEN = "tbk-user-secret-token"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def approved(order_id="BF1", amount=12990, authorization_code="1213", card_last4="6623"):
    return ChargeResult(
        success=True,
        authorization_code=authorization_code,
        order_id=order_id,
        amount=amount,
        transaction_date="2025-06-15T09:00:00.000Z",
        response_code=0,
        card_last4=card_last4,
        status="AUTHORIZED",
    )


def rejected(response_code=-1):
    return ChargeResult(success=False, response_code=response_code, status="FAILED")


class FakeGateway:
    """In-memory payment gateway; charge outcomes are keyed by OneClick username"""

    def __init__(self):
        self.charges = []
        self.outcomes = {}
        self.removed = []
        self.finish_result = InscriptionResult(
            success=True,
            card_token=CARD_TOKEN,
            authorization_code="1213",
            card_brand="Visa",
            masked_card_number="6623",
            response_code=0,
        )
        self.confirmation = None

    async def charge_inscribed_card(self, payer_identifier, card_token, order_id, amount):
        self.charges.append(
            {"username": payer_identifier, "card_token": card_token, "order_id": order_id, "amount": amount}
        )
        outcome = self.outcomes.get(payer_identifier)
        if callable(outcome):
            outcome = outcome(order_id, amount)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return approved(order_id=order_id, amount=amount)
        return outcome

    async def create_transaction(self, order_id, payer_identifier, amount, return_url):
        self.last_transaction = {"order_id": order_id, "amount": amount, "return_url": return_url}
        return TransactionCreated(token="wp-token", redirect_url="https://webpay3gint.transbank.cl/webpayserver/initTransaction")

    async def confirm_transaction(self, token):
        if self.confirmation is not None:
            return self.confirmation
        return TransactionConfirmation(
            authorized=True,
            status="AUTHORIZED",
            order_id=self.last_transaction["order_id"],
            amount=self.last_transaction["amount"],
            authorization_code="1415",
            response_code=0,
            card_last4="6623",
        )

    async def get_transaction_status(self, token):
        return await self.confirm_transaction(token)

    async def start_inscription(self, username, email, return_url):
        self.last_inscription = {"username": username, "email": email, "return_url": return_url}
        return InscriptionStarted(token="insc-token", redirect_url="https://webpay3gint.transbank.cl/webpayserver/bp_multicode_inscription.cgi")

    async def finish_inscription(self, token):
        return self.finish_result

    async def remove_inscription(self, card_token, payer_identifier):
        self.removed.append((card_token, payer_identifier))
        return InscriptionRemoved(success=True)


@pytest.fixture
def gateway():
    return FakeGateway()


def make_subscription(db, **overrides) -> Subscription:
    organization_id = overrides.pop("organization_id", f"org-{uuid.uuid4().hex[:8]}")
    fields = {
        "organization_id": organization_id,
        "customer_email": f"billing@{organization_id}.cl",
        "plan_id": "pro",
        "plan_name": "Plan Profesional",
        "amount": 12990,
        "currency": "CLP",
        "interval": "month",
        "status": "trialing",
        "current_period_start": NOW - 14 * DAY,
        "current_period_end": NOW - HOUR,
        "trial_start": NOW - 14 * DAY,
        "trial_end": NOW - HOUR,
        "oneclick_username": f"bf-{organization_id}",
        "oneclick_tbk_user": encrypt_token(CARD_TOKEN),
        "oneclick_card_type": "Visa",
        "oneclick_card_last4": "6623",
        "oneclick_active": True,
    }
    fields.update(overrides)
    subscription = Subscription(**fields)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


class RecordingSender:
    """Stands in for send_rendered_email"""

    def __init__(self, response=None):
        self.sent = []
        self.response = response or {"success": True, "messageId": "msg-1"}

    async def __call__(self, to, subject, html, text=None, from_address=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return self.response


@pytest.fixture
def email_sender():
    return RecordingSender()


def fake_compiler(mjml_content: str) -> str:
    return f"<html>{mjml_content}</html>"
