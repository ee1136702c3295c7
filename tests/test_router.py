import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from bookflow.database import get_db
from bookflow.domain.billing.router import router as billing_router
from bookflow.security import decrypt_token
from conftest import CARD_TOKEN, make_subscription

HEADERS = {"X-Internal-Api-Key": "test-internal-key"}

TRIAL = {
    "organization_id": "org-api",
    "customer_email": "billing@org-api.cl",
    "plan_id": "pro",
    "plan_name": "Plan Profesional",
    "amount": 12990,
    "interval": "month",
    "trial_days": 14,
}


@pytest.fixture
def client(session_factory, gateway):
    app = FastAPI()
    app.include_router(billing_router)
    app.state.gateway = gateway
    app.state.session_factory = session_factory

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def test_requests_without_key_are_rejected(client):
    assert client.get("/billing/subscriptions/stats").status_code == 401
    assert client.get("/billing/subscriptions/stats", headers={"X-Internal-Api-Key": "wrong"}).status_code == 401


def test_start_trial_and_duplicate(client):
    response = client.post("/billing/trials", json=TRIAL, headers=HEADERS)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "trialing"
    assert body["trial_end"] - body["trial_start"] == 14 * 24 * 60 * 60
    assert "oneclick_tbk_user" not in body

    duplicate = client.post("/billing/trials", json=TRIAL, headers=HEADERS)
    assert duplicate.status_code == 409


def test_start_trial_validates_amount(client):
    response = client.post("/billing/trials", json={**TRIAL, "amount": 0}, headers=HEADERS)

    assert response.status_code == 422


def test_unknown_subscription_is_404(client):
    response = client.get("/billing/subscriptions/org-missing", headers=HEADERS)

    assert response.status_code == 404


def test_stats(client, db):
    make_subscription(db)
    make_subscription(db, status="active")

    response = client.get("/billing/subscriptions/stats", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"total": 2, "by_status": {"trialing": 1, "active": 1}}


def test_cancel_at_period_end(client, db):
    make_subscription(db, organization_id="org-cancel", status="active")

    response = client.post("/billing/subscriptions/org-cancel/cancel", json={}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["cancel_at_period_end"] is True
    assert response.json()["status"] == "active"


def test_cancel_terminal_subscription_is_conflict(client, db):
    make_subscription(db, organization_id="org-done", status="unpaid")

    response = client.post(
        "/billing/subscriptions/org-done/cancel", json={"cancel_at_period_end": False}, headers=HEADERS
    )

    assert response.status_code == 409


def test_card_inscription_flow(client, db, gateway):
    make_subscription(db, organization_id="org-card", oneclick_tbk_user=None, oneclick_active=False)

    started = client.post(
        "/billing/oneclick/inscriptions",
        json={"organization_id": "org-card", "email": "billing@org-card.cl"},
        headers=HEADERS,
    )
    assert started.status_code == 200
    assert started.json()["token"] == "insc-token"
    assert gateway.last_inscription["username"] == "bf-org-card"

    finished = client.post(
        "/billing/oneclick/inscriptions/finish",
        json={"organization_id": "org-card", "token": "insc-token"},
        headers=HEADERS,
    )
    assert finished.status_code == 200
    assert finished.json() == {"success": True, "card_type": "Visa", "card_last4": "6623"}

    db.expire_all()
    subscription = client.get("/billing/subscriptions/org-card", headers=HEADERS).json()
    assert subscription["oneclick_active"] is True

    removed = client.delete("/billing/oneclick/inscriptions/org-card", headers=HEADERS)
    assert removed.status_code == 200
    assert gateway.removed == [(CARD_TOKEN, "bf-org-card")]


def test_stored_card_is_encrypted(client, db):
    make_subscription(db, organization_id="org-enc", oneclick_tbk_user=None, oneclick_active=False)

    client.post(
        "/billing/oneclick/inscriptions/finish",
        json={"organization_id": "org-enc", "token": "insc-token"},
        headers=HEADERS,
    )

    from bookflow.domain.billing.repository import SubscriptionRepository

    stored = SubscriptionRepository(db).get_by_organization("org-enc")
    assert stored.oneclick_tbk_user != CARD_TOKEN
    assert decrypt_token(stored.oneclick_tbk_user) == CARD_TOKEN


def test_webpay_purchase_activates_subscription(client, db):
    make_subscription(db, organization_id="org-pay")

    created = client.post("/billing/transactions", json={"organization_id": "org-pay"}, headers=HEADERS)
    assert created.status_code == 200
    assert created.json()["token"] == "wp-token"

    confirmed = client.post("/billing/transactions/confirm", json={"token": "wp-token"}, headers=HEADERS)
    assert confirmed.status_code == 200
    assert confirmed.json()["success"] is True
    assert confirmed.json()["status"] == "active"


def test_rejected_webpay_purchase(client, db, gateway):
    from bookflow.domain.payments import TransactionConfirmation

    gateway.confirmation = TransactionConfirmation(authorized=False, status="FAILED", response_code=-1)

    response = client.post("/billing/transactions/confirm", json={"token": "wp-token"}, headers=HEADERS)

    assert response.json() == {"success": False, "status": "FAILED"}


def test_run_daily_on_empty_store(client):
    response = client.post("/billing/run-daily", headers=HEADERS)

    assert response.status_code == 200
    envelope = response.json()
    assert envelope["statusCode"] == 200
    assert '"success": true' in envelope["body"]


def test_webpay_purchase_for_terminal_subscription_is_conflict(client, db, gateway):
    make_subscription(db, organization_id="org-unpaid", status="unpaid")

    response = client.post("/billing/transactions", json={"organization_id": "org-unpaid"}, headers=HEADERS)

    assert response.status_code == 409
    assert not hasattr(gateway, "last_transaction")


def test_authorized_payment_that_cannot_be_applied_needs_reconciliation(client, db, gateway, caplog):
    from bookflow.domain.payments import TransactionConfirmation

    make_subscription(db, organization_id="org-late", status="unpaid", transbank_order_id="BFW-1")
    gateway.confirmation = TransactionConfirmation(
        authorized=True,
        status="AUTHORIZED",
        order_id="BFW-1",
        amount=12990,
        authorization_code="1415",
        response_code=0,
    )

    with caplog.at_level(logging.ERROR):
        response = client.post("/billing/transactions/confirm", json={"token": "wp-token"}, headers=HEADERS)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["needs_reconciliation"] is True
    assert detail["order_id"] == "BFW-1"
    assert detail["authorization_code"] == "1415"
    assert detail["amount"] == 12990
    assert any("RECONCILE" in r.message and "BFW-1" in r.message for r in caplog.records)


def test_authorized_payment_for_unknown_order_needs_reconciliation(client, gateway, caplog):
    from bookflow.domain.payments import TransactionConfirmation

    gateway.confirmation = TransactionConfirmation(
        authorized=True,
        status="AUTHORIZED",
        order_id="BFW-404",
        amount=12990,
        authorization_code="1415",
        response_code=0,
    )

    with caplog.at_level(logging.ERROR):
        response = client.post("/billing/transactions/confirm", json={"token": "wp-token"}, headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["detail"]["needs_reconciliation"] is True
    assert any("RECONCILE" in r.message for r in caplog.records)
