"""Billing repository - Database operations for subscriptions"""

import logging
import time
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...exceptions import (
    ConcurrentUpdateError,
    DuplicateSubscriptionError,
    InvalidTransitionError,
    StoreError,
    SubscriptionNotFoundError,
)
from ...models import Subscription, utcnow
from ...security import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

ONE_DAY_SECONDS = 24 * 60 * 60

# Columns callers may not write through update_status
PROTECTED_FIELDS = {"id", "organization_id", "version", "created_at", "updated_at"}


def validate_status_transition(current_status: str, new_status: str) -> bool:
    """
    Validate if a subscription status transition is allowed

    Subscription statuses: incomplete/trialing → active ⇄ past_due → unpaid, any live → canceled

    Note:
    - 'canceled' and 'unpaid' are terminal
    - 'unpaid' is only reached by exhausting payment retries
    """
    valid_transitions = {
        "trialing": ["active", "past_due", "canceled"],
        "active": ["past_due", "canceled"],
        "past_due": ["active", "unpaid", "canceled"],
        "incomplete": ["active", "trialing", "canceled"],
        "canceled": [],  # Terminal state
        "unpaid": [],  # Terminal state
    }

    # Allow same status (no-op)
    if current_status == new_status:
        return True

    return new_status in valid_transitions.get(current_status, [])


class SubscriptionRepository:
    """Repository for subscription database operations"""

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _store_errors(self, action: str):
        """Roll back and re-raise any database failure as StoreError"""
        try:
            yield
        except StoreError:
            raise
        except StaleDataError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Concurrent update while trying to {action}: {e}")
            raise ConcurrentUpdateError(f"Subscription changed concurrently while trying to {action}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Database error while trying to {action}: {e}")
            raise StoreError(f"Failed to {action}: {e}") from e

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by ID"""
        with self._store_errors(f"load subscription {subscription_id}"):
            return self.db.get(Subscription, subscription_id, populate_existing=True)

    def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        """Get the subscription of an organization"""
        with self._store_errors(f"load subscription for organization {organization_id}"):
            return (
                self.db.query(Subscription)
                .filter(Subscription.organization_id == organization_id)
                .populate_existing()
                .first()
            )

    def get_by_transbank_order_id(self, order_id: str) -> Optional[Subscription]:
        """Get subscription by the buy order of its last Transbank transaction"""
        with self._store_errors(f"load subscription for order {order_id}"):
            return self.db.query(Subscription).filter(Subscription.transbank_order_id == order_id).first()

    # ------------------------------------------------------------------
    # Candidate queries for the daily run
    # ------------------------------------------------------------------

    def get_expiring_trials(self, as_of: int, within: int = ONE_DAY_SECONDS) -> list[Subscription]:
        """Trials ending in (as_of, as_of + within] that were not yet notified for that trial_end"""
        with self._store_errors("fetch expiring trials"):
            return (
                self.db.query(Subscription)
                .filter(
                    Subscription.status == "trialing",
                    Subscription.trial_end.isnot(None),
                    Subscription.trial_end > as_of,
                    Subscription.trial_end <= as_of + within,
                    or_(
                        Subscription.trial_ending_notified_for.is_(None),
                        Subscription.trial_ending_notified_for != Subscription.trial_end,
                    ),
                )
                .order_by(Subscription.trial_end)
                .all()
            )

    def get_expired_trials(self, as_of: int) -> list[Subscription]:
        with self._store_errors("fetch expired trials"):
            return (
                self.db.query(Subscription)
                .filter(
                    Subscription.status == "trialing",
                    Subscription.trial_end.isnot(None),
                    Subscription.trial_end <= as_of,
                )
                .order_by(Subscription.trial_end)
                .all()
            )

    def get_renewals_due(self, as_of: int) -> list[Subscription]:
        """Active subscriptions whose current period has ended"""
        with self._store_errors("fetch renewals due"):
            return (
                self.db.query(Subscription)
                .filter(
                    Subscription.status == "active",
                    Subscription.current_period_end <= as_of,
                )
                .order_by(Subscription.current_period_end)
                .all()
            )

    def get_past_due_eligible_for_retry(self, as_of: int, max_attempts: int) -> list[Subscription]:
        with self._store_errors("fetch past due subscriptions"):
            return (
                self.db.query(Subscription)
                .filter(
                    Subscription.status == "past_due",
                    or_(Subscription.retry_payment_at.is_(None), Subscription.retry_payment_at <= as_of),
                    Subscription.payment_attempts < max_attempts,
                )
                .order_by(Subscription.retry_payment_at)
                .all()
            )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, **fields) -> Subscription:
        """Create a subscription; an organization can hold only one"""
        organization_id = fields.get("organization_id")
        existing = self.get_by_organization(organization_id)
        if existing:
            raise DuplicateSubscriptionError(
                f"Organization {organization_id} already has a subscription ({existing.status})"
            )

        with self._store_errors(f"create subscription for organization {organization_id}"):
            subscription = Subscription(**fields)
            self.db.add(subscription)
            self.db.commit()
            self.db.refresh(subscription)

        logger.info(f"✅ Created subscription {subscription.id} for organization {organization_id}")
        return subscription

    def update_status(
        self, subscription_id: str, fields: dict, expected_version: Optional[int] = None
    ) -> Subscription:
        """
        Apply fields to a subscription after validating its status transition

        Args:
            subscription_id: Subscription to update
            fields: Column values to set; may include "status"
            expected_version: Version the caller read; a mismatch means the
                row changed since then and raises ConcurrentUpdateError

        Returns:
            The refreshed subscription
        """
        unknown = set(fields) - set(Subscription.__table__.columns.keys())
        if unknown or set(fields) & PROTECTED_FIELDS:
            raise ValueError(f"Fields not updatable: {sorted(unknown | (set(fields) & PROTECTED_FIELDS))}")

        subscription = self.get_by_id(subscription_id)
        if not subscription:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        if expected_version is not None and subscription.version != expected_version:
            raise ConcurrentUpdateError(
                f"Subscription {subscription_id} changed concurrently "
                f"(expected version {expected_version}, found {subscription.version})"
            )

        new_status = fields.get("status", subscription.status)
        if not validate_status_transition(subscription.status, new_status):
            raise InvalidTransitionError(subscription.status, new_status)

        with self._store_errors(f"update subscription {subscription_id}"):
            for key, value in fields.items():
                setattr(subscription, key, value)
            subscription.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(subscription)

        return subscription

    def mark_trial_ending_notified(self, subscription_id: str, trial_end: int) -> Subscription:
        """Remember that the trial ending notice for this trial_end was queued"""
        return self.update_status(subscription_id, {"trial_ending_notified_for": trial_end})

    def store_card(
        self,
        organization_id: str,
        username: str,
        card_token: str,
        card_type: Optional[str] = None,
        card_last4: Optional[str] = None,
    ) -> Subscription:
        """Save a OneClick card on file (token encrypted at rest)"""
        subscription = self._require_by_organization(organization_id)
        return self.update_status(
            subscription.id,
            {
                "oneclick_username": username,
                "oneclick_tbk_user": encrypt_token(card_token),
                "oneclick_card_type": card_type,
                "oneclick_card_last4": card_last4,
                "oneclick_active": True,
                "oneclick_inscribed_at": int(time.time()),
            },
        )

    def deactivate_card(self, organization_id: str) -> Subscription:
        subscription = self._require_by_organization(organization_id)
        return self.update_status(
            subscription.id,
            {
                "oneclick_tbk_user": None,
                "oneclick_card_type": None,
                "oneclick_card_last4": None,
                "oneclick_active": False,
            },
        )

    def request_cancellation(
        self, organization_id: str, at_period_end: bool = True, now: Optional[int] = None
    ) -> Subscription:
        """Cancel at the end of the current period, or immediately"""
        subscription = self._require_by_organization(organization_id)
        if at_period_end:
            fields = {"cancel_at_period_end": True}
        else:
            fields = {
                "status": "canceled",
                "cancel_at_period_end": True,
                "canceled_at": now or int(time.time()),
            }
        updated = self.update_status(subscription.id, fields)
        logger.info(
            f"Subscription {updated.id} cancellation requested "
            f"({'at period end' if at_period_end else 'immediately'})"
        )
        return updated

    def get_card_token(self, subscription: Subscription) -> Optional[str]:
        """Decrypted OneClick card token, or None when no active card is on file"""
        if not subscription.oneclick_active or not subscription.oneclick_tbk_user:
            return None
        return decrypt_token(subscription.oneclick_tbk_user)

    def get_status_counts(self) -> dict:
        """Count subscriptions per status"""
        with self._store_errors("count subscriptions by status"):
            rows = self.db.query(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status).all()
        by_status = {status: count for status, count in rows}
        return {"total": sum(by_status.values()), "by_status": by_status}

    def _require_by_organization(self, organization_id: str) -> Subscription:
        subscription = self.get_by_organization(organization_id)
        if not subscription:
            raise SubscriptionNotFoundError(f"No subscription found for organization {organization_id}")
        return subscription
