"""Billing error taxonomy"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing pipeline errors"""

    pass


class GatewayError(BillingError):
    """Any failure talking to the payment provider"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(BillingError):
    """Failure reading or writing the subscription store"""

    pass


class ConcurrentUpdateError(StoreError):
    """The subscription row changed since it was loaded"""

    pass


class InvalidTransitionError(StoreError):
    """Requested status change is not allowed from the current status"""

    def __init__(self, current_status: str, new_status: str):
        super().__init__(f"Invalid status transition: {current_status} → {new_status}")
        self.current_status = current_status
        self.new_status = new_status


class NotificationError(BillingError):
    """A customer email could not be rendered or sent"""

    pass


class AlertDeliveryError(BillingError):
    """An operator alert could not be delivered"""

    pass


class DuplicateSubscriptionError(StoreError):
    """The organization already has a subscription"""

    pass


class SubscriptionNotFoundError(StoreError):
    """No subscription matches the lookup"""

    pass
