"""
Exceptions raised by the subscription core.

Every error carries a user-presentable ``detail`` and a machine ``code`` so
HTTP collaborators can translate it without parsing messages. Usage-guard
denials also carry the numbers behind them.
"""

from __future__ import annotations


class SubscriptionError(Exception):
    """Base exception for subscription errors."""

    def __init__(self, detail: str, code: str = "subscription_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.detail}


class NoActiveSubscriptionError(SubscriptionError):
    """Raised when a tenant has no subscription record at all."""

    def __init__(
        self,
        detail: str = "No active subscription. Please subscribe to a plan.",
    ):
        super().__init__(detail, code="no_active_subscription")


class SubscriptionNotUsableError(SubscriptionError):
    """Raised when the subscription's status does not allow new usage."""

    def __init__(self, status: str, detail: str):
        self.status = status
        super().__init__(detail, code="subscription_not_usable")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "status": str(self.status)}


class LimitExceededError(SubscriptionError):
    """Raised when an increment would take a resource past its plan limit."""

    def __init__(self, resource: str, current: int, limit: int, detail: str):
        self.resource = resource
        self.current = current
        self.limit = limit
        super().__init__(detail, code="limit_exceeded")

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "resource": str(self.resource),
            "current": self.current,
            "limit": self.limit,
        }


class PlanNotFoundError(SubscriptionError):
    def __init__(self, detail: str = "Plan not found."):
        super().__init__(detail, code="plan_not_found")


class RecordNotFoundError(SubscriptionError):
    def __init__(self, tenant_id):
        self.tenant_id = tenant_id
        super().__init__(
            f"No subscription record for tenant {tenant_id}.",
            code="record_not_found",
        )


class ConcurrentModificationError(SubscriptionError):
    """Raised when an optimistic version check loses to another writer."""

    def __init__(self, tenant_id, expected_version: int):
        self.tenant_id = tenant_id
        self.expected_version = expected_version
        super().__init__(
            f"Subscription for tenant {tenant_id} changed since version "
            f"{expected_version} was read.",
            code="concurrent_modification",
        )


class ClockOrFeedUnavailableError(SubscriptionError):
    """Raised when the clock or billing-event feed cannot be read."""

    def __init__(self, detail: str = "Clock or billing feed unavailable."):
        super().__init__(detail, code="clock_or_feed_unavailable")


class InvalidTransitionError(SubscriptionError):
    """Raised when an explicit request is not valid from the current status."""

    def __init__(self, status: str, detail: str):
        self.status = status
        super().__init__(detail, code="invalid_transition")


class RecordLockedError(SubscriptionError):
    """Raised when a non-waiting lock finds the record held by another writer."""

    def __init__(self, tenant_id):
        self.tenant_id = tenant_id
        super().__init__(
            f"Subscription for tenant {tenant_id} is locked by another transaction.",
            code="record_locked",
        )
