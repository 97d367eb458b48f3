"""
Entitlement checks.

The session core only needs a yes/no plus a duration cap. Subscription state
itself is owned elsewhere (billing); `TierEntitlementService` maps a stored
subscription record onto the tier table below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from src.journal.config import get_config
from src.journal.models import Entitlement

logger = structlog.get_logger(__name__)


class EntitlementService(Protocol):
    async def check(self, user_id: str) -> Entitlement:
        ...


@dataclass(frozen=True)
class Tier:
    name: str
    max_duration_seconds: int


TIERS: Dict[str, Tier] = {
    "trial": Tier(name="Free Trial", max_duration_seconds=180),
    "standard": Tier(name="Standard", max_duration_seconds=180),
    "premium": Tier(name="Premium", max_duration_seconds=300),
}


@dataclass(frozen=True)
class Subscription:
    status: str = "none"  # "active" | "canceled" | "past_due" | "none"
    tier: Optional[str] = None


SubscriptionLookup = Callable[[str], Awaitable[Optional[Subscription]]]

_BLOCKED_REASONS = {
    "canceled": "subscription_canceled",
    "past_due": "past_due",
}


def evaluate(subscription: Optional[Subscription]) -> Entitlement:
    """Map a subscription record to an entitlement decision."""
    if subscription is None or subscription.status == "none" or not subscription.tier:
        return Entitlement(allowed=False, max_duration_seconds=0, reason="no_subscription")

    if subscription.status in _BLOCKED_REASONS:
        return Entitlement(
            allowed=False,
            max_duration_seconds=0,
            reason=_BLOCKED_REASONS[subscription.status],
            tier=subscription.tier,
        )

    tier = TIERS.get(subscription.tier)
    if subscription.status != "active" or tier is None:
        return Entitlement(allowed=False, max_duration_seconds=0, reason="no_subscription")

    return Entitlement(
        allowed=True,
        max_duration_seconds=tier.max_duration_seconds,
        tier=subscription.tier,
    )


class TierEntitlementService:
    """
    Entitlements from subscription records.

    With MOCK_PAYMENTS every user is treated as an active premium subscriber.
    """

    def __init__(self, lookup: Optional[SubscriptionLookup] = None, config: Optional[Any] = None):
        self.config = config or get_config()
        self._lookup = lookup
        self._subscriptions: Dict[str, Subscription] = {}

    def set_subscription(self, user_id: str, subscription: Subscription) -> None:
        self._subscriptions[user_id] = subscription

    async def check(self, user_id: str) -> Entitlement:
        if self.config.mock_payments:
            return evaluate(Subscription(status="active", tier="premium"))

        if self._lookup is not None:
            subscription = await self._lookup(user_id)
        else:
            subscription = self._subscriptions.get(user_id)

        entitlement = evaluate(subscription)
        if not entitlement.allowed:
            logger.info("Entitlement denied", user_id=user_id, reason=entitlement.reason)
        return entitlement
