"""
Tests for entitlement evaluation.
"""

import pytest

from src.journal.entitlement import Subscription, TierEntitlementService, evaluate


class TestEvaluate:
    def test_no_subscription(self):
        result = evaluate(None)
        assert result.allowed is False
        assert result.reason == "no_subscription"

    @pytest.mark.parametrize("status,reason", [
        ("canceled", "subscription_canceled"),
        ("past_due", "past_due"),
    ])
    def test_blocked_statuses(self, status, reason):
        result = evaluate(Subscription(status=status, tier="standard"))
        assert result.allowed is False
        assert result.reason == reason
        assert result.max_duration_seconds == 0

    @pytest.mark.parametrize("tier,seconds", [
        ("trial", 180),
        ("standard", 180),
        ("premium", 300),
    ])
    def test_active_tiers(self, tier, seconds):
        result = evaluate(Subscription(status="active", tier=tier))
        assert result.allowed is True
        assert result.max_duration_seconds == seconds

    def test_unknown_tier_is_denied(self):
        assert evaluate(Subscription(status="active", tier="platinum")).allowed is False


class TestTierEntitlementService:
    @pytest.mark.asyncio
    async def test_mock_payments_grants_premium(self, config):
        service = TierEntitlementService(config=config)
        result = await service.check("anyone")
        assert result.allowed is True
        assert result.tier == "premium"

    @pytest.mark.asyncio
    async def test_lookup_is_used(self, monkeypatch):
        monkeypatch.setenv("MOCK_PAYMENTS", "false")
        from src.journal.config import get_config
        get_config.cache_clear()

        async def lookup(user_id):
            return Subscription(status="active", tier="trial") if user_id == "paid" else None

        service = TierEntitlementService(lookup=lookup)

        assert (await service.check("paid")).max_duration_seconds == 180
        assert (await service.check("free")).allowed is False
