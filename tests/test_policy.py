"""
Unit tests for budget policy enforcement.

Tests pre-flight decisions, post-flight breach detection and alert delivery.
"""

import asyncio
import json

import httpx
import pytest

from ai_gateway.config.loader import BudgetPolicy
from ai_gateway.core.policy import (
    BudgetAlert,
    SpendTotals,
    find_breaches,
    pre_check,
    send_budget_alert,
)


def _policy(**kwargs) -> BudgetPolicy:
    return BudgetPolicy(**kwargs)


def _server_error(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500)


def _refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("refused", request=request)


class TestPreCheck:
    """Test the pre-flight budget gate."""

    def test_no_policy_allows(self):
        """Verify enforcement is off without a policy."""
        decision = pre_check(None, SpendTotals(total=1e9), "gemini")
        assert decision.allowed
        assert decision.reasons == ()

    def test_spend_just_under_cap_is_forwarded(self):
        """Verify 49.99 prior spend against a 50 cap is still allowed."""
        decision = pre_check(_policy(monthly_usd=50), SpendTotals(total=49.99), "gemini")
        assert decision.allowed

    def test_spend_equal_to_cap_is_forwarded(self):
        """Verify the comparison is strict."""
        decision = pre_check(_policy(monthly_usd=50), SpendTotals(total=50.0), "gemini")
        assert decision.allowed

    def test_spend_over_monthly_cap_blocks(self):
        """Verify the monthly cap blocks once exceeded."""
        decision = pre_check(_policy(monthly_usd=50), SpendTotals(total=50.01), "gemini")
        assert not decision.allowed
        assert decision.reasons == ("total>50",)

    def test_provider_cap_blocks_only_that_provider(self):
        """Verify per-provider caps apply to the matched provider only."""
        policy = _policy(per_provider_monthly_usd={"gemini": 10})
        totals = SpendTotals(total=12, by_provider={"gemini": 12})

        assert pre_check(policy, totals, "gemini").reasons == ("gemini>10",)
        assert pre_check(policy, totals, "openai").allowed

    def test_both_caps_reported(self):
        """Verify every exceeded cap is listed."""
        policy = _policy(monthly_usd=20.5, per_provider_monthly_usd={"gemini": 10})
        totals = SpendTotals(total=25, by_provider={"gemini": 25})

        decision = pre_check(policy, totals, "gemini")
        assert decision.reasons == ("total>20.5", "gemini>10")


class TestFindBreaches:
    """Test post-flight breach detection."""

    def test_reports_all_provider_caps(self):
        """Verify every provider cap is checked, not just one."""
        policy = _policy(monthly_usd=100, per_provider_monthly_usd={"openai": 5, "gemini": 10})
        totals = SpendTotals(total=30, by_provider={"gemini": 11, "openai": 19})

        assert find_breaches(policy, totals) == ["gemini>10", "openai>5"]

    def test_no_breaches(self):
        """Verify spend under every cap reports nothing."""
        policy = _policy(monthly_usd=100, per_provider_monthly_usd={"gemini": 10})
        assert find_breaches(policy, SpendTotals(total=5, by_provider={"gemini": 5})) == []
        assert find_breaches(None, SpendTotals(total=5)) == []


class TestBudgetAlert:
    """Test webhook alert delivery."""

    def _alert(self) -> BudgetAlert:
        return BudgetAlert(
            request_id="req-1",
            month_key="2026-10",
            breaches=("total>50",),
            totals=SpendTotals(total=50.5, by_provider={"gemini": 50.5}),
        )

    def test_payload_shape(self):
        """Verify the webhook payload keys."""
        assert self._alert().to_dict() == {
            "requestId": "req-1",
            "monthKey": "2026-10",
            "breaches": ["total>50"],
            "totals": {"total": 50.5, "byProvider": {"gemini": 50.5}},
        }

    def test_alert_posted_once(self):
        """Verify the alert is POSTed as JSON."""
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append((request.method, str(request.url), json.loads(request.content)))
            return httpx.Response(204)

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await send_budget_alert("https://hooks.example.com/b", self._alert(), client)

        assert asyncio.run(run()) is True
        assert len(received) == 1
        method, url, payload = received[0]
        assert method == "POST"
        assert url == "https://hooks.example.com/b"
        assert payload["breaches"] == ["total>50"]

    @pytest.mark.parametrize("handler", [_server_error, _refused])
    def test_delivery_failures_are_swallowed(self, handler, caplog):
        """Verify failed deliveries are logged, not raised, and not retried."""
        calls = []

        def counting(request):
            calls.append(request)
            return handler(request)

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(counting)) as client:
                return await send_budget_alert("https://hooks.example.com/b", self._alert(), client)

        assert asyncio.run(run()) is False
        assert len(calls) == 1
        assert "requestId=req-1" in caplog.text
