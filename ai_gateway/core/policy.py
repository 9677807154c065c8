"""
Budget policy enforcement.

Checks month-to-date spend against the monthly caps of a BudgetPolicy.

Enforcement Order:
1. Pre-check - blocks a request when spend recorded before it is already over a cap
2. Post-check - after the record is appended, reports every cap now exceeded
3. Alert - breaches are posted to the policy webhook, best effort
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ai_gateway.config.loader import BudgetPolicy
from ai_gateway.storage.models import SpendTotals, month_key

__all__ = [
    "ALERT_TIMEOUT_SECONDS",
    "BudgetAlert",
    "BudgetDecision",
    "SpendTotals",
    "find_breaches",
    "month_key",
    "pre_check",
    "send_budget_alert",
]

logger = logging.getLogger(__name__)

ALERT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of the pre-flight budget check."""
    allowed: bool
    reasons: Tuple[str, ...] = ()


def _reason(name: str, cap: float) -> str:
    return f"{name}>{cap:g}"


def pre_check(policy: Optional[BudgetPolicy], totals: SpendTotals, provider: str) -> BudgetDecision:
    """Decide whether a request may be forwarded.

    Only spend recorded before this request counts, and the comparison is
    strict: a request that will push spend over a cap is still allowed.

    Args:
        policy: Current policy, or None when enforcement is off
        totals: Month-to-date totals before this request
        provider: Name of the matched provider

    Returns:
        BudgetDecision with a reason for every exceeded cap
    """
    if policy is None:
        return BudgetDecision(allowed=True)

    reasons: List[str] = []
    if policy.monthly_usd is not None and totals.total > policy.monthly_usd:
        reasons.append(_reason("total", policy.monthly_usd))

    cap = policy.per_provider_monthly_usd.get(provider)
    if cap is not None and totals.provider_total(provider) > cap:
        reasons.append(_reason(provider, cap))

    return BudgetDecision(allowed=not reasons, reasons=tuple(reasons))


def find_breaches(policy: Optional[BudgetPolicy], totals: SpendTotals) -> List[str]:
    """Every cap exceeded by the given totals: the monthly cap and all provider caps."""
    if policy is None:
        return []

    breaches: List[str] = []
    if policy.monthly_usd is not None and totals.total > policy.monthly_usd:
        breaches.append(_reason("total", policy.monthly_usd))
    for provider, cap in sorted(policy.per_provider_monthly_usd.items()):
        if totals.provider_total(provider) > cap:
            breaches.append(_reason(provider, cap))
    return breaches


@dataclass(frozen=True)
class BudgetAlert:
    """Webhook payload describing a budget breach."""
    request_id: str
    month_key: str
    breaches: Tuple[str, ...]
    totals: SpendTotals = field(default_factory=SpendTotals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "monthKey": self.month_key,
            "breaches": list(self.breaches),
            "totals": self.totals.to_dict(),
        }


async def send_budget_alert(
    webhook_url: str,
    alert: BudgetAlert,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """POST a budget alert once, without retry.

    Delivery failures are logged and swallowed.

    Returns:
        True if the webhook answered with a success status
    """
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=ALERT_TIMEOUT_SECONDS) as owned:
                response = await owned.post(webhook_url, json=alert.to_dict())
        else:
            response = await client.post(webhook_url, json=alert.to_dict(), timeout=ALERT_TIMEOUT_SECONDS)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("requestId=%s Budget alert delivery failed: %s", alert.request_id, e)
        return False
    logger.info("requestId=%s Budget alert sent: %s", alert.request_id, ", ".join(alert.breaches))
    return True
