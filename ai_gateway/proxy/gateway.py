"""
Request lifecycle of the AI interaction gateway.

One proxied request flows through a fixed sequence of steps.

Lifecycle:
1. Route - match the inbound path against the provider table
2. Pre-check - refuse when month-to-date spend is already over a cap
3. Forward - send upstream with credentials, retrying transient failures
4. Meter - extract token usage and price the call
5. Verify - run the hallucination pipeline on code-bearing responses
6. Record - append one InteractionRecord to the log
7. Post-check - report caps now exceeded so an alert can be sent
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from ai_gateway.config.loader import ProviderRoute, load_budget_policy, match_route
from ai_gateway.core.code_extraction import (
    extract_code,
    extract_response_text,
    extract_user_prompt,
    infer_language,
    is_coding_request,
)
from ai_gateway.core.code_quality import analyze_code_quality, quality_score, score_effectiveness
from ai_gateway.core.policy import BudgetAlert, find_breaches, month_key, pre_check
from ai_gateway.core.pricing import PRICING_TABLE, PricingTable, calculate_cost
from ai_gateway.core.token_counter import extract_token_usage
from ai_gateway.core.verification import HallucinationVerifier
from ai_gateway.storage.models import InteractionRecord, utc_timestamp
from ai_gateway.storage.repository import InteractionRepository

from .upstream import (
    MissingCredentialError,
    UpstreamClient,
    UpstreamError,
    UpstreamResponse,
    build_auth_headers,
)

logger = logging.getLogger(__name__)

PROXY_FAILURE_MESSAGE = "Failed to proxy request"

# Inbound headers that describe the client connection, not the AI request
_HOP_BY_HOP_HEADERS = frozenset({
    "host", "content-length", "connection", "keep-alive", "transfer-encoding",
    "te", "trailer", "upgrade", "proxy-authorization", "proxy-authenticate",
    "accept-encoding",
})


@dataclass(frozen=True)
class GatewayResponse:
    """What the HTTP layer sends back, plus an alert to dispatch afterwards."""
    status_code: int
    content: bytes
    request_id: str
    media_type: Optional[str] = "application/json"
    alert: Optional[BudgetAlert] = None
    webhook_url: Optional[str] = None
    record: Optional[InteractionRecord] = None

    @classmethod
    def error(cls, status_code: int, request_id: str, message: str, **extra: Any) -> "GatewayResponse":
        payload: Dict[str, Any] = {"error": message}
        payload.update(extra)
        payload["requestId"] = request_id
        return cls(
            status_code=status_code,
            content=json.dumps(payload).encode("utf-8"),
            request_id=request_id,
        )

    def json(self) -> Any:
        return json.loads(self.content)


def _decode_json(content: bytes) -> Optional[Any]:
    if not content:
        return None
    try:
        return json.loads(content)
    except ValueError:
        return None


def resolve_model(
    response_body: Any,
    request_body: Any,
    route: ProviderRoute,
    pricing: PricingTable = PRICING_TABLE,
) -> str:
    """Model name for pricing: response, then request, then route default, then table default."""
    for body in (response_body, request_body):
        if isinstance(body, dict):
            for key in ("model", "modelVersion"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
    return route.default_model or pricing.default_model


def outbound_headers(
    headers: Mapping[str, str],
    route: ProviderRoute,
    credentials: Mapping[str, str],
    request_id: str,
) -> Dict[str, str]:
    """Client headers minus connection details and any client-supplied credential."""
    auth = route.auth_header.lower()
    result = {
        name: value
        for name, value in headers.items()
        if name.lower() not in _HOP_BY_HOP_HEADERS and name.lower() != auth
    }
    if not any(name.lower() == "content-type" for name in result):
        result["Content-Type"] = "application/json"
    result["X-Request-ID"] = request_id
    result.update(credentials)
    return result


class Gateway:
    """Runs the request lifecycle for every proxied call.

    All collaborators are passed in explicitly. The policy file is re-read
    on every request so that edits take effect without a restart.
    """

    def __init__(
        self,
        routes: Sequence[ProviderRoute],
        repository: InteractionRepository,
        upstream: UpstreamClient,
        verifier: HallucinationVerifier,
        policy_path: str,
        pricing: PricingTable = PRICING_TABLE,
        environ: Optional[Mapping[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the gateway.

        Args:
            routes: Provider routes loaded at startup
            repository: Interaction log
            upstream: Client used to reach providers
            verifier: Hallucination verification pipeline
            policy_path: Budget policy file, read fresh per request
            pricing: Model pricing table
            environ: Source of provider credentials (defaults to os.environ)
            clock: Returns the current UTC time
        """
        self.routes = tuple(routes)
        self.repository = repository
        self.upstream = upstream
        self.verifier = verifier
        self.policy_path = policy_path
        self.pricing = pricing
        self.environ = environ
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle(
        self,
        method: str,
        path: str,
        query: str,
        body: bytes,
        headers: Mapping[str, str],
        request_id: str,
    ) -> GatewayResponse:
        """Run one request through the lifecycle.

        Args:
            method: Inbound HTTP method
            path: Inbound path
            query: Raw query string, forwarded as is
            body: Raw request body, forwarded verbatim
            headers: Inbound headers
            request_id: UUID of this request

        Returns:
            GatewayResponse carrying the upstream answer or a gateway error
        """
        route = match_route(self.routes, path) if method.upper() == "POST" else None
        if route is None:
            logger.info("requestId=%s No route for %s %s", request_id, method, path)
            return GatewayResponse.error(404, request_id, f"No provider route for {method} {path}")

        now = self.clock()
        current_month = month_key(now)
        policy = await asyncio.to_thread(load_budget_policy, self.policy_path)
        if policy is not None:
            totals = await asyncio.to_thread(self.repository.monthly_spend, current_month)
            decision = pre_check(policy, totals, route.name)
            if not decision.allowed:
                logger.warning(
                    "requestId=%s Budget exceeded for %s: %s",
                    request_id, route.name, ", ".join(decision.reasons),
                )
                return GatewayResponse.error(
                    429, request_id, "Budget exceeded", reasons=list(decision.reasons)
                )

        try:
            credentials = build_auth_headers(route, self.environ)
            upstream = await self.upstream.forward(
                "POST",
                route.target_for(path, query),
                body,
                outbound_headers(headers, route, credentials, request_id),
                request_id,
            )
        except MissingCredentialError as e:
            logger.error("requestId=%s %s", request_id, e)
            return GatewayResponse.error(500, request_id, PROXY_FAILURE_MESSAGE)
        except UpstreamError as e:
            logger.error(
                "requestId=%s Proxy to %s failed after %d attempts: %s",
                request_id, route.name, e.attempts, e,
            )
            return GatewayResponse.error(500, request_id, PROXY_FAILURE_MESSAGE)

        record = await self.build_record(route, body, upstream, request_id, now)
        try:
            await asyncio.to_thread(self.repository.append, record)
        except OSError:
            logger.exception("requestId=%s Failed to append interaction record", request_id)

        alert = None
        webhook_url = None
        if policy is not None:
            totals = await asyncio.to_thread(self.repository.monthly_spend, current_month)
            breaches = find_breaches(policy, totals)
            if breaches:
                logger.warning("requestId=%s Budget caps exceeded: %s", request_id, ", ".join(breaches))
                if policy.webhook_url:
                    alert = BudgetAlert(
                        request_id=request_id,
                        month_key=current_month,
                        breaches=tuple(breaches),
                        totals=totals,
                    )
                    webhook_url = policy.webhook_url

        logger.info(
            "requestId=%s %s %s -> %d model=%s tokens=%d cost=$%.6f",
            request_id, route.name, path, upstream.status_code,
            record.model, record.total_tokens, record.cost_usd,
        )
        return GatewayResponse(
            status_code=upstream.status_code,
            content=upstream.content,
            request_id=request_id,
            media_type=upstream.media_type,
            alert=alert,
            webhook_url=webhook_url,
            record=record,
        )

    async def build_record(
        self,
        route: ProviderRoute,
        body: bytes,
        upstream: UpstreamResponse,
        request_id: str,
        now: datetime,
    ) -> InteractionRecord:
        """Meter, classify and verify one forwarded interaction."""
        request_json = _decode_json(body)
        response_json = upstream.json()

        usage = extract_token_usage(response_json, route.token_mapping)
        model = resolve_model(response_json, request_json, route, self.pricing)
        cost = calculate_cost(model, usage, self.pricing)

        prompt = extract_user_prompt(request_json)
        response_text = extract_response_text(response_json)
        coding = is_coding_request(prompt, response_text)
        snippet = extract_code(response_text) if coding else None

        language = None
        verification = None
        metrics = None
        quality = None
        effectiveness = None
        if snippet is not None:
            language = infer_language(snippet.code, snippet.language)
            verification = await self.verifier.verify(snippet.code, language)
            if verification.has_critical_issue:
                logger.warning(
                    "requestId=%s Critical hallucination risk in %s code (rate %.2f)",
                    request_id, language, verification.overall_rate,
                )
            metrics = analyze_code_quality(snippet.code, language)
            quality = quality_score(metrics)
            if prompt:
                effectiveness = score_effectiveness(prompt, response_text, snippet.code, metrics).overall
            logger.info(
                "requestId=%s Code quality %d/100, effectiveness %s",
                request_id, quality, f"{effectiveness}/100" if effectiveness is not None else "n/a",
            )

        return InteractionRecord(
            request_id=request_id,
            timestamp=utc_timestamp(now),
            provider=route.name,
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost_usd=cost,
            task_type="coding" if coding else "chat",
            retry_count=upstream.retry_count,
            upstream_status=upstream.status_code,
            user_prompt=prompt,
            ai_response_text=response_text,
            extracted_code=snippet.code if snippet else None,
            code_language=language,
            verification_result=verification,
            code_quality_metrics=metrics,
            code_quality_score=quality,
            effectiveness_score=effectiveness,
        )
