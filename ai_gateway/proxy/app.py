"""
HTTP surface of the gateway.

FastAPI application exposing the health check, month-to-date stats and a
catch-all route that hands every other request to the Gateway.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from ai_gateway.config.loader import GatewaySettings, ProviderRoute
from ai_gateway.core.policy import month_key, send_budget_alert
from ai_gateway.core.verification import HallucinationVerifier
from ai_gateway.storage.models import InteractionRecord
from ai_gateway.storage.repository import InteractionRepository

from .gateway import Gateway
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
RECENT_LIMIT = 10
DISCONNECT_POLL_SECONDS = 0.1
# nginx convention for "client closed request"
CLIENT_CLOSED_STATUS = 499


def build_gateway(settings: GatewaySettings, routes: Sequence[ProviderRoute]) -> Gateway:
    """Wire a Gateway from settings and the loaded provider routes."""
    return Gateway(
        routes=routes,
        repository=InteractionRepository(settings.paths.interaction_log, settings.logging.rotate_bytes),
        upstream=UpstreamClient(settings.upstream),
        verifier=HallucinationVerifier(settings=settings.verification),
        policy_path=settings.paths.policy,
    )


def summarize_record(record: InteractionRecord) -> Dict[str, Any]:
    """Compact view of a record for the stats endpoint."""
    summary: Dict[str, Any] = {
        "requestId": record.request_id,
        "timestamp": record.timestamp,
        "provider": record.provider,
        "model": record.model,
        "totalTokens": record.total_tokens,
        "costUSD": record.cost_usd,
        "taskType": record.task_type,
    }
    if record.verification_result is not None:
        summary["hallucinationRate"] = round(record.verification_result.overall_rate, 4)
        summary["findingCount"] = len(record.verification_result.findings)
        summary["hasCriticalIssue"] = record.verification_result.has_critical_issue
    if record.code_quality_score is not None:
        summary["codeQualityScore"] = record.code_quality_score
    if record.effectiveness_score is not None:
        summary["effectivenessScore"] = record.effectiveness_score
    return summary


def _rounded(value: Optional[float]) -> Optional[float]:
    return round(value, 1) if value is not None else None


async def _cancel_on_disconnect(request: Request, task: "asyncio.Task[Any]") -> bool:
    while not task.done():
        if await request.is_disconnected():
            task.cancel()
            return True
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    return False


def create_app(gateway: Gateway) -> FastAPI:
    """Create the FastAPI application around a Gateway."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await gateway.upstream.aclose()

    app = FastAPI(title="AI Interaction Gateway", lifespan=lifespan)
    app.state.gateway = gateway

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/stats")
    async def stats() -> Dict[str, Any]:
        key = month_key(datetime.now(timezone.utc))
        summary = await asyncio.to_thread(gateway.repository.month_summary, key)
        recent = await asyncio.to_thread(gateway.repository.recent, RECENT_LIMIT)
        return {
            "monthKey": summary.month_key,
            "totals": summary.totals.to_dict(),
            "interactionCount": summary.interaction_count,
            "codingInteractions": summary.coding_interactions,
            "averageQualityScore": _rounded(summary.average_quality_score),
            "averageEffectivenessScore": _rounded(summary.average_effectiveness_score),
            "recent": [summarize_record(record) for record in recent],
        }

    @app.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def proxy(request: Request, full_path: str, background_tasks: BackgroundTasks) -> Response:
        request_id = str(uuid.uuid4())
        headers = {REQUEST_ID_HEADER: request_id}
        body = await request.body()

        task = asyncio.ensure_future(gateway.handle(
            request.method,
            request.url.path,
            request.url.query,
            body,
            dict(request.headers),
            request_id,
        ))
        watcher = asyncio.ensure_future(_cancel_on_disconnect(request, task))
        try:
            result = await task
        except asyncio.CancelledError:
            if watcher.done() and not watcher.cancelled() and watcher.result():
                logger.info("requestId=%s Client disconnected, request cancelled", request_id)
                return JSONResponse(
                    {"error": "Client closed request", "requestId": request_id},
                    status_code=CLIENT_CLOSED_STATUS,
                    headers=headers,
                )
            raise
        except Exception:
            logger.exception("requestId=%s Unexpected error handling request", request_id)
            return JSONResponse(
                {"error": "Internal gateway error", "requestId": request_id},
                status_code=500,
                headers=headers,
            )
        finally:
            watcher.cancel()

        if result.alert is not None and result.webhook_url:
            background_tasks.add_task(send_budget_alert, result.webhook_url, result.alert)

        return Response(
            content=result.content,
            status_code=result.status_code,
            media_type=result.media_type,
            headers=headers,
        )

    return app


def create_app_from_settings(settings: GatewaySettings, routes: Sequence[ProviderRoute]) -> FastAPI:
    return create_app(build_gateway(settings, routes))
