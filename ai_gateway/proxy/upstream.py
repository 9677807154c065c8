"""
Upstream forwarding with retry.

Sends a request to the provider, retrying server errors and network
failures with a fixed backoff schedule.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from ai_gateway.config.loader import ProviderRoute, UpstreamSettings

logger = logging.getLogger(__name__)

# Upstream error bodies are logged, truncated, and never echoed to the caller
MAX_LOGGED_BODY = 500


class UpstreamError(Exception):
    """Upstream failed with a status >= 400 or stayed unreachable after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 1):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class MissingCredentialError(Exception):
    """The environment variable holding a provider's API key is not set."""

    def __init__(self, provider: str, env_var: str):
        super().__init__(f"Missing API key: environment variable {env_var} is not set for provider '{provider}'")
        self.provider = provider
        self.env_var = env_var


@dataclass(frozen=True)
class UpstreamResponse:
    """Final upstream answer after retries."""
    status_code: int
    content: bytes
    attempts: int
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def retry_count(self) -> int:
        return self.attempts - 1

    @property
    def media_type(self) -> Optional[str]:
        return self.headers.get("content-type")

    def json(self) -> Optional[Any]:
        """Decoded JSON body, or None if the body is not JSON."""
        try:
            return json.loads(self.content)
        except ValueError:
            return None


def build_auth_headers(route: ProviderRoute, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Credential header for a provider.

    Keyless providers (no ``apiKeyEnvVar``) get no header.

    Raises:
        MissingCredentialError: If the provider's key variable is unset or empty
    """
    if not route.api_key_env_var:
        return {}
    environ = os.environ if environ is None else environ
    key = environ.get(route.api_key_env_var)
    if not key:
        raise MissingCredentialError(route.name, route.api_key_env_var)
    value = f"{route.auth_scheme} {key}" if route.auth_scheme else key
    return {route.auth_header: value}


class UpstreamClient:
    """Async HTTP client that forwards requests to AI providers."""

    def __init__(
        self,
        settings: Optional[UpstreamSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the client.

        Args:
            settings: Timeout and backoff schedule
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Coroutine used to wait between attempts
        """
        self.settings = settings or UpstreamSettings()
        self.client = httpx.AsyncClient(timeout=self.settings.timeout_seconds, transport=transport)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self.client.aclose()

    async def forward(
        self,
        method: str,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        request_id: str,
    ) -> UpstreamResponse:
        """Forward one request, retrying status >= 500 and transport errors.

        Args:
            method: HTTP method
            url: Full upstream URL
            body: Raw request body, forwarded verbatim
            headers: Outbound headers, credentials included
            request_id: Correlation id for logging

        Returns:
            UpstreamResponse with status < 400

        Raises:
            UpstreamError: If the final status is >= 400 or every attempt failed
        """
        delays = self.settings.retry_backoff_ms
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.client.request(method, url, content=body, headers=dict(headers))
            except httpx.TransportError as e:
                if attempt > len(delays):
                    logger.error("requestId=%s Upstream unreachable after %d attempts: %s", request_id, attempt, e)
                    raise UpstreamError(f"Upstream unreachable: {e}", attempts=attempt) from e
                logger.warning(
                    "requestId=%s Upstream attempt %d failed (%s), retrying in %dms",
                    request_id, attempt, type(e).__name__, delays[attempt - 1],
                )
            else:
                if response.status_code < 500 or attempt > len(delays):
                    break
                logger.warning(
                    "requestId=%s Upstream attempt %d returned %d, retrying in %dms",
                    request_id, attempt, response.status_code, delays[attempt - 1],
                )
            await self._sleep(delays[attempt - 1] / 1000)

        if response.status_code >= 400:
            logger.warning(
                "requestId=%s Upstream returned %d after %d attempts: %s",
                request_id, response.status_code, attempt, response.text[:MAX_LOGGED_BODY],
            )
            raise UpstreamError(
                f"Upstream returned status {response.status_code}",
                status_code=response.status_code,
                attempts=attempt,
            )

        headers_out = {}
        if "content-type" in response.headers:
            headers_out["content-type"] = response.headers["content-type"]
        return UpstreamResponse(
            status_code=response.status_code,
            content=response.content,
            attempts=attempt,
            headers=headers_out,
        )
