"""
OpenAI client routed through the gateway.

Builds a stock OpenAI client whose calls are metered, budget-checked and
verified by the gateway without changing application code.
"""

from typing import Any, Optional

from openai import OpenAI

# The gateway injects the real credential upstream
PLACEHOLDER_API_KEY = "gateway-managed"


def gateway_base_url(gateway_url: str, route_prefix: str) -> str:
    """Base URL of a provider route on the gateway."""
    return f"{gateway_url.rstrip('/')}/{route_prefix.strip('/')}"


def gateway_openai_client(
    gateway_url: str,
    route_prefix: str,
    api_key: Optional[str] = None,
    **kwargs: Any
) -> OpenAI:
    """Create an OpenAI client that talks to the gateway.

    Args:
        gateway_url: Gateway address, e.g. ``http://127.0.0.1:8787``
        route_prefix: Route whose target is an OpenAI-compatible API, e.g. ``/openai``
        api_key: Key sent to the gateway (a placeholder by default)
        **kwargs: Additional OpenAI client parameters

    Returns:
        openai.OpenAI configured with the gateway base URL

    Raises:
        ValueError: If gateway_url or route_prefix is missing/empty
    """
    if not gateway_url or not gateway_url.strip():
        raise ValueError("gateway_url is required and cannot be empty")
    if not route_prefix or not route_prefix.strip("/ "):
        raise ValueError("route_prefix is required and cannot be empty")

    return OpenAI(
        base_url=gateway_base_url(gateway_url, route_prefix),
        api_key=api_key or PLACEHOLDER_API_KEY,
        **kwargs
    )
