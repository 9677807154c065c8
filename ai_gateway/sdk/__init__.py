"""
SDK for the AI Interaction Gateway.

Points existing provider SDK clients at the gateway.
"""

from .openai_client import gateway_openai_client

__all__ = ["gateway_openai_client"]
