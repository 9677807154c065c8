"""
Unit tests for SDK layer.

Tests the OpenAI client factory that routes calls through the gateway.
"""

from unittest.mock import Mock, patch

import pytest

from ai_gateway.sdk import gateway_openai_client
from ai_gateway.sdk.openai_client import PLACEHOLDER_API_KEY, gateway_base_url


class TestGatewayBaseUrl:
    """Test base URL construction."""

    @pytest.mark.parametrize("gateway_url, prefix", [
        ("http://127.0.0.1:8787", "/openai"),
        ("http://127.0.0.1:8787/", "openai"),
        ("http://127.0.0.1:8787/", "/openai/"),
    ])
    def test_slashes_are_normalized(self, gateway_url, prefix):
        """Test the URL has exactly one slash before the prefix."""
        assert gateway_base_url(gateway_url, prefix) == "http://127.0.0.1:8787/openai"


class TestGatewayOpenAIClient:
    """Test the OpenAI client factory."""

    @patch('ai_gateway.sdk.openai_client.OpenAI')
    def test_client_points_at_gateway(self, mock_openai_class):
        """Test the client targets the gateway route with a placeholder key."""
        mock_openai_class.return_value = Mock()

        client = gateway_openai_client("http://127.0.0.1:8787", "/openai")

        assert client is mock_openai_class.return_value
        mock_openai_class.assert_called_once_with(
            base_url="http://127.0.0.1:8787/openai",
            api_key=PLACEHOLDER_API_KEY,
        )

    @patch('ai_gateway.sdk.openai_client.OpenAI')
    def test_explicit_key_and_options(self, mock_openai_class):
        """Test a caller key and extra options are passed through."""
        gateway_openai_client("http://gw:8787", "openai", api_key="sk-local", timeout=30)

        mock_openai_class.assert_called_once_with(
            base_url="http://gw:8787/openai",
            api_key="sk-local",
            timeout=30,
        )

    @pytest.mark.parametrize("gateway_url", ["", "   "])
    def test_missing_gateway_url(self, gateway_url):
        """Test initialization fails without a gateway URL."""
        with pytest.raises(ValueError, match="gateway_url is required"):
            gateway_openai_client(gateway_url, "/openai")

    @pytest.mark.parametrize("prefix", ["", "/", " / "])
    def test_missing_route_prefix(self, prefix):
        """Test initialization fails without a route prefix."""
        with pytest.raises(ValueError, match="route_prefix is required"):
            gateway_openai_client("http://127.0.0.1:8787", prefix)

    def test_real_client_base_url(self):
        """Test a real OpenAI client is built against the gateway."""
        client = gateway_openai_client("http://127.0.0.1:8787", "/openai")
        assert str(client.base_url).rstrip("/") == "http://127.0.0.1:8787/openai"
