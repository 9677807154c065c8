"""
Unit tests for the gateway request lifecycle.

Tests routing, budget enforcement, forwarding, metering, verification and
recording, with providers simulated by an httpx MockTransport.
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone

import httpx
import pytest

from ai_gateway.config.loader import ProviderRoute, UpstreamSettings
from ai_gateway.core.token_counter import TokenFieldMap, TokenPath
from ai_gateway.core.verification import HallucinationVerifier, VerificationSettings
from ai_gateway.proxy.gateway import Gateway, outbound_headers, resolve_model
from ai_gateway.proxy.upstream import UpstreamClient
from ai_gateway.storage.models import InteractionRecord
from ai_gateway.storage.repository import InteractionRepository

NOW = datetime(2026, 10, 5, 12, 0, tzinfo=timezone.utc)
ENVIRON = {"OPENAI_API_KEY": "sk-test"}

CHAT_REQUEST = json.dumps({
    "model": "gpt-4o",
    "messages": [{"role": "user", "content": "What is the capital of France?"}],
}).encode("utf-8")

CODING_REQUEST = json.dumps({
    "model": "gpt-4o",
    "messages": [{"role": "user", "content": "Write a function that greets"}],
}).encode("utf-8")


def _chat_response(prompt_tokens=12, completion_tokens=30, content="Paris.", model="gpt-4o"):
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def _route(**overrides) -> ProviderRoute:
    fields = dict(
        name="openai",
        route_prefix="/openai",
        target_url="https://api.openai.com/v1",
        token_mapping=TokenFieldMap(
            prompt=TokenPath.parse("usage.prompt_tokens"),
            completion=TokenPath.parse("usage.completion_tokens"),
            total=TokenPath.parse("usage.total_tokens"),
        ),
        api_key_env_var="OPENAI_API_KEY",
        auth_scheme="Bearer",
    )
    fields.update(overrides)
    return ProviderRoute(**fields)


async def _no_sleep(seconds):
    return None


def _prior(cost, provider="openai") -> InteractionRecord:
    return InteractionRecord(
        request_id="prior",
        timestamp="2026-10-01T08:00:00.000Z",
        provider=provider,
        model="gpt-4o",
        prompt_tokens=0,
        completion_tokens=0,
        total_tokens=0,
        cost_usd=cost,
        task_type="chat",
    )


class _FailingRepository(InteractionRepository):
    def append(self, record):
        raise OSError("disk full")


class TestGateway:
    """Test Gateway.handle end to end."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.log_path = os.path.join(self.temp_dir, "interactions.log")
        self.policy_path = os.path.join(self.temp_dir, "toknxr.policy.json")
        self.repository = InteractionRepository(self.log_path)
        self.upstream_requests = []

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_policy(self, policy):
        with open(self.policy_path, 'w', encoding='utf-8') as f:
            json.dump(policy, f)

    def _handle(self, handler, path="/openai/chat/completions", body=CHAT_REQUEST, method="POST",
                headers=None, environ=ENVIRON, repository=None, routes=None):
        def recording(request):
            self.upstream_requests.append(request)
            return handler(request)

        async def run():
            upstream = UpstreamClient(UpstreamSettings(), transport=httpx.MockTransport(recording), sleep=_no_sleep)
            gateway = Gateway(
                routes=routes or [_route()],
                repository=repository or self.repository,
                upstream=upstream,
                verifier=HallucinationVerifier(settings=VerificationSettings(execute=False)),
                policy_path=self.policy_path,
                environ=environ,
                clock=lambda: NOW,
            )
            try:
                return await gateway.handle(method, path, "", body, headers or {}, "req-1")
            finally:
                await upstream.aclose()

        return asyncio.run(run())

    def test_chat_request_is_forwarded_and_recorded(self):
        """Verify the upstream answer is returned and one record appended."""
        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()))

        assert result.status_code == 200
        assert json.loads(result.content)["choices"][0]["message"]["content"] == "Paris."
        assert result.media_type == "application/json"

        sent = self.upstream_requests[0]
        assert str(sent.url) == "https://api.openai.com/v1/chat/completions"
        assert sent.content == CHAT_REQUEST
        assert sent.headers["Authorization"] == "Bearer sk-test"
        assert sent.headers["X-Request-ID"] == "req-1"

        records = list(self.repository.iter_records())
        assert len(records) == 1
        record = records[0]
        assert record.request_id == "req-1"
        assert record.timestamp == "2026-10-05T12:00:00.000Z"
        assert record.provider == "openai"
        assert record.model == "gpt-4o"
        assert (record.prompt_tokens, record.completion_tokens, record.total_tokens) == (12, 30, 42)
        assert record.cost_usd == pytest.approx(0.51)
        assert record.task_type == "chat"
        assert record.user_prompt == "What is the capital of France?"
        assert record.verification_result is None

    def test_client_credentials_are_replaced(self):
        """Verify a client-supplied Authorization never reaches the provider."""
        self._handle(
            lambda request: httpx.Response(200, json=_chat_response()),
            headers={"Authorization": "Bearer client-key", "Host": "localhost:8787"},
        )
        assert self.upstream_requests[0].headers["Authorization"] == "Bearer sk-test"

    def test_unknown_route_is_404(self):
        """Verify unmatched paths get a 404 without an upstream call."""
        result = self._handle(lambda request: httpx.Response(200), path="/mistral/v1/chat")

        assert result.status_code == 404
        assert result.json()["requestId"] == "req-1"
        assert self.upstream_requests == []

    def test_non_post_is_404(self):
        """Verify only POST is proxied."""
        result = self._handle(lambda request: httpx.Response(200), method="GET")
        assert result.status_code == 404

    def test_persistent_upstream_failure(self):
        """Verify four failed attempts yield a generic 500 and no record."""
        result = self._handle(lambda request: httpx.Response(503, text="secret upstream detail"))

        assert len(self.upstream_requests) == 4
        assert result.status_code == 500
        assert result.json() == {"error": "Failed to proxy request", "requestId": "req-1"}
        assert b"secret upstream detail" not in result.content
        assert list(self.repository.iter_records()) == []

    def test_retry_count_is_recorded(self):
        """Verify a recovered request records its retries."""
        statuses = [502, 200]

        def handler(request):
            status = statuses.pop(0)
            return httpx.Response(status, json=_chat_response() if status == 200 else {})

        result = self._handle(handler)
        assert result.status_code == 200
        assert result.record.retry_count == 1

    def test_missing_credential(self):
        """Verify an unset key variable fails before any upstream call."""
        result = self._handle(lambda request: httpx.Response(200), environ={})

        assert result.status_code == 500
        assert result.json()["error"] == "Failed to proxy request"
        assert self.upstream_requests == []

    def test_spend_under_cap_is_forwarded(self):
        """Verify 49.99 prior spend against a 50 cap is still forwarded."""
        self._write_policy({"monthlyUSD": 50})
        self.repository.append(_prior(49.99))

        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()))
        assert result.status_code == 200

    def test_spend_over_cap_is_blocked(self):
        """Verify spend already over the cap is refused with 429."""
        self._write_policy({"monthlyUSD": 50})
        self.repository.append(_prior(50.01))

        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()))

        assert result.status_code == 429
        assert result.json() == {"error": "Budget exceeded", "reasons": ["total>50"], "requestId": "req-1"}
        assert self.upstream_requests == []

    def test_provider_cap_only_blocks_that_provider(self):
        """Verify another provider's spend does not count against this one."""
        self._write_policy({"perProviderMonthlyUSD": {"gemini": 1}})
        self.repository.append(_prior(5, provider="gemini"))

        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()))
        assert result.status_code == 200

    def test_invalid_policy_fails_open(self):
        """Verify a broken policy file disables enforcement."""
        with open(self.policy_path, 'w', encoding='utf-8') as f:
            f.write("{not json")
        self.repository.append(_prior(1000))

        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()))
        assert result.status_code == 200

    def test_breach_produces_alert(self):
        """Verify the post-check reports caps crossed by this request."""
        self._write_policy({"monthlyUSD": 0.25, "webhookUrl": "https://hooks.example.com/budget"})

        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()))

        assert result.status_code == 200
        assert result.webhook_url == "https://hooks.example.com/budget"
        assert result.alert.breaches == ("total>0.25",)
        assert result.alert.request_id == "req-1"
        assert result.alert.month_key == "2026-10"

    def test_breach_without_webhook_has_no_alert(self):
        """Verify no alert is produced when no webhook is configured."""
        self._write_policy({"monthlyUSD": 0.25})
        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()))
        assert result.alert is None

    def test_missing_usage_is_zero_cost(self):
        """Verify responses without usage are recorded with zero tokens."""
        result = self._handle(lambda request: httpx.Response(200, json={"choices": []}))

        assert result.status_code == 200
        assert result.record.total_tokens == 0
        assert result.record.cost_usd == 0.0

    def test_non_json_response_is_passed_through(self):
        """Verify non-JSON bodies are returned verbatim and recorded."""
        result = self._handle(lambda request: httpx.Response(200, text="plain", headers={"content-type": "text/plain"}))

        assert result.content == b"plain"
        assert result.media_type == "text/plain"
        assert result.record.total_tokens == 0

    def test_coding_response_is_verified(self):
        """Verify code in a coding answer is verified and stored on the record."""
        content = 'Here you go:\n```python\nx = 5\nresult = x + "hello"\n```'
        result = self._handle(
            lambda request: httpx.Response(200, json=_chat_response(content=content)),
            body=CODING_REQUEST,
        )

        record = result.record
        assert record.task_type == "coding"
        assert record.extracted_code == 'x = 5\nresult = x + "hello"'
        assert record.code_language == "python"
        assert record.verification_result is not None
        assert record.verification_result.findings[0].rule == "type_mixing"

        stored = list(self.repository.iter_records())[0]
        assert stored.verification_result.findings[0].rule == "type_mixing"
        assert stored.verification_result.overall_rate == pytest.approx(record.verification_result.overall_rate)

    def test_coding_response_is_scored(self):
        """Verify extracted code gets quality and effectiveness scores."""
        content = 'Here you go:\n```python\nx = 5\nresult = x + "hello"\n```'
        result = self._handle(
            lambda request: httpx.Response(200, json=_chat_response(content=content)),
            body=CODING_REQUEST,
        )

        record = result.record
        assert record.code_quality_metrics.syntax_valid
        assert record.code_quality_metrics.lines_of_code == 2
        assert record.code_quality_score == 94
        assert 0 <= record.effectiveness_score <= 100

        stored = list(self.repository.iter_records())[0]
        assert stored.code_quality_score == 94
        assert stored.effectiveness_score == record.effectiveness_score
        assert stored.code_quality_metrics == record.code_quality_metrics

    def test_coding_prompt_without_code(self):
        """Verify coding requests without code carry no verification."""
        result = self._handle(
            lambda request: httpx.Response(200, json=_chat_response(content="I cannot help with that.")),
            body=CODING_REQUEST,
        )
        assert result.record.task_type == "coding"
        assert result.record.verification_result is None
        assert result.record.code_quality_score is None
        assert result.record.effectiveness_score is None

    def test_append_failure_still_returns_response(self):
        """Verify a log write failure does not fail the request."""
        repository = _FailingRepository(self.log_path)
        result = self._handle(lambda request: httpx.Response(200, json=_chat_response()), repository=repository)
        assert result.status_code == 200


class TestResolveModel:
    """Test pricing model resolution."""

    def test_response_model_wins(self):
        """Verify the model echoed by the provider is preferred."""
        assert resolve_model({"model": "gpt-4o"}, {"model": "gpt-4"}, _route()) == "gpt-4o"

    def test_gemini_model_version(self):
        """Verify Gemini's modelVersion is recognised."""
        assert resolve_model({"modelVersion": "gemini-2.5-pro"}, None, _route()) == "gemini-2.5-pro"

    def test_request_model(self):
        """Verify the requested model is used when the response has none."""
        assert resolve_model({}, {"model": "gpt-4"}, _route()) == "gpt-4"

    def test_route_default_then_table_default(self):
        """Verify the route default and finally the pricing default."""
        assert resolve_model(None, None, _route(default_model="ollama-llama3")) == "ollama-llama3"
        assert resolve_model(None, None, _route()) == "gemini-2.5-flash"


class TestOutboundHeaders:
    """Test header preparation."""

    def test_connection_headers_are_dropped(self):
        """Verify hop-by-hop headers and client credentials are removed."""
        headers = outbound_headers(
            {"host": "localhost", "content-length": "10", "authorization": "Bearer x", "x-custom": "1"},
            _route(),
            {"Authorization": "Bearer sk-test"},
            "req-1",
        )
        assert headers == {
            "x-custom": "1",
            "Content-Type": "application/json",
            "X-Request-ID": "req-1",
            "Authorization": "Bearer sk-test",
        }

    def test_client_content_type_is_kept(self):
        """Verify an explicit content type is forwarded."""
        headers = outbound_headers({"content-type": "application/json; charset=utf-8"}, _route(), {}, "req-1")
        assert headers["content-type"] == "application/json; charset=utf-8"
        assert "Content-Type" not in headers
