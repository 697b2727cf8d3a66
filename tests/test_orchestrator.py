"""Tests for the generation pipeline without the HTTP layer."""

import math
import threading
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from datamocker.client import ProviderClient
from datamocker.errors import ProviderError
from datamocker.generator import generate_mock_data
from datamocker.orchestrator import CallerIdentity, GenerationOrchestrator
from datamocker.providers import ProviderProfile

ANONYMOUS = CallerIdentity(identifier="1.2.3.4")
SCHEMA = "CREATE TABLE users (id INT, name TEXT);"


def _defaults(api_key="sk-server"):
    return lambda: {"api_key": api_key, "model": "gpt-4o-mini", "base_url": None}


@pytest.fixture
def generator():
    return AsyncMock(return_value='```json\n[{"id": 1}]\n```')


@pytest.fixture
def orchestrator(ledger, generator):
    return GenerationOrchestrator(ledger=ledger, generate=generator, provider_defaults=_defaults())


def _payload(**overrides):
    body = {"schema": SCHEMA, "schemaType": "sql", "count": 5, "format": "json"}
    body.update(overrides)
    return body


@pytest.mark.unit
class TestValidation:
    """Test request validation outcomes."""

    @pytest.mark.asyncio
    async def test_count_out_of_range(self, orchestrator, generator):
        """Test count=150 is rejected with detail on count."""
        result = await orchestrator.run(_payload(count=150), ANONYMOUS)

        assert result.status_code == 400
        assert result.body["success"] is False
        assert result.body["error"] == "Invalid request data"
        assert "count" in result.body["details"]
        generator.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"format": "yaml"}, "format"),
            ({"schemaType": "graph"}, "schemaType"),
            ({"temperature": 3}, "temperature"),
            ({"maxTokens": 50}, "maxTokens"),
            ({"count": "5"}, "count"),
            ({"count": 0}, "count"),
        ],
    )
    async def test_field_errors(self, orchestrator, overrides, field):
        result = await orchestrator.run(_payload(**overrides), ANONYMOUS)
        assert result.status_code == 400
        assert field in result.body["details"]

    @pytest.mark.asyncio
    async def test_schema_required_without_examples(self, orchestrator):
        result = await orchestrator.run(_payload(schema=""), ANONYMOUS)
        assert result.status_code == 400
        assert "schema" in result.body["details"]

    @pytest.mark.asyncio
    async def test_examples_replace_schema(self, orchestrator):
        """Test example-derived mode works without a schema."""
        result = await orchestrator.run(_payload(schema="", examples='[{"id": 1}]'), ANONYMOUS)
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_non_object_body(self, orchestrator):
        result = await orchestrator.run(["not", "an", "object"], ANONYMOUS)
        assert result.status_code == 400
        assert "body" in result.body["details"]

    @pytest.mark.asyncio
    async def test_validation_does_not_touch_quota(self, orchestrator, ledger):
        await orchestrator.run(_payload(count=150), ANONYMOUS)
        assert ledger.current("1.2.3.4").remaining == 5


@pytest.mark.unit
class TestPipeline:
    """Test quota, dispatch and response assembly."""

    @pytest.mark.asyncio
    async def test_success_decrements_remaining(self, orchestrator, ledger, generator):
        """Test a successful call returns cleaned data and uses one generation."""
        before = ledger.current("1.2.3.4").remaining

        result = await orchestrator.run(_payload(), ANONYMOUS)

        assert result.status_code == 200
        assert result.body["success"] is True
        assert result.body["result"] == '[{"id": 1}]'
        assert result.body["usage"]["limit"] == 5
        assert result.body["usage"]["remaining"] == before - 1
        assert result.body["usage"]["resetTimestamp"] == ledger.reset_timestamp()

        params = generator.call_args.args[0]
        assert params.api_key == "sk-server"
        assert params.model == "gpt-4o-mini"
        assert params.count == 5
        assert params.temperature == 0.7
        assert params.max_tokens == 4000
        assert generator.call_args.kwargs["profile"] is ProviderProfile.OPENAI

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, orchestrator, ledger, generator):
        """Test a caller at remaining=0 gets 429 and no provider call."""
        for _ in range(5):
            ledger.increment("1.2.3.4")

        result = await orchestrator.run(_payload(), ANONYMOUS)

        assert result.status_code == 429
        assert result.body["success"] is False
        assert "Daily rate limit exceeded" in result.body["error"]
        assert "all 5 of your free generations" in result.body["error"]
        assert result.body["usage"]["remaining"] == 0
        generator.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_failure_reports_usage(self, orchestrator, ledger, generator):
        """Test a dispatch failure returns 500 with the pre-failure usage."""
        ledger.increment("1.2.3.4")
        generator.side_effect = ProviderError("AI provider request failed: connection refused")

        result = await orchestrator.run(_payload(), ANONYMOUS)

        assert result.status_code == 500
        assert result.body["error"].startswith("Failed to generate mock data:")
        assert "connection refused" in result.body["error"]
        assert result.body["usage"]["remaining"] == 4
        assert ledger.current("1.2.3.4").used == 1

    @pytest.mark.asyncio
    async def test_missing_api_key(self, ledger, generator):
        """Test a server without a key and a caller without one gets 500."""
        orchestrator = GenerationOrchestrator(ledger=ledger, generate=generator, provider_defaults=_defaults(""))

        result = await orchestrator.run(_payload(), ANONYMOUS)

        assert result.status_code == 500
        assert result.body["error"] == "AI API key is not configured."
        assert "usage" in result.body
        generator.assert_not_called()

    @pytest.mark.asyncio
    async def test_own_api_key_bypasses_quota(self, orchestrator, ledger, generator):
        """Test callers bringing an API key are unlimited and uncounted."""
        for _ in range(5):
            ledger.increment("1.2.3.4")

        result = await orchestrator.run(
            _payload(apiKey="sk-mine", model="claude-3-haiku", temperature=0.1, maxTokens=800),
            ANONYMOUS,
        )

        assert result.status_code == 200
        assert result.body["usage"] == {"limit": None, "remaining": None, "resetTimestamp": 0}
        assert ledger.current("1.2.3.4").used == 5
        params = generator.call_args.args[0]
        assert params.api_key == "sk-mine"
        assert params.temperature == 0.1
        assert params.max_tokens == 800
        assert generator.call_args.kwargs["profile"] is ProviderProfile.ANTHROPIC
        assert not math.isinf(ledger.current("1.2.3.4").limit)

    @pytest.mark.asyncio
    async def test_authenticated_limit_applies(self, orchestrator):
        identity = CallerIdentity(identifier="user-1", authenticated=True, account_id="user-1")
        result = await orchestrator.run(_payload(), identity)
        assert result.body["usage"]["limit"] == 20
        assert result.body["usage"]["remaining"] == 19

    @pytest.mark.asyncio
    async def test_credential_usage_recorded_on_success_only(self, ledger, generator):
        """Test key usage is bumped after success and not after failure."""
        credentials = MagicMock()
        orchestrator = GenerationOrchestrator(
            ledger=ledger, generate=generator, credentials=credentials, provider_defaults=_defaults()
        )
        identity = CallerIdentity(
            identifier="user-1", authenticated=True, account_id="user-1", credential_id="key-1"
        )

        await orchestrator.run(_payload(), identity)
        credentials.record_usage.assert_called_once_with("key-1")

        generator.side_effect = ProviderError("boom")
        await orchestrator.run(_payload(), identity)
        credentials.record_usage.assert_called_once_with("key-1")

    @pytest.mark.asyncio
    async def test_event_failures_never_abort(self, ledger, generator):
        """Test a broken event recorder does not change the response."""
        events = MagicMock()
        events.record_generation.side_effect = RuntimeError("history table missing")
        orchestrator = GenerationOrchestrator(
            ledger=ledger, generate=generator, events=events, provider_defaults=_defaults()
        )

        result = await orchestrator.run(_payload(), ANONYMOUS)

        assert result.status_code == 200
        events.record_generation.assert_called_once()
        kwargs = events.record_generation.call_args.kwargs
        assert kwargs["success"] is True
        assert kwargs["provider"] == "openai"

    @pytest.mark.asyncio
    async def test_failure_event_recorded(self, ledger, generator):
        events = MagicMock()
        generator.side_effect = ProviderError("boom")
        orchestrator = GenerationOrchestrator(
            ledger=ledger, generate=generator, events=events, provider_defaults=_defaults()
        )

        await orchestrator.run(_payload(), ANONYMOUS)

        kwargs = events.record_generation.call_args.kwargs
        assert kwargs["success"] is False
        assert kwargs["error_message"] == "boom"


@pytest.mark.unit
class TestUnsendableRequests:
    """Test inputs httpx cannot put on the wire never escape as raw exceptions."""

    @pytest.mark.asyncio
    async def test_non_ascii_header_value_rejected(self, orchestrator, generator):
        result = await orchestrator.run(_payload(apiKey="sk-mine", headers={"X-Note": "café"}), ANONYMOUS)

        assert result.status_code == 400
        assert "headers" in result.body["details"]
        generator.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("base_url", ["http://[::1", "ftp://example.com/v1", "not a url", "http://exämple.com"])
    async def test_malformed_base_url_rejected(self, orchestrator, generator, base_url):
        result = await orchestrator.run(_payload(apiKey="sk-mine", baseUrl=base_url), ANONYMOUS)

        assert result.status_code == 400
        assert "baseUrl" in result.body["details"]
        generator.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "defaults",
        [
            {"api_key": "sk-server", "model": "gpt-4o-mini", "base_url": "http://[::1"},
            {"api_key": "sk-café", "model": "gpt-4o-mini", "base_url": None},
        ],
    )
    async def test_bad_server_defaults_become_provider_error(self, ledger, defaults):
        """Test a misconfigured server endpoint or key yields 500 with usage, not a crash."""
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": "[]"}}]})

        client = ProviderClient(timeout=5, transport=httpx.MockTransport(handler))

        async def generate(params, profile=None):
            return await generate_mock_data(params, client=client, profile=profile)

        orchestrator = GenerationOrchestrator(ledger=ledger, generate=generate, provider_defaults=lambda: defaults)

        result = await orchestrator.run(_payload(), ANONYMOUS)
        await client.aclose()

        assert result.status_code == 500
        assert result.body["success"] is False
        assert result.body["error"].startswith("Failed to generate mock data:")
        assert result.body["usage"]["remaining"] == 5
        assert ledger.current("1.2.3.4").used == 0

    @pytest.mark.asyncio
    async def test_unexpected_generator_error(self, orchestrator, ledger, generator):
        """Test an unanticipated exception is still a 500 carrying usage."""
        generator.side_effect = RuntimeError("driver exploded")

        result = await orchestrator.run(_payload(), ANONYMOUS)

        assert result.status_code == 500
        assert result.body["error"] == "Failed to generate mock data: RuntimeError"
        assert result.body["usage"]["remaining"] == 5


@pytest.mark.unit
class TestBookkeepingThreads:
    """Test blocking quota and credential calls stay off the event loop."""

    @pytest.mark.asyncio
    async def test_bookkeeping_runs_in_worker_threads(self, ledger, generator):
        loop_thread = threading.get_ident()
        seen = {}

        def spy(name, func):
            def wrapper(*args, **kwargs):
                seen.setdefault(name, set()).add(threading.get_ident())
                return func(*args, **kwargs)
            return wrapper

        ledger.check = spy("check", ledger.check)
        ledger.increment = spy("increment", ledger.increment)
        credentials = MagicMock()
        credentials.record_usage.side_effect = spy("record_usage", lambda credential_id: None)
        events = MagicMock()
        events.record_generation.side_effect = spy("record_generation", lambda **kwargs: None)
        orchestrator = GenerationOrchestrator(
            ledger=ledger, generate=generator, credentials=credentials, events=events, provider_defaults=_defaults()
        )
        identity = CallerIdentity(
            identifier="user-1", authenticated=True, account_id="user-1", credential_id="key-1"
        )

        result = await orchestrator.run(_payload(), identity)

        assert result.status_code == 200
        assert set(seen) == {"check", "increment", "record_usage", "record_generation"}
        for threads in seen.values():
            assert loop_thread not in threads
