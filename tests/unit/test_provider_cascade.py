"""Unit tests for the reasoning provider cascade."""
import asyncio
import json
import pytest

import aiohttp

from tradeguard.core.config import ProviderConfig
from tradeguard.core.exceptions import AllProvidersExhausted
from tradeguard.core.models import MarketContext, TradingModeName
from tradeguard.providers.base import render_prompt
from tradeguard.providers.cascade import ProviderCascade, create_cascade
from tradeguard.providers.http import OllamaProvider, OpenAICompatibleProvider

from conftest import StaticProvider, decisions_body

BUY_AAPL = {"symbol": "AAPL", "action": "BUY", "quantity": 10}


@pytest.fixture
def context(million_portfolio, mode_policies):
    return MarketContext(
        portfolio_tag="KALIC",
        mode=TradingModeName.NORMAL,
        mode_policy=mode_policies[TradingModeName.NORMAL],
        portfolio=million_portfolio,
    )


class TestCascadeOrder:
    """Test strict priority ordering."""

    @pytest.mark.asyncio
    async def test_first_provider_answers(self, context):
        primary = StaticProvider("primary", body=decisions_body(BUY_AAPL))
        backup = StaticProvider("backup", body=decisions_body())
        cascade = ProviderCascade([primary, backup], timeout_seconds=1.0)

        result = await cascade.query(context)

        assert result.provider_id == "primary"
        assert result.items == [BUY_AAPL]
        assert result.attempts == []
        assert backup.calls == 0

    @pytest.mark.asyncio
    async def test_falls_back_on_transport_error(self, context):
        primary = StaticProvider("primary", error=aiohttp.ClientConnectionError("refused"))
        backup = StaticProvider("backup", body=decisions_body(BUY_AAPL))
        cascade = ProviderCascade([primary, backup], timeout_seconds=1.0)

        result = await cascade.query(context)

        assert result.provider_id == "backup"
        assert len(result.attempts) == 1
        assert result.attempts[0]["provider_id"] == "primary"
        assert result.attempts[0]["reason"].startswith("transport error")

    @pytest.mark.asyncio
    async def test_falls_back_on_timeout(self, context):
        """A slow provider is abandoned after its own timeout."""
        slow = StaticProvider("slow", body=decisions_body(BUY_AAPL), delay=5)
        backup = StaticProvider("backup", body=decisions_body(BUY_AAPL))
        cascade = ProviderCascade([slow, backup], timeout_seconds=0.05)

        result = await cascade.query(context)

        assert result.provider_id == "backup"
        assert "timed out" in result.attempts[0]["reason"]

    @pytest.mark.asyncio
    async def test_falls_back_on_malformed_envelope(self, context):
        garbled = StaticProvider("garbled", body="I think you should buy some Apple")
        backup = StaticProvider("backup", body=decisions_body(BUY_AAPL))
        cascade = ProviderCascade([garbled, backup], timeout_seconds=1.0)

        result = await cascade.query(context)

        assert result.provider_id == "backup"
        assert result.attempts[0]["reason"].startswith("malformed response")

    @pytest.mark.asyncio
    async def test_falls_back_on_unexpected_error(self, context):
        """A provider bug is logged and treated like any other failure."""
        broken = StaticProvider("broken", error=RuntimeError("boom"))
        backup = StaticProvider("backup", body=decisions_body(BUY_AAPL))
        cascade = ProviderCascade([broken, backup], timeout_seconds=1.0)

        result = await cascade.query(context)

        assert result.provider_id == "backup"
        assert result.attempts[0]["reason"] == "provider error: RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_odd_completion_shape_is_malformed(self, context, monkeypatch):
        provider = OpenAICompatibleProvider("odd", model="m", base_url="http://localhost:1")
        backup = StaticProvider("backup", body=decisions_body(BUY_AAPL))

        async def fake_post(payload):
            return {"choices": ["not a message object"]}

        monkeypatch.setattr(provider, "_post", fake_post)
        cascade = ProviderCascade([provider, backup], timeout_seconds=1.0)

        result = await cascade.query(context)

        assert result.provider_id == "backup"
        assert result.attempts[0]["reason"].startswith("malformed response: unexpected completion shape")

    @pytest.mark.asyncio
    async def test_no_retry_within_provider(self, context):
        primary = StaticProvider("primary", error=asyncio.TimeoutError())
        backup = StaticProvider("backup", body=decisions_body())
        cascade = ProviderCascade([primary, backup], timeout_seconds=1.0)

        await cascade.query(context)

        assert primary.calls == 1

    @pytest.mark.asyncio
    async def test_empty_decisions_is_an_answer(self, context):
        """An empty list is a valid "do nothing" answer, not a failure."""
        primary = StaticProvider("primary", body=decisions_body())
        backup = StaticProvider("backup", body=decisions_body(BUY_AAPL))

        result = await ProviderCascade([primary, backup]).query(context)

        assert result.provider_id == "primary"
        assert result.items == []


class TestCascadeExhausted:
    """Test total failure."""

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, context):
        providers = [
            StaticProvider("a", error=aiohttp.ClientConnectionError("refused")),
            StaticProvider("b", body="not json at all"),
        ]
        cascade = ProviderCascade(providers, timeout_seconds=1.0)

        with pytest.raises(AllProvidersExhausted) as exc_info:
            await cascade.query(context)

        attempts = exc_info.value.attempts
        assert [a["provider_id"] for a in attempts] == ["a", "b"]
        assert exc_info.value.kind == "all_providers_exhausted"

    @pytest.mark.asyncio
    async def test_no_providers(self, context):
        with pytest.raises(AllProvidersExhausted):
            await ProviderCascade([]).query(context)

    @pytest.mark.asyncio
    async def test_close_closes_all(self):
        providers = [StaticProvider("a"), StaticProvider("b")]
        await ProviderCascade(providers).close()
        assert all(p.closed for p in providers)


class TestCascadeFactory:
    """Test building the cascade from configuration."""

    def test_openai_compatible(self):
        config = ProviderConfig(
            kind="openai", model_priority_str="big-model,small-model", timeout_seconds=12
        )

        cascade = create_cascade(config)

        assert cascade.provider_ids == ["big-model", "small-model"]
        assert all(isinstance(p, OpenAICompatibleProvider) for p in cascade.providers)
        assert cascade.timeout_seconds == 12

    def test_ollama(self):
        config = ProviderConfig(kind="ollama", model_priority_str="llama3")

        cascade = create_cascade(config)

        assert isinstance(cascade.providers[0], OllamaProvider)


class TestPrompt:
    """Test prompt rendering."""

    def test_prompt_carries_limits(self, context):
        payload = json.loads(render_prompt(context, max_proposals=3))

        assert payload["portfolio"] == "KALIC"
        assert payload["mode"] == "normal"
        assert payload["max_position_pct"] == "10"
        assert payload["trades_remaining_today"] == 10
        assert payload["max_proposals"] == 3
