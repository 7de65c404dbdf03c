"""Tests for provider gateways without network access."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tradebot.config import settings
from tradebot.services.ai_providers import (
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    ProviderError,
    ProviderOptions,
    default_providers,
)


def test_default_order():
    assert [p.name for p in default_providers()] == ["openai", "openrouter", "ollama"]


@pytest.mark.asyncio
async def test_openai_key_from_store():
    store = MagicMock()
    store.get_credential.return_value = ("sk-test", None)
    provider = OpenAIProvider()

    assert await provider.initialize(store) is True
    store.get_credential.assert_called_once_with("openai")
    assert provider.api_key == "sk-test"


@pytest.mark.asyncio
async def test_openai_without_key_is_unavailable(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "")
    store = MagicMock()
    store.get_credential.return_value = None
    provider = OpenAIProvider()

    assert await provider.initialize(store) is False
    assert await provider.get_decision("p", ProviderOptions(model="m")) is None


@pytest.mark.asyncio
async def test_openai_request_payload():
    provider = OpenAIProvider(api_key="sk-test")
    await provider.initialize()
    reply = {"choices": [{"message": {"content": " DECISION: BUY. JUSTIFICACION: x "}}]}

    with patch.object(provider, "_request_json", AsyncMock(return_value=reply)) as req:
        text = await provider.get_decision("prompt", ProviderOptions(model="gpt-x", temperature=0.2))

    assert text == "DECISION: BUY. JUSTIFICACION: x"
    method, url = req.await_args.args
    payload = req.await_args.kwargs["payload"]
    assert method == "POST" and url.endswith("/chat/completions")
    assert payload["model"] == "gpt-x"
    assert payload["messages"][1] == {"role": "user", "content": "prompt"}
    assert req.await_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_openrouter_headers():
    provider = OpenRouterProvider(api_key="or-key")
    await provider.initialize()
    headers = provider._headers()
    assert headers["X-Title"] == settings.openrouter_title
    assert "HTTP-Referer" in headers


@pytest.mark.asyncio
async def test_malformed_chat_payload_returns_none():
    provider = OpenAIProvider(api_key="sk-test")
    await provider.initialize()
    with patch.object(provider, "_request_json", AsyncMock(return_value={"choices": []})):
        assert await provider.get_decision("p", ProviderOptions(model="m")) is None


@pytest.mark.asyncio
async def test_ollama_probe_and_chat():
    provider = OllamaProvider(base_url="http://ollama:11434")
    tags = {"models": [{"name": "gemma:2b"}]}
    chat = {"message": {"role": "assistant", "content": "DECISION: HOLD. JUSTIFICACION: flat"}}

    with patch.object(provider, "_request_json", AsyncMock(side_effect=[tags, chat])) as req:
        assert await provider.initialize() is True
        text = await provider.get_decision("p", ProviderOptions(model="gemma:2b"))

    assert provider.models == ["gemma:2b"]
    assert text.startswith("DECISION: HOLD")
    payload = req.await_args.kwargs["payload"]
    assert payload["stream"] is False


@pytest.mark.asyncio
async def test_ollama_unreachable():
    provider = OllamaProvider()
    with patch.object(provider, "_request_json", AsyncMock(side_effect=ProviderError("refused"))):
        assert await provider.initialize() is False
    assert not provider.is_available()
