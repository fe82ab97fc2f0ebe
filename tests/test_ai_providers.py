"""
Tests for AI provider selection and request shaping.

Gemini is exercised over httpx.MockTransport; the OpenAI and Anthropic SDK
clients are replaced with mocks in the per-key client cache.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from core.ai_providers import (
    DEFAULT_MODELS, AIProviderError, AIProviderRegistry, AnthropicProvider,
    GeminiProvider, OpenAIProvider, alternate_turns, create_provider_registry,
    model_for, provider_name,
)
from models.schemas import AIProviderName, HistoryMessage

HISTORY = [
    HistoryMessage(role="user", content="Bonjour"),
    HistoryMessage(role="assistant", content="Bienvenue !"),
    HistoryMessage(role="user", content="Vous livrez à Lyon ?"),
]


class TestSelection:
    @pytest.mark.parametrize("value,expected", [
        ("OPENAI", AIProviderName.OPENAI),
        ("anthropic", AIProviderName.ANTHROPIC),
        ("GEMINI", AIProviderName.GEMINI),
        ("MISTRAL", AIProviderName.GEMINI),
        (None, AIProviderName.GEMINI),
    ])
    def test_provider_name(self, value, expected):
        assert provider_name(value) == expected

    def test_model_must_belong_to_provider(self):
        assert model_for(AIProviderName.OPENAI, "gpt-4o") == "gpt-4o"
        assert model_for(AIProviderName.GEMINI, "gpt-4o") == DEFAULT_MODELS[AIProviderName.GEMINI]
        assert model_for(AIProviderName.ANTHROPIC, None) == DEFAULT_MODELS[AIProviderName.ANTHROPIC]

    def test_registry_falls_back_to_gemini(self):
        registry = create_provider_registry()
        assert registry.get("OPENAI").name == AIProviderName.OPENAI
        assert registry.get("unknown").name == AIProviderName.GEMINI

    def test_registry_requires_gemini(self):
        with pytest.raises(ValueError):
            AIProviderRegistry([OpenAIProvider()])


class TestAlternateTurns:
    def test_merges_consecutive_roles(self):
        turns = alternate_turns([
            HistoryMessage(role="user", content="a"),
            HistoryMessage(role="user", content="b"),
            HistoryMessage(role="assistant", content="c"),
        ])
        assert turns == [{"role": "user", "content": "a\nb"}, {"role": "assistant", "content": "c"}]

    def test_first_turn_is_user(self):
        turns = alternate_turns([HistoryMessage(role="assistant", content="Promo !")])
        assert turns[0]["role"] == "user"
        assert turns[1] == {"role": "assistant", "content": "Promo !"}


# ══════════════════════════════════════════════════════════════
#  GEMINI
# ══════════════════════════════════════════════════════════════

class TestGeminiProvider:
    @pytest.mark.asyncio
    async def test_generate(self):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": "Oui, "}, {"text": "sous 48h."}]}}],
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = GeminiProvider(max_tokens=200, client=client)
        reply = await provider.generate(HISTORY, "SYSTEM", "g-key", "gemini-1.5-pro", 0.3)

        assert reply == "Oui, sous 48h."
        request = captured[0]
        assert request.url.path.endswith("/models/gemini-1.5-pro:generateContent")
        assert request.headers["x-goog-api-key"] == "g-key"
        body = json.loads(request.content)
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["systemInstruction"] == {"parts": [{"text": "SYSTEM"}]}
        assert body["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 200}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(403, json={"error": {"message": "API key invalid"}})
        ))
        with pytest.raises(AIProviderError):
            await GeminiProvider(client=client).generate(HISTORY, "S", "bad")

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"candidates": []})
        ))
        with pytest.raises(AIProviderError):
            await GeminiProvider(client=client).generate(HISTORY, "S", "key")


# ══════════════════════════════════════════════════════════════
#  OPENAI / ANTHROPIC
# ══════════════════════════════════════════════════════════════

class TestSdkProviders:
    @pytest.mark.asyncio
    async def test_openai_system_prompt_is_first_message(self):
        provider = OpenAIProvider(max_tokens=300)
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="  Oui !  "))]
        ))
        provider._clients["o-key"] = client

        reply = await provider.generate(HISTORY, "SYSTEM", "o-key", "gemini-pro", 0.5)

        assert reply == "Oui !"
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == DEFAULT_MODELS[AIProviderName.OPENAI]
        assert kwargs["messages"][0] == {"role": "system", "content": "SYSTEM"}
        assert kwargs["messages"][-1]["content"] == "Vous livrez à Lyon ?"
        assert kwargs["max_tokens"] == 300

    @pytest.mark.asyncio
    async def test_anthropic_system_is_separate(self):
        provider = AnthropicProvider()
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Bien sûr.")]
        ))
        provider._clients["a-key"] = client

        reply = await provider.generate(HISTORY, "SYSTEM", "a-key", "claude-3-5-sonnet-latest", 1.4)

        assert reply == "Bien sûr."
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "SYSTEM"
        assert kwargs["model"] == "claude-3-5-sonnet-latest"
        assert kwargs["temperature"] == 1.0
        assert all(m["role"] != "system" for m in kwargs["messages"])
