"""
AI providers — one generate() capability, three variants.

  GEMINI     Google Generative Language REST API over httpx
  OPENAI     openai.AsyncOpenAI chat completions
  ANTHROPIC  anthropic.AsyncAnthropic messages

Selection is by AIProviderName; anything unrecognised falls back to GEMINI.
API keys are per tenant, so SDK clients are cached per key.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional, Sequence

import httpx

from models.schemas import AIProviderName, HistoryMessage

logger = structlog.get_logger()

DEFAULT_MODELS = {
    AIProviderName.GEMINI: "gemini-2.0-flash",
    AIProviderName.OPENAI: "gpt-4o-mini",
    AIProviderName.ANTHROPIC: "claude-3-5-haiku-latest",
}

_MODEL_PREFIXES = {
    AIProviderName.GEMINI: ("gemini",),
    AIProviderName.OPENAI: ("gpt", "o1", "o3", "o4", "chatgpt"),
    AIProviderName.ANTHROPIC: ("claude",),
}


class AIProviderError(Exception):
    pass


def provider_name(value: Optional[str]) -> AIProviderName:
    try:
        return AIProviderName((value or "").upper())
    except ValueError:
        logger.info("ai_provider_defaulted", requested=value, provider=AIProviderName.GEMINI.value)
        return AIProviderName.GEMINI


def model_for(provider: AIProviderName, model: Optional[str]) -> str:
    """Keep the configured model only if it belongs to this provider."""
    if model and model.lower().startswith(_MODEL_PREFIXES[provider]):
        return model
    return DEFAULT_MODELS[provider]


def alternate_turns(history: Sequence[HistoryMessage]) -> list[dict[str, str]]:
    """Merge consecutive same-role turns and make sure the first turn is the user's."""
    turns: list[dict[str, str]] = []
    for msg in history:
        role = "assistant" if msg.role == "assistant" else "user"
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += "\n" + msg.content
        else:
            turns.append({"role": role, "content": msg.content})
    if turns and turns[0]["role"] == "assistant":
        turns.insert(0, {"role": "user", "content": "[Conversation started]"})
    return turns


class AIProvider(abc.ABC):
    name: AIProviderName

    def __init__(self, max_tokens: int = 500, timeout: float = 30.0):
        self.max_tokens = max_tokens
        self.timeout = timeout

    @abc.abstractmethod
    async def generate(
        self,
        history: Sequence[HistoryMessage],
        system_prompt: str,
        api_key: str,
        model: Optional[str] = None,
        temperature: float = 0.7,
    ) -> str:
        ...


# ── Gemini ────────────────────────────────────────────────────

class GeminiProvider(AIProvider):
    name = AIProviderName.GEMINI

    def __init__(
        self,
        max_tokens: int = 500,
        timeout: float = 30.0,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(max_tokens, timeout)
        self.base_url = base_url.rstrip("/")
        self._client = client

    async def generate(self, history, system_prompt, api_key, model=None, temperature=0.7) -> str:
        model = model_for(self.name, model)
        contents = [
            {"role": "model" if t["role"] == "assistant" else "user", "parts": [{"text": t["content"]}]}
            for t in alternate_turns(history)
        ]
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": temperature, "maxOutputTokens": self.max_tokens},
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)

        if response.status_code != 200:
            raise AIProviderError(f"Gemini API error: {response.status_code} - {response.text[:300]}")

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            raise AIProviderError("Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts).strip()


# ── OpenAI ────────────────────────────────────────────────────

class OpenAIProvider(AIProvider):
    name = AIProviderName.OPENAI

    def __init__(self, max_tokens: int = 500, timeout: float = 30.0):
        super().__init__(max_tokens, timeout)
        self._clients: dict[str, Any] = {}

    def _client_for(self, api_key: str):
        if api_key not in self._clients:
            from openai import AsyncOpenAI
            self._clients[api_key] = AsyncOpenAI(api_key=api_key, timeout=self.timeout)
            logger.info("llm_client_initialized", provider="openai")
        return self._clients[api_key]

    async def generate(self, history, system_prompt, api_key, model=None, temperature=0.7) -> str:
        client = self._client_for(api_key)
        # OpenAI: system prompt is a message in the messages list
        messages = [{"role": "system", "content": system_prompt}] + alternate_turns(history)
        response = await client.chat.completions.create(
            model=model_for(self.name, model),
            max_tokens=self.max_tokens,
            temperature=temperature,
            messages=messages,
        )
        return (response.choices[0].message.content or "").strip()


# ── Anthropic ─────────────────────────────────────────────────

class AnthropicProvider(AIProvider):
    name = AIProviderName.ANTHROPIC

    def __init__(self, max_tokens: int = 500, timeout: float = 30.0):
        super().__init__(max_tokens, timeout)
        self._clients: dict[str, Any] = {}

    def _client_for(self, api_key: str):
        if api_key not in self._clients:
            import anthropic
            self._clients[api_key] = anthropic.AsyncAnthropic(api_key=api_key, timeout=self.timeout)
            logger.info("llm_client_initialized", provider="anthropic")
        return self._clients[api_key]

    async def generate(self, history, system_prompt, api_key, model=None, temperature=0.7) -> str:
        client = self._client_for(api_key)
        # Anthropic: system prompt is a separate parameter
        response = await client.messages.create(
            model=model_for(self.name, model),
            max_tokens=self.max_tokens,
            temperature=min(max(temperature, 0.0), 1.0),
            system=system_prompt,
            messages=alternate_turns(history),
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()


# ── Registry ──────────────────────────────────────────────────

class AIProviderRegistry:
    def __init__(self, providers: Sequence[AIProvider]):
        self._providers = {p.name: p for p in providers}
        if AIProviderName.GEMINI not in self._providers:
            raise ValueError("the GEMINI fallback provider must be registered")

    def get(self, value: Optional[str]) -> AIProvider:
        name = provider_name(value)
        return self._providers.get(name) or self._providers[AIProviderName.GEMINI]


def create_provider_registry(
    max_tokens: int = 500,
    timeout: float = 30.0,
    gemini_url: str = "https://generativelanguage.googleapis.com/v1beta",
) -> AIProviderRegistry:
    return AIProviderRegistry([
        GeminiProvider(max_tokens=max_tokens, timeout=timeout, base_url=gemini_url),
        OpenAIProvider(max_tokens=max_tokens, timeout=timeout),
        AnthropicProvider(max_tokens=max_tokens, timeout=timeout),
    ])
