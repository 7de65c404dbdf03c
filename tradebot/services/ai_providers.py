"""Language-model provider gateways.

Each provider turns a rendered prompt into raw response text. HTTP and
transport failures raise ``ProviderError``; a well-formed reply without usable
content returns ``None``. Ordering and fallback live in ``ai_orchestrator``.
"""

import asyncio
import logging
from dataclasses import dataclass

import aiohttp

from tradebot.config import settings
from tradebot.utils.constants import PROVIDER_ORDER

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider call failed (HTTP error, bad payload, transport error)."""


@dataclass
class ProviderOptions:
    model: str
    temperature: float = 0.7
    max_tokens: int = 500
    system_message: str | None = None


class AIProvider:
    """Base class; subclasses implement ``_complete``."""

    name = "base"

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout or settings.ai_timeout_seconds
        self._available = False

    async def initialize(self, store=None) -> bool:
        raise NotImplementedError

    def is_available(self) -> bool:
        return self._available

    async def get_decision(self, prompt: str, options: ProviderOptions) -> str | None:
        if not self._available:
            logger.warning(f"[{self.name}] Provider not initialized; skipping request")
            return None
        messages = [
            {"role": "system", "content": options.system_message or settings.ai_system_message},
            {"role": "user", "content": prompt},
        ]
        return await self._complete(messages, options)

    async def _complete(self, messages: list[dict], options: ProviderOptions) -> str | None:
        raise NotImplementedError

    async def _request_json(self, method: str, url: str, headers: dict | None = None,
                            payload: dict | None = None, timeout: float | None = None) -> dict:
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.request(method, url, headers=headers, json=payload) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise ProviderError(f"{self.name} HTTP {resp.status}: {body[:300]}")
                    return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ProviderError(f"{self.name} request failed: {e}") from e


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------

class OpenAIProvider(AIProvider):
    name = "openai"
    credential_service = "openai"

    def __init__(self, api_key: str | None = None, base_url: str | None = None,
                 timeout: float | None = None):
        super().__init__(timeout)
        self.api_key = api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")

    def _fallback_key(self) -> str:
        return settings.openai_api_key

    async def initialize(self, store=None) -> bool:
        if not self.api_key and store is not None:
            try:
                cred = store.get_credential(self.credential_service)
            except Exception as e:
                logger.error(f"[{self.name}] Could not load API key: {e}")
                cred = None
            if cred is not None:
                self.api_key = cred[0]
        if not self.api_key:
            self.api_key = self._fallback_key() or None
        self._available = bool(self.api_key)
        if not self._available:
            logger.warning(f"[{self.name}] No API key configured; provider unavailable")
        return self._available

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _complete(self, messages: list[dict], options: ProviderOptions) -> str | None:
        data = await self._request_json(
            "POST",
            f"{self.base_url}/chat/completions",
            headers=self._headers(),
            payload={
                "model": options.model,
                "messages": messages,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            },
        )
        return _chat_content(data)


class OpenRouterProvider(OpenAIProvider):
    name = "openrouter"
    credential_service = "openrouter"

    def __init__(self, api_key: str | None = None, base_url: str | None = None,
                 timeout: float | None = None):
        super().__init__(api_key, base_url or settings.openrouter_base_url, timeout)

    def _fallback_key(self) -> str:
        return settings.openrouter_api_key

    def _headers(self) -> dict:
        headers = super()._headers()
        headers["HTTP-Referer"] = settings.openrouter_http_referer
        headers["X-Title"] = settings.openrouter_title
        return headers


def _chat_content(data: dict) -> str | None:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        logger.warning(f"Unexpected chat completion payload: {str(data)[:300]}")
        return None
    return content.strip() if content else None


# ---------------------------------------------------------------------------
# Local Ollama server
# ---------------------------------------------------------------------------

class OllamaProvider(AIProvider):
    name = "ollama"
    probe_timeout = 3.0

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        super().__init__(timeout)
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.models: list[str] = []

    async def initialize(self, store=None) -> bool:
        """Probe ``/api/tags``; the server counts as available if it lists models."""
        try:
            data = await self._request_json(
                "GET", f"{self.base_url}/api/tags", timeout=self.probe_timeout
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning(f"[{self.name}] Not reachable at {self.base_url}: {e}")
            self._available = False
            return False
        self.models = [m.get("name", "") for m in (data or {}).get("models", [])]
        self._available = "models" in (data or {})
        logger.info(f"[{self.name}] Available={self._available} models={self.models}")
        return self._available

    async def _complete(self, messages: list[dict], options: ProviderOptions) -> str | None:
        data = await self._request_json(
            "POST",
            f"{self.base_url}/api/chat",
            payload={
                "model": options.model,
                "messages": messages,
                "stream": False,
                "options": {
                    "temperature": options.temperature,
                    "num_predict": options.max_tokens,
                },
            },
        )
        content = ((data or {}).get("message") or {}).get("content")
        return content.strip() if content else None


PROVIDERS: dict[str, type[AIProvider]] = {
    cls.name: cls for cls in (OpenAIProvider, OpenRouterProvider, OllamaProvider)
}


def default_providers() -> list[AIProvider]:
    """Providers in fallback order."""
    return [PROVIDERS[name]() for name in PROVIDER_ORDER]
