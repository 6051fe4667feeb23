"""HTTP reasoning providers (Ollama and OpenAI-compatible endpoints)."""
import time
from typing import Any, Dict, Optional

import aiohttp
import structlog

from tradeguard.core.exceptions import MalformedProviderResponse
from tradeguard.core.models import MarketContext
from tradeguard.providers.base import SYSTEM_PROMPT, RawResponse, ReasoningProvider, render_prompt

logger = structlog.get_logger(__name__)


class HttpProvider(ReasoningProvider):
    """Shared aiohttp session handling.

    The session is created lazily so providers can be built outside an event
    loop. Timeouts are enforced by the cascade, not here.
    """

    path = "/"

    def __init__(
        self,
        provider_id: str,
        model: str,
        base_url: str,
        api_key: Optional[str] = None,
        temperature: float = 0.2,
        max_proposals: int = 10,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(provider_id)
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_proposals = max_proposals
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
            self._owns_session = True
        return self._session

    async def _post(self, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{self.path}"
        async with self._get_session().post(url, json=payload) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


class OllamaProvider(HttpProvider):
    """Ollama ``/api/generate`` with JSON output."""

    kind = "ollama"
    path = "/api/generate"

    async def query(self, context: MarketContext) -> RawResponse:
        started = time.monotonic()
        data = await self._post({
            "model": self.model,
            "system": SYSTEM_PROMPT,
            "prompt": render_prompt(context, self.max_proposals),
            "format": "json",
            "stream": False,
            "options": {"temperature": self.temperature},
        })
        elapsed = time.monotonic() - started
        logger.debug("provider.responded", provider=self.provider_id, elapsed=round(elapsed, 2))
        body = data.get("response") if isinstance(data, dict) else data
        return RawResponse(provider_id=self.provider_id, kind=self.kind, body=body, elapsed_seconds=elapsed)


class OpenAICompatibleProvider(HttpProvider):
    """Any ``/v1/chat/completions`` endpoint."""

    kind = "openai_chat"
    path = "/v1/chat/completions"

    async def query(self, context: MarketContext) -> RawResponse:
        started = time.monotonic()
        data = await self._post({
            "model": self.model,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": render_prompt(context, self.max_proposals)},
            ],
        })
        elapsed = time.monotonic() - started
        logger.debug("provider.responded", provider=self.provider_id, elapsed=round(elapsed, 2))
        body = data
        if isinstance(data, dict) and data.get("choices"):
            try:
                body = (data["choices"][0].get("message") or {}).get("content")
            except (AttributeError, IndexError, KeyError, TypeError) as e:
                raise MalformedProviderResponse(
                    f"unexpected completion shape: {e}", self.provider_id, data
                ) from e
        return RawResponse(provider_id=self.provider_id, kind=self.kind, body=body, elapsed_seconds=elapsed)
