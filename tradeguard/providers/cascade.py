"""Provider cascade - strict priority order with per-provider timeouts."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
import structlog

from tradeguard.core.config import ProviderConfig
from tradeguard.core.exceptions import AllProvidersExhausted, MalformedProviderResponse
from tradeguard.core.models import MarketContext
from tradeguard.providers.base import RawResponse, ReasoningProvider
from tradeguard.providers.http import OllamaProvider, OpenAICompatibleProvider
from tradeguard.providers.parser import ResponseParser

logger = structlog.get_logger(__name__)


@dataclass
class CascadeResult:
    """First usable response.

    Attributes:
        response: Raw response from the provider that answered
        items: Envelope-unwrapped proposal dicts
        provider_id: Provider that answered
        attempts: Failures before it, in priority order
    """
    response: RawResponse
    items: List[Dict[str, Any]]
    provider_id: str
    attempts: List[Dict[str, Any]] = field(default_factory=list)


class ProviderCascade:
    """
    Queries providers in priority order and returns the first usable answer.

    Each provider gets its own timeout. Any failure, whether a timeout, a
    transport error or a malformed envelope, moves on to the next provider;
    nothing is retried within a provider.
    """

    def __init__(
        self,
        providers: Sequence[ReasoningProvider],
        timeout_seconds: float = 45.0,
        parser: Optional[ResponseParser] = None,
    ):
        self.providers = list(providers)
        self.timeout_seconds = timeout_seconds
        self.parser = parser or ResponseParser()

    @property
    def provider_ids(self) -> List[str]:
        return [p.provider_id for p in self.providers]

    async def query(self, context: MarketContext) -> CascadeResult:
        """
        Query providers until one returns a usable envelope.

        Raises:
            AllProvidersExhausted: Every provider failed
        """
        attempts: List[Dict[str, Any]] = []

        for provider in self.providers:
            started = time.monotonic()
            try:
                response = await asyncio.wait_for(provider.query(context), timeout=self.timeout_seconds)
                items = self.parser.extract_items(response)
            except asyncio.TimeoutError:
                reason = f"timed out after {self.timeout_seconds}s"
            except aiohttp.ClientError as e:
                reason = f"transport error: {e}"
            except MalformedProviderResponse as e:
                reason = f"malformed response: {e.message}"
            except ValueError as e:
                # Undecodable body
                reason = f"malformed response: {e}"
            except Exception as e:
                logger.error(
                    "cascade.provider_error",
                    provider=provider.provider_id,
                    portfolio=context.portfolio_tag,
                    error=str(e),
                    exc_info=True,
                )
                reason = f"provider error: {type(e).__name__}: {e}"
            else:
                logger.info(
                    "cascade.provider_answered",
                    provider=provider.provider_id,
                    portfolio=context.portfolio_tag,
                    proposals=len(items),
                    fallbacks=len(attempts),
                )
                return CascadeResult(
                    response=response,
                    items=items,
                    provider_id=provider.provider_id,
                    attempts=attempts,
                )

            elapsed = round(time.monotonic() - started, 3)
            attempts.append({
                "provider_id": provider.provider_id,
                "reason": reason,
                "elapsed_seconds": elapsed,
            })
            logger.warning(
                "cascade.provider_failed",
                provider=provider.provider_id,
                portfolio=context.portfolio_tag,
                reason=reason,
                elapsed=elapsed,
            )

        logger.error(
            "cascade.exhausted",
            portfolio=context.portfolio_tag,
            attempts=len(attempts),
        )
        raise AllProvidersExhausted(attempts)

    async def close(self):
        for provider in self.providers:
            await provider.close()


def create_cascade(config: Optional[ProviderConfig] = None) -> ProviderCascade:
    """Build the cascade described by configuration."""
    config = config or ProviderConfig()
    provider_cls = OllamaProvider if config.kind == "ollama" else OpenAICompatibleProvider
    providers = [
        provider_cls(
            provider_id=model,
            model=model,
            base_url=config.base_url,
            api_key=config.api_key,
            temperature=config.temperature,
            max_proposals=config.max_proposals,
        )
        for model in config.model_priority
    ]
    return ProviderCascade(
        providers,
        timeout_seconds=config.timeout_seconds,
        parser=ResponseParser(max_proposals=config.max_proposals),
    )
