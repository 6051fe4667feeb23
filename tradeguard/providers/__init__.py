"""Reasoning providers for TradeGuard.

Provides the provider interface, HTTP adapters for Ollama and
OpenAI-compatible endpoints, the priority cascade and the response parser.
"""

from tradeguard.providers.base import RawResponse, ReasoningProvider, render_prompt
from tradeguard.providers.cascade import CascadeResult, ProviderCascade, create_cascade
from tradeguard.providers.http import OllamaProvider, OpenAICompatibleProvider
from tradeguard.providers.parser import ResponseParser

__all__ = [
    'CascadeResult',
    'OllamaProvider',
    'OpenAICompatibleProvider',
    'ProviderCascade',
    'RawResponse',
    'ReasoningProvider',
    'ResponseParser',
    'create_cascade',
    'render_prompt',
]
