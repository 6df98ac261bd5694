"""
llmrelay Adapters Module

Backend-specific adapters that translate between the relay request context
and each backend's native API format.

The set of variants is fixed: ADAPTER_REGISTRY is built at import time and
is not extended at runtime.
"""

from typing import Dict, Type

from .base import BaseAdapter, AdapterConfig
from .openai_compat import OpenAICompatibleAdapter, GroqAdapter, CerebrasAdapter, OpenAIAdapter
from .gemini_adapter import GeminiAdapter
from .stub_adapter import StubAdapter
from ..core.config import BackendSettings, RelayConfig
from ..core.models import BackendDescriptor

__all__ = [
    "BaseAdapter",
    "AdapterConfig",
    "OpenAICompatibleAdapter",
    "GroqAdapter",
    "CerebrasAdapter",
    "OpenAIAdapter",
    "GeminiAdapter",
    "StubAdapter",
    "ADAPTER_REGISTRY",
    "build_adapter",
    "build_adapters",
]


ADAPTER_REGISTRY: Dict[str, Type[BaseAdapter]] = {
    "groq": GroqAdapter,
    "cerebras": CerebrasAdapter,
    "openai": OpenAIAdapter,
    "gemini": GeminiAdapter,
    "stub": StubAdapter,
}


def build_adapter(descriptor: BackendDescriptor, config: AdapterConfig, **kwargs) -> BaseAdapter:
    """
    Factory function to get the appropriate adapter for a backend.

    Args:
        descriptor: Static backend description (kind selects the variant)
        config: Connection settings with API key
        **kwargs: Passed to the adapter constructor (e.g. an httpx transport)

    Returns:
        Configured adapter instance

    Raises:
        ValueError: If the kind is not supported
    """
    adapter_class = ADAPTER_REGISTRY.get(descriptor.kind.lower())
    if not adapter_class:
        raise ValueError(f"Unsupported backend kind: {descriptor.kind}")

    return adapter_class(descriptor, config, **kwargs)


def adapter_from_settings(settings: BackendSettings) -> BaseAdapter:
    return build_adapter(
        settings.to_descriptor(),
        AdapterConfig(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
        ),
    )


def build_adapters(config: RelayConfig) -> Dict[str, BaseAdapter]:
    """Build one adapter per enabled backend, keyed by backend name."""
    return {s.name: adapter_from_settings(s) for s in config.enabled_backends()}
