"""Factory for creating reasoning providers based on configuration.

Implements Factory Pattern for provider selection with registry pattern for extensibility.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

from services.reasoning.base import ReasoningProvider
from services.reasoning.ollama_provider import OllamaReasoningProvider
from services.reasoning.openai_provider import OpenAIReasoningProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available reasoning providers.

    Supports runtime registration of new providers.
    """

    _providers: dict[str, type[ReasoningProvider]] = {
        "openai": OpenAIReasoningProvider,
        "ollama": OllamaReasoningProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ReasoningProvider]) -> None:
        """Register a new provider.

        Args:
            name: Provider identifier (must match Settings.reasoning_provider)
            provider_class: Provider class implementing ReasoningProvider interface
        """
        cls._providers[name] = provider_class
        logger.info(f"Registered reasoning provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ReasoningProvider]:
        """Get provider class by name.

        Raises:
            ValueError: If provider not found in registry
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(
                f"Unknown reasoning provider: '{name}'. Available providers: {available}"
            )
        return cls._providers[name]

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def create_reasoning_provider(settings: Settings) -> ReasoningProvider:
    """Create the reasoning provider named by settings.reasoning_provider.

    Logs a warning if the provider is not available (e.g., missing API key).

    Raises:
        ValueError: If configured provider is unknown
    """
    provider_name = settings.reasoning_provider
    provider = ProviderRegistry.get_provider_class(provider_name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Reasoning provider '{provider_name}' is not fully available. "
            f"Check configuration (e.g., API keys, server URL)."
        )

    logger.info(f"Created reasoning provider: {provider_name}")
    return provider
