"""Factory for creating extraction providers based on configuration.

Implements Factory Pattern for provider selection with registry pattern for extensibility.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

from services.extraction.base import ExtractionProvider
from services.extraction.mock_provider import MockExtractionProvider
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available extraction providers.

    Maintains a mapping of provider names to their implementation classes.
    Supports runtime registration of new providers.
    """

    _providers: dict[str, type[ExtractionProvider]] = {
        "openai": OpenAIExtractionProvider,
        "ollama": OllamaExtractionProvider,
        "mock": MockExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        """Register a new provider.

        Args:
            name: Provider identifier (must match Settings.extraction_provider)
            provider_class: Provider class implementing ExtractionProvider interface
        """
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Get provider class by name.

        Raises:
            ValueError: If provider not found in registry
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(
                f"Unknown extraction provider: '{name}'. Available providers: {available}"
            )
        return cls._providers[name]

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Create the extraction provider selected by configuration.

    ``mock_mode`` always selects the deterministic mock. Outside development an
    unavailable provider is returned as-is (its calls fail and are reported);
    in development it is replaced by the mock with a warning.

    Args:
        settings: Application settings

    Returns:
        Configured extraction provider instance

    Raises:
        ValueError: If configured provider is unknown

    Example:
        >>> settings = Settings(extraction_provider="mock")
        >>> provider = create_extraction_provider(settings)
        >>> result = provider.extract_invoice("data:image/png;base64,...")
    """
    provider_name = "mock" if settings.mock_mode else settings.extraction_provider
    provider_class = ProviderRegistry.get_provider_class(provider_name)
    provider = provider_class(settings)

    if not provider.is_available():
        if settings.is_development:
            logger.warning(
                f"Extraction provider '{provider_name}' is not available; "
                f"falling back to mock provider in development"
            )
            provider = MockExtractionProvider(settings)
        else:
            logger.warning(
                f"Extraction provider '{provider_name}' is not fully available. "
                f"Check configuration (e.g., API keys, Ollama server)."
            )

    logger.info(f"Created extraction provider: {provider.provider_name}")
    return provider
