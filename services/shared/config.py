"""Shared configuration management for the reconciliation service.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug

    The rate limit options also accept the unprefixed API_RATE_LIMIT_REQUESTS and
    API_RATE_LIMIT_WINDOW_MS names used by existing deployments.
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="contract-reconciliation-service",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="1.0.0",
        description="Service version",
    )

    # Feature toggles
    ai_features_enabled: bool = Field(
        default=True,
        description="Operational switch for the analysis endpoints (503 when off)",
    )
    mock_mode: bool = Field(
        default=False,
        description="Substitute the deterministic mock for the extraction provider",
    )

    # Extraction provider configuration
    extraction_provider: Literal["openai", "ollama", "mock"] = Field(
        default="openai",
        description="Extraction provider: openai (cloud vision API), ollama (self-hosted), mock",
    )
    extraction_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Upper bound for a single extraction call",
    )
    openai_model: str = Field(
        default="gpt-4o",
        description="OpenAI vision model used for document extraction",
    )
    openai_max_tokens: int = Field(default=2000, gt=0)
    openai_temperature: float = Field(default=0.1, ge=0, le=2)

    # Ollama configuration (for extraction_provider="ollama")
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="llava:13b",
        description="Vision-capable Ollama model (e.g., llava:13b, llama3.2-vision)",
    )

    # Request governance
    rate_limit_requests: int = Field(
        default=10,
        gt=0,
        validation_alias=AliasChoices("APP_RATE_LIMIT_REQUESTS", "API_RATE_LIMIT_REQUESTS"),
        description="Requests allowed per client identity per window",
    )
    rate_limit_window_ms: int = Field(
        default=60000,
        gt=0,
        validation_alias=AliasChoices("APP_RATE_LIMIT_WINDOW_MS", "API_RATE_LIMIT_WINDOW_MS"),
        description="Rate limit window length in milliseconds",
    )
    daily_cost_limit: Decimal = Field(
        default=Decimal("100"),
        description="Advisory daily AI spend ceiling in USD",
    )
    daily_request_limit: int = Field(
        default=1000,
        description="Advisory daily AI request ceiling",
    )

    # Document intake
    max_image_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Largest accepted inline document after base64 decoding",
    )
    pdf_render_dpi: int = Field(
        default=144,
        gt=0,
        description="Resolution used when rendering the first PDF page",
    )

    # Reconciliation thresholds
    price_tolerance_percent: Decimal = Field(
        default=Decimal("1"),
        description="Unit price deviation tolerated before a price discrepancy",
    )
    severity_medium_percent: Decimal = Field(
        default=Decimal("5"),
        description="Relative deviation at which severity becomes medium",
    )
    severity_high_percent: Decimal = Field(
        default=Decimal("15"),
        description="Relative deviation above which severity becomes high",
    )
    price_impact_floor: Decimal = Field(
        default=Decimal("100"),
        description="Line overcharges with a smaller total impact stay low severity",
    )
    high_amount_threshold: Decimal = Field(
        default=Decimal("1000"),
        description="Unauthorized line totals above this amount are high severity",
    )
    tax_tolerance_percent: Decimal = Field(
        default=Decimal("1"),
        description="Relative tolerance for tax amount checks",
    )
    amount_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        description="Absolute tolerance for arithmetic checks",
    )
    confidence_review_threshold: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Results below this confidence are flagged for human review",
    )
    matching_strategy: Literal["exact", "substring", "similarity"] = Field(
        default="substring",
        description="Most permissive item matching strategy to fall back to",
    )
    similarity_threshold: float = Field(
        default=0.8,
        ge=0,
        le=1,
        description="Minimum difflib ratio for the similarity matcher",
    )

    @model_validator(mode="after")
    def _check_severity_bands(self) -> "Settings":
        if self.severity_medium_percent > self.severity_high_percent:
            raise ValueError("severity_medium_percent must not exceed severity_high_percent")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
