"""Shared configuration management for the posting engine.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_TEMPLATE_CONFIDENCE_THRESHOLD=90
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
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
        default="receipt-posting-engine",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Reasoning service configuration
    reasoning_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Reasoning service: openai (cloud API), ollama (self-hosted vision LLM)",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used for OCR, template verdicts and structuring",
    )
    openai_timeout_seconds: float = Field(
        default=120.0,
        description="Per-call timeout for OpenAI requests",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5vl:7b",
        description="Ollama vision model (e.g., qwen2.5vl:7b, llava:13b)",
    )
    ollama_timeout_seconds: float = Field(
        default=120.0,
        description="Per-call timeout for Ollama requests (LLMs can be slow)",
    )

    # OCR configuration
    ocr_provider: Literal["reasoning", "tesseract"] = Field(
        default="reasoning",
        description="Text extraction: reasoning (vision model via governor), tesseract (local CPU)",
    )

    # Rate governor (80% of a 15 requests/minute quota)
    rate_limit_capacity: int = Field(
        default=12,
        ge=1,
        description="Token bucket capacity shared by every reasoning-service call",
    )
    rate_limit_refill_tokens: int = Field(
        default=1,
        ge=1,
        description="Tokens added per refill interval",
    )
    rate_limit_refill_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Refill interval of the token bucket",
    )

    # Retry policy
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum attempts per reasoning-service call",
    )
    retry_initial_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Backoff delay before the second attempt",
    )
    retry_max_delay_seconds: float = Field(
        default=8.0,
        ge=0,
        description="Backoff delay cap (rate-limited waits are doubled after capping)",
    )
    retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1,
        description="Exponential backoff multiplier",
    )

    # Reference data cache
    reference_cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Maximum age of a tenant's reference data snapshot",
    )
    allow_stale_reference_data: bool = Field(
        default=False,
        description="Serve the previous snapshot when the backing store is unreachable",
    )

    # Decision thresholds
    template_confidence_threshold: float = Field(
        default=85.0,
        ge=0,
        le=100,
        description="Template confidence at or above which template-only mode is used",
    )
    template_matching_strategy: Literal["local", "reasoning"] = Field(
        default="local",
        description="local (lexical/semantic matcher), reasoning (verdict from reasoning service)",
    )
    free_mode_template_baseline: float | None = Field(
        default=None,
        ge=0,
        le=100,
        description="Template factor credited to reference-data-driven free analysis",
    )
    party_match_threshold: float = Field(
        default=70.0,
        ge=0,
        le=100,
        description="Minimum name similarity for a counterparty match",
    )
    min_extraction_confidence: float = Field(
        default=70.0,
        ge=0,
        le=100,
        description="Minimum per-image text extraction confidence",
    )
    min_handwriting_confidence: float = Field(
        default=85.0,
        ge=0,
        le=100,
        description="Minimum confidence for images containing handwriting",
    )
    balance_tolerance: float = Field(
        default=0.01,
        ge=0,
        description="Allowed absolute difference between total debit and total credit",
    )

    # Orchestration
    request_deadline_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Wall-clock deadline for one analysis request",
    )
    ocr_max_workers: int = Field(
        default=3,
        ge=1,
        description="Concurrent text extraction calls per request",
    )

    # API
    max_image_bytes: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Largest accepted image, inline or fetched",
    )
    image_fetch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for downloading images given by URI",
    )

    # Reference store
    reference_store: Literal["memory", "object_storage"] = Field(
        default="memory",
        description="Backing store for tenant reference data",
    )

    # Storage configuration (S3-compatible object storage)
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="reference-data",
        description="Bucket holding one JSON document per tenant collection",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
