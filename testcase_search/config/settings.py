"""
Pydantic settings for the test case search service.

This module centralizes environment-driven configuration. It uses Pydantic
Settings v2 with SettingsConfigDict to load environment variables from .env
files and the process environment.

The configuration supports two environments:
- local: Development environment (console logs, credentials from .env)
- aws: Production environment (JSON logs, IAM role credentials)

Auto-detection logic determines the environment based on:
1. Explicit ENVIRONMENT variable (preferred)
2. AWS metadata availability (for EC2/ECS/App Runner)

Usage:
    from testcase_search.config.settings import Settings, get_settings, validate_config

    # Get settings singleton (cached)
    settings = get_settings()

    # Validate all configuration on startup
    validate_config()

    # Access settings
    print(settings.pinecone_vector_index_name)
    print(settings.default_keyword_weight)
"""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from typing import Any

from pydantic import (
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Default per-field boosts for the keyword index
DEFAULT_FIELD_BOOSTS: dict[str, float] = {
    "id": 10.0,
    "title": 5.0,
    "module": 3.0,
    "description": 2.0,
    "expectedResults": 1.5,
    "steps": 1.0,
    "preRequisites": 0.8,
}

# Ticket-style identifiers such as TC-101 or JIRA-2231
DEFAULT_IDENTIFIER_PATTERN = r"\b[A-Za-z]{2,10}-\d+\b"

VALID_DEDUPE_MEASURES = frozenset({"jaccard", "sequence"})
VALID_NORMALIZATION_MODES = frozenset({"auto", "minmax"})


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for local development. In production,
    sensitive values should be provided via environment variables set by the
    deployment platform.

    Attributes are organized into logical groups:
    - Environment Configuration
    - AWS Configuration
    - AWS Bedrock Configuration
    - Vector Store Configuration
    - Query Preprocessing Configuration
    - Retrieval Configuration
    - Fusion and Reranking Configuration
    - Deduplication and Summarization Configuration
    - Embedding Job Configuration
    - Job Retention Configuration
    - Application Configuration
    - Rate Limiting Configuration
    - Logging Configuration
    """

    # =========================================================================
    # Environment Configuration
    # =========================================================================
    environment: str = Field(
        default="local",
        description=(
            "Runtime environment identifier. Use 'local' for development, "
            "'aws' for production. This affects log rendering."
        ),
    )

    debug: bool = Field(
        default=True,
        description="Enable debug mode. Set to False in production.",
    )

    # =========================================================================
    # AWS Configuration
    # =========================================================================
    aws_region: str = Field(
        default="us-east-1",
        description="AWS region for Bedrock calls.",
    )

    aws_access_key_id: SecretStr | None = Field(
        default=None,
        description=(
            "AWS access key ID. Required for local development. "
            "In production, use IAM roles instead."
        ),
    )

    aws_secret_access_key: SecretStr | None = Field(
        default=None,
        description=(
            "AWS secret access key. Required for local development. "
            "In production, use IAM roles instead."
        ),
    )

    # =========================================================================
    # AWS Bedrock Configuration
    # =========================================================================
    bedrock_embedding_model_id: str = Field(
        default="amazon.titan-embed-text-v2:0",
        description="Bedrock model ID for generating text embeddings.",
    )

    bedrock_relevance_model_id: str = Field(
        default="amazon.nova-lite-v1:0",
        description=(
            "Bedrock model ID used to score candidate relevance and to "
            "summarize long descriptions."
        ),
    )

    embedding_dimension: int = Field(
        default=1024,
        ge=1,
        description="Dimensionality of the dense vector index.",
    )

    embedding_cost_per_1k_tokens: float = Field(
        default=0.00002,
        ge=0.0,
        description="USD cost estimate per 1K embedding input tokens.",
    )

    relevance_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=120.0,
        description="Deadline for a single relevance or summary call (seconds).",
    )

    # =========================================================================
    # Vector Store Configuration
    # =========================================================================
    pinecone_api_key: SecretStr | None = Field(
        default=None,
        description="Pinecone API key for index operations.",
    )

    pinecone_vector_index_name: str = Field(
        default="testcases-vector",
        description="Pinecone dense index (cosine similarity).",
    )

    pinecone_keyword_index_name: str = Field(
        default="testcases-keyword",
        description="Pinecone sparse keyword index (dot product).",
    )

    pinecone_cloud: str = Field(
        default="aws",
        description="Cloud provider for serverless index creation.",
    )

    pinecone_environment: str = Field(
        default="us-east-1",
        description="Pinecone region for serverless index creation.",
    )

    # =========================================================================
    # Query Preprocessing Configuration
    # =========================================================================
    expansion_dictionary_path: str | None = Field(
        default=None,
        description=(
            "Path to a JSON file with 'abbreviations' and 'synonyms' maps. "
            "The built-in test-domain dictionary is used when unset."
        ),
    )

    identifier_pattern: str = Field(
        default=DEFAULT_IDENTIFIER_PATTERN,
        description="Regex matching literal identifiers kept verbatim in variants.",
    )

    preserve_identifiers: bool = Field(
        default=True,
        description="Re-attach extracted identifiers verbatim to every variant.",
    )

    max_synonym_variations: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Maximum number of synonym variants per query.",
    )

    max_query_length: int = Field(
        default=500,
        ge=1,
        description="Maximum accepted raw query length (characters).",
    )

    # =========================================================================
    # Retrieval Configuration
    # =========================================================================
    max_top_n: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Upper bound on candidates requested from one retriever call.",
    )

    default_top_n: int = Field(
        default=20,
        ge=1,
        description="Candidates requested per retriever call when unspecified.",
    )

    retriever_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=60.0,
        description="Deadline for one retriever call (seconds).",
    )

    retriever_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per retriever call before surfacing the failure.",
    )

    retry_min_wait_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Minimum exponential backoff wait (seconds).",
    )

    retry_max_wait_seconds: float = Field(
        default=8.0,
        ge=0.0,
        description="Maximum exponential backoff wait (seconds).",
    )

    max_concurrent_searches: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Concurrent retriever calls per search request.",
    )

    field_boosts: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_FIELD_BOOSTS),
        description="Keyword index per-field boost table (JSON in env).",
    )

    fuzzy_max_edits: int = Field(
        default=1,
        ge=0,
        le=1,
        description="Fuzzy matching tolerance (0 disables fuzzy features).",
    )

    fuzzy_prefix_length: int = Field(
        default=2,
        ge=0,
        description="Leading characters that must match exactly for fuzzy hits.",
    )

    fuzzy_weight: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Weight of fuzzy features relative to exact term features.",
    )

    # =========================================================================
    # Fusion and Reranking Configuration
    # =========================================================================
    default_keyword_weight: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Hybrid keyword weight; the vector weight is 1 minus this.",
    )

    normalization_mode: str = Field(
        default="auto",
        description=(
            "'minmax' always min-max scales each list; 'auto' keeps lists "
            "already within [0, 1] and scales the rest."
        ),
    )

    rerank_max_candidates: int = Field(
        default=20,
        ge=1,
        le=50,
        description="Maximum candidates sent to the relevance service.",
    )

    rerank_top_k: int = Field(
        default=10,
        ge=1,
        description="Fused candidates re-ranked when a search asks for it.",
    )

    rerank_concurrency: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Concurrent relevance calls per rerank.",
    )

    # =========================================================================
    # Deduplication and Summarization Configuration
    # =========================================================================
    dedupe_enabled: bool = Field(
        default=True,
        description="Drop near-duplicate results after fusion.",
    )

    dedupe_measure: str = Field(
        default="jaccard",
        description="Similarity measure: 'jaccard' or 'sequence'.",
    )

    dedupe_threshold: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Similarity above which two results are duplicates.",
    )

    summarize_min_chars: int = Field(
        default=400,
        ge=0,
        description="Descriptions shorter than this are kept verbatim.",
    )

    summarize_max_chars: int = Field(
        default=600,
        ge=50,
        description="Truncation length when the summary service fails.",
    )

    # =========================================================================
    # Embedding Job Configuration
    # =========================================================================
    embedding_batch_size: int = Field(
        default=25,
        ge=1,
        description="Documents per embedding chunk.",
    )

    embedding_max_batch_size: int = Field(
        default=100,
        ge=1,
        description="Hard cap on documents per embedding chunk.",
    )

    embedding_max_concurrent_chunks: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Embedding chunks processed concurrently per job.",
    )

    embedding_batch_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Delay between chunk starts to avoid provider throttling.",
    )

    embedding_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per chunk before the job is marked failed.",
    )

    # =========================================================================
    # Job Retention Configuration
    # =========================================================================
    job_completed_retention_seconds: float = Field(
        default=3600.0,
        ge=0.0,
        description="How long completed jobs stay pollable (seconds).",
    )

    job_failed_retention_seconds: float = Field(
        default=86400.0,
        ge=0.0,
        description="How long failed jobs stay available for diagnostics.",
    )

    job_purge_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Interval of the background purge of expired jobs.",
    )

    # =========================================================================
    # Application Configuration
    # =========================================================================
    backend_host: str = Field(
        default="0.0.0.0",
        description="Host address for the server to bind to.",
    )

    backend_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port number for the server.",
    )

    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins.",
    )

    # =========================================================================
    # Rate Limiting Configuration
    # =========================================================================
    rate_limit_per_minute: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Maximum search requests per minute per IP address.",
    )

    # =========================================================================
    # Logging Configuration
    # =========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL.",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        validate_default=True,
        env_prefix="",
        env_nested_delimiter="__",
    )

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level '{v}'. Must be one of: {valid_levels}")
        return upper_v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is either 'local' or 'aws'."""
        lower_v = v.lower()
        if lower_v not in {"local", "aws"}:
            raise ValueError(f"Invalid environment '{v}'. Must be 'local' or 'aws'.")
        return lower_v

    @field_validator("identifier_pattern")
    @classmethod
    def validate_identifier_pattern(cls, v: str) -> str:
        """Validate the identifier pattern is a compilable regex."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid identifier_pattern '{v}': {e}") from e
        return v

    @field_validator("dedupe_measure")
    @classmethod
    def validate_dedupe_measure(cls, v: str) -> str:
        """Validate the duplicate similarity measure is supported."""
        lower_v = v.lower()
        if lower_v not in VALID_DEDUPE_MEASURES:
            raise ValueError(
                f"Invalid dedupe_measure '{v}'. Must be one of: "
                f"{sorted(VALID_DEDUPE_MEASURES)}"
            )
        return lower_v

    @field_validator("normalization_mode")
    @classmethod
    def validate_normalization_mode(cls, v: str) -> str:
        """Validate the score normalization mode is supported."""
        lower_v = v.lower()
        if lower_v not in VALID_NORMALIZATION_MODES:
            raise ValueError(
                f"Invalid normalization_mode '{v}'. Must be one of: "
                f"{sorted(VALID_NORMALIZATION_MODES)}"
            )
        return lower_v

    @field_validator("field_boosts")
    @classmethod
    def validate_field_boosts(cls, v: dict[str, float]) -> dict[str, float]:
        """Validate every boost is positive."""
        if not v:
            raise ValueError("field_boosts must contain at least one field")
        for field, boost in v.items():
            if boost <= 0:
                raise ValueError(f"Boost for field '{field}' must be positive")
        return v

    @model_validator(mode="after")
    def validate_batch_sizes(self) -> "Settings":
        """Validate chunk size and retry wait bounds are consistent."""
        if self.embedding_batch_size > self.embedding_max_batch_size:
            raise ValueError(
                "EMBEDDING_BATCH_SIZE must not exceed EMBEDDING_MAX_BATCH_SIZE "
                f"({self.embedding_batch_size} > {self.embedding_max_batch_size})"
            )
        if self.retry_min_wait_seconds > self.retry_max_wait_seconds:
            raise ValueError(
                "RETRY_MIN_WAIT_SECONDS must not exceed RETRY_MAX_WAIT_SECONDS"
            )
        return self

    @model_validator(mode="after")
    def validate_aws_credentials(self) -> "Settings":
        """
        Validate AWS credentials are provided for local development.

        In production (environment='aws'), credentials should come from
        IAM roles, so they are not required in environment variables.
        """
        if self.environment == "local":
            if not self.aws_access_key_id or not self.aws_secret_access_key:
                logger.warning(
                    "AWS credentials not found in environment. "
                    "Embedding and relevance calls will fail."
                )
        return self

    # =========================================================================
    # Helper Methods
    # =========================================================================
    def get_cors_origins_list(self) -> list[str]:
        """
        Get CORS origins as a list.

        Parses the comma-separated cors_origins string into a list.
        """
        return [
            origin.strip() for origin in self.cors_origins.split(",") if origin.strip()
        ]

    def is_local(self) -> bool:
        """Check if running in local development environment."""
        return self.environment == "local"

    def is_aws(self) -> bool:
        """Check if running in AWS production environment."""
        return self.environment == "aws"


def detect_environment() -> str:
    """
    Auto-detect the runtime environment.

    Detection logic:
    1. Check ENVIRONMENT variable (explicit override)
    2. Check for AWS metadata service availability (EC2/ECS/App Runner)
    3. Default to 'local'

    Returns:
        str: Either 'local' or 'aws'
    """
    env = os.environ.get("ENVIRONMENT", "").lower()
    if env in {"local", "aws"}:
        return env

    aws_indicators = [
        "AWS_EXECUTION_ENV",  # Lambda, App Runner
        "ECS_CONTAINER_METADATA_URI",  # ECS
        "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI",  # ECS with IAM role
    ]

    for indicator in aws_indicators:
        if os.environ.get(indicator):
            logger.info(f"Detected AWS environment via {indicator}")
            return "aws"

    return "local"


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    This function is cached to ensure only one Settings instance is created.
    The instance is created lazily on first access.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()


def validate_config(settings: Settings | None = None) -> dict[str, Any]:
    """
    Validate all configuration settings on startup.

    Args:
        settings: Settings to validate. Defaults to the cached singleton.

    Returns:
        dict: Validation result with status and any warnings.

    Raises:
        ValueError: If critical configuration is missing or invalid.
    """
    warnings: list[str] = []
    errors: list[str] = []

    if settings is None:
        try:
            settings = get_settings()
        except Exception as e:
            errors.append(f"Failed to load settings: {e}")
            raise ValueError(f"Configuration validation failed: {errors}") from e

    if settings.is_aws():
        if settings.debug:
            warnings.append(
                "DEBUG mode is enabled in AWS environment. "
                "Consider setting DEBUG=false for production."
            )
        if not settings.pinecone_api_key:
            errors.append("PINECONE_API_KEY is required in the AWS environment.")
    elif not settings.pinecone_api_key:
        warnings.append(
            "PINECONE_API_KEY not set. Search and embedding jobs will fail "
            "until it is configured."
        )

    if settings.pinecone_vector_index_name == settings.pinecone_keyword_index_name:
        errors.append(
            "PINECONE_VECTOR_INDEX_NAME and PINECONE_KEYWORD_INDEX_NAME must differ."
        )

    if settings.expansion_dictionary_path and not os.path.isfile(
        settings.expansion_dictionary_path
    ):
        errors.append(
            f"EXPANSION_DICTIONARY_PATH '{settings.expansion_dictionary_path}' "
            "does not exist."
        )

    if settings.rerank_top_k > settings.rerank_max_candidates:
        warnings.append(
            f"RERANK_TOP_K ({settings.rerank_top_k}) exceeds "
            f"RERANK_MAX_CANDIDATES ({settings.rerank_max_candidates}); "
            "reranking will be capped."
        )

    for warning in warnings:
        logger.warning(f"Configuration warning: {warning}")

    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ValueError(f"Configuration validation failed: {errors}")

    logger.info(
        f"Configuration validated successfully. Environment: {settings.environment}"
    )

    return {
        "status": "ok",
        "environment": settings.environment,
        "warnings": warnings,
        "settings_summary": {
            "debug": settings.debug,
            "aws_region": settings.aws_region,
            "vector_index": settings.pinecone_vector_index_name,
            "keyword_index": settings.pinecone_keyword_index_name,
            "default_keyword_weight": settings.default_keyword_weight,
            "log_level": settings.log_level,
        },
    }


def get_environment() -> str:
    """
    Get the current runtime environment.

    Returns:
        str: Either 'local' or 'aws'
    """
    return get_settings().environment


# Export public API
__all__ = [
    "Settings",
    "get_settings",
    "validate_config",
    "get_environment",
    "detect_environment",
    "DEFAULT_FIELD_BOOSTS",
    "DEFAULT_IDENTIFIER_PATTERN",
]
