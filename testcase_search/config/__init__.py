"""
Configuration package for application settings.

This package exposes the Settings class and utility functions for centralized
environment-driven configuration. All application settings should be accessed
through this module.

Usage:
    from testcase_search.config import Settings, get_settings, validate_config

    # Get settings singleton (cached, preferred method)
    settings = get_settings()
    print(settings.pinecone_keyword_index_name)

    # Create new instance (useful for testing)
    settings = Settings(default_keyword_weight=0.7)

    # Validate configuration on startup
    result = validate_config()
    for warning in result["warnings"]:
        print(f"Warning: {warning}")
"""

from testcase_search.config.settings import (
    DEFAULT_FIELD_BOOSTS,
    DEFAULT_IDENTIFIER_PATTERN,
    Settings,
    detect_environment,
    get_environment,
    get_settings,
    validate_config,
)

__all__ = [
    "Settings",
    "get_settings",
    "validate_config",
    "get_environment",
    "detect_environment",
    "DEFAULT_FIELD_BOOSTS",
    "DEFAULT_IDENTIFIER_PATTERN",
]
