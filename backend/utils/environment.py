"""
Environment Configuration Utility

ENVIRONMENT values:
- production: destructive or bootstrap scripts require explicit confirmation
- development: local defaults
- test: automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}


def get_environment() -> str:
    """Current environment (defaults to development)."""
    env = os.environ.get("ENVIRONMENT", os.environ.get("APP_ENV", "development")).lower()
    if env not in VALID_ENVIRONMENTS:
        logging.warning(f"Invalid ENVIRONMENT '{env}', defaulting to 'development'")
        return "development"
    return env


ENVIRONMENT = get_environment()


def is_production() -> bool:
    """Check if running in production environment."""
    return get_environment() == "production"
