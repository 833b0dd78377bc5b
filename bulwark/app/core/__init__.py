"""Core utilities for the bulwark application."""

from bulwark.app.core.config import Settings, settings
from bulwark.app.core.logging import get_log_context, get_logger, setup_logging
from bulwark.app.core.security import CredentialSet, generate_api_key, hash_api_key

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "CredentialSet",
    "generate_api_key",
    "hash_api_key",
]
