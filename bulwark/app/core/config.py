import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_SENSITIVE_HEADERS = [
    "authorization",
    "cookie",
    "x-api-key",
    "api-key",
    "password",
    "secret",
]

DEFAULT_PERMISSIONS_POLICY = (
    "accelerometer=(), camera=(), geolocation=(), gyroscope=(), "
    "magnetometer=(), microphone=(), payment=(), usb=()"
)


def _split_items(raw: Any) -> list[str]:
    if isinstance(raw, (list, tuple, set, frozenset)):
        return [str(item) for item in raw]

    text = str(raw).strip()
    if text.startswith(("[", '"')):
        # JSON array or JSON string; anything unparsable falls through
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = text
        if isinstance(decoded, list):
            return [str(item) for item in decoded]
        text = str(decoded)
    return re.split(r"[,\s]+", text)


def _parse_list(raw: Any) -> list[str]:
    """Parse a list setting given as a list, a JSON array or a comma list.

    Blank entries are dropped and duplicates removed, keeping first-seen order.
    """
    if raw is None:
        return []
    cleaned = (item.strip() for item in _split_items(raw))
    return list(dict.fromkeys(item for item in cleaned if item))


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    List settings accept a JSON array or a comma separated string.
    """

    # Deployment posture - "development" relaxes HSTS and enables success logs
    environment: str = "production"

    # Debug mode - enables uvicorn reload when run as a module
    debug: bool = False

    # Rate limiting settings
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: float = 60.0
    rate_limit_cleanup_interval_seconds: float = 60.0
    rate_limit_grace_seconds: float = 300.0  # Idle time past the window before eviction

    # Request validation settings
    max_request_size: int = 1_048_576  # 1MB
    max_url_length: int = 2048
    max_header_value_length: int = 4096
    max_json_depth: int = 32

    # API key authentication settings
    api_keys: Annotated[list[str], NoDecode] = []
    api_key_header: str = "X-API-Key"
    auth_excluded_paths: Annotated[list[str], NoDecode] = ["/health"]
    auth_failure_delay_seconds: float = 2.0

    # Security audit settings (None = derived from environment)
    audit_log_successful_requests: bool | None = None
    audit_log_request_headers: bool = True
    audit_log_request_body: bool = True
    audit_max_body_size: int = 4096
    audit_sensitive_headers: Annotated[list[str], NoDecode] = DEFAULT_SENSITIVE_HEADERS

    # Security headers settings (None = derived from environment)
    headers_enable_hsts: bool | None = None
    headers_hsts_max_age: int = 31_536_000  # 1 year
    headers_prevent_caching: bool = False
    headers_frame_options: str = "DENY"
    headers_referrer_policy: str = "strict-origin-when-cross-origin"
    headers_content_security_policy: str = "default-src 'none'; frame-ancestors 'none';"
    headers_permissions_policy: str = DEFAULT_PERMISSIONS_POLICY

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Server settings (used by `python -m bulwark.app.main`)
    host: str = "127.0.0.1"
    port: int = 5001

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() in ("development", "dev", "local")

    @property
    def log_successful_requests(self) -> bool:
        if self.audit_log_successful_requests is None:
            return self.is_development
        return self.audit_log_successful_requests

    @property
    def enable_hsts(self) -> bool:
        if self.headers_enable_hsts is None:
            return not self.is_development
        return self.headers_enable_hsts

    @field_validator("api_keys", "auth_excluded_paths", mode="before")
    @classmethod
    def decode_list(cls, v: Any) -> list[str]:
        return _parse_list(v)

    @field_validator("audit_sensitive_headers", mode="before")
    @classmethod
    def decode_sensitive_headers(cls, v: Any) -> list[str]:
        return [name.lower() for name in _parse_list(v)]

    @field_validator(
        "rate_limit_max_requests",
        "max_request_size",
        "max_url_length",
        "max_header_value_length",
        "max_json_depth",
        "audit_max_body_size",
    )
    @classmethod
    def validate_limit_positive(cls, v: int) -> int:
        """Validate size and count limits are positive."""
        if v < 1:
            raise ValueError("limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_window_seconds",
        "rate_limit_cleanup_interval_seconds",
    )
    @classmethod
    def validate_interval_positive(cls, v: float) -> float:
        """Validate time windows are positive."""
        if v <= 0:
            raise ValueError("time windows must be positive")
        return v

    @field_validator("rate_limit_grace_seconds", "auth_failure_delay_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must not be negative")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
