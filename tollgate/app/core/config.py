import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_string_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set, frozenset)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but accept plain comma separated values so that
    # RATE_LIMIT_METHODS=GET,POST works from a shell.
    if raw.startswith(("[", '"')):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    # Deduplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part or part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_per_second: float = 1.0
    rate_limit_burst: int = 5
    rate_limit_methods: Annotated[list[str], NoDecode] = []  # Empty = all methods
    rate_limit_ip_lookups: Annotated[list[str], NoDecode] = [
        "RemoteAddr",
        "X-Forwarded-For",
        "X-Real-IP",
    ]
    rate_limit_headers: dict[str, list[str]] = {}  # JSON: {"X-Api-Key": []}
    rate_limit_basic_auth_users: Annotated[list[str], NoDecode] = []
    rate_limit_context_values: dict[str, list[str]] = {}
    rate_limit_ignore_path: bool = False
    rate_limit_ipv6_prefix_length: int = 64
    rate_limit_entry_ttl_seconds: float = 87600 * 3600.0  # 10 years
    rate_limit_sweep_interval_seconds: float = 60.0
    rate_limit_status_code: int = 429
    rate_limit_message: str = "You have reached maximum request limit."
    rate_limit_content_type: str = "text/plain; charset=utf-8"
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the counter store is unavailable
    )

    # Redis settings (optional, switches to the fixed-window counter backend)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    @field_validator(
        "rate_limit_methods",
        "rate_limit_ip_lookups",
        "rate_limit_basic_auth_users",
        mode="before",
    )
    @classmethod
    def decode_string_list(cls, v: Any) -> list[str]:
        return _parse_string_list(v)

    @field_validator("rate_limit_methods")
    @classmethod
    def normalize_methods(cls, v: list[str]) -> list[str]:
        return [m.upper() for m in v]

    @field_validator("rate_limit_per_second")
    @classmethod
    def validate_rate_positive(cls, v: float) -> float:
        """Validate the sustained rate is positive."""
        if v <= 0:
            raise ValueError("rate_limit_per_second must be positive")
        return v

    @field_validator("rate_limit_burst")
    @classmethod
    def validate_burst_positive(cls, v: int) -> int:
        """Validate burst allows at least one request."""
        if v < 1:
            raise ValueError("rate_limit_burst must be at least 1")
        return v

    @field_validator("rate_limit_status_code")
    @classmethod
    def validate_status_code(cls, v: int) -> int:
        if not 100 <= v <= 599:
            raise ValueError("rate_limit_status_code must be a valid HTTP status")
        return v

    @field_validator("rate_limit_ipv6_prefix_length")
    @classmethod
    def validate_prefix_length(cls, v: int) -> int:
        if not 0 <= v <= 128:
            raise ValueError("rate_limit_ipv6_prefix_length must be within 0..128")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
