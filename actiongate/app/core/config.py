import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_TRUSTED_IP_HEADERS = [
    "cf-connecting-ip",
    "true-client-ip",
    "x-real-ip",
    "x-forwarded-for",
]


def _parse_header_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip().lower() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate a plain comma/space separated value so a
    # misconfigured deployment does not crash at startup.
    if raw.startswith(("[", '"')):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip().lower() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    # Order is significant (highest trust first); deduplicate but keep it.
    seen: set[str] = set()
    headers: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        name = part.strip().lower()
        if not name or name in seen:
            continue
        seen.add(name)
        headers.append(name)
    return headers


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | json

    # Cookie / form field names shared with the page renderers
    session_cookie_name: str = "session_token"
    csrf_session_cookie_name: str = "csrf_session"
    csrf_cookie_name: str = "csrf_token"
    csrf_form_field: str = "csrf_token"
    csrf_header_name: str = "X-CSRF-Token"

    # CSRF token lifetime, on the order of an authenticated session (24h)
    csrf_token_ttl_seconds: int = 24 * 60 * 60
    csrf_cookie_secure: bool = False  # Enable behind HTTPS / in production

    # Upper bound on sessions holding a CSRF token; oldest evicted beyond it
    csrf_max_sessions: int = 100_000

    # Proxy headers consulted for the client address, highest trust first.
    # Use NoDecode so a plain "x-real-ip,x-forwarded-for" value doesn't crash
    # JSON parsing at startup.
    trusted_ip_headers: Annotated[list[str], NoDecode] = list(
        DEFAULT_TRUSTED_IP_HEADERS
    )

    # Anonymous fallback identifiers coalesce callers per time bucket
    anon_bucket_seconds: int = 300

    # Store lock acquisition timeout; failure fails closed
    lock_timeout_seconds: float = 1.0

    # Periodic compaction of expired counters/tokens (0 = opportunistic only)
    cleanup_interval_seconds: int = 0

    # Bearer token for the observability and maintenance endpoints
    admin_token: str = ""

    @field_validator("trusted_ip_headers", mode="before")
    @classmethod
    def decode_trusted_ip_headers(cls, v: Any) -> list[str]:
        headers = _parse_header_list(v)
        if not headers:
            raise ValueError("trusted_ip_headers must name at least one header")
        return headers

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        return v

    @field_validator("csrf_token_ttl_seconds", "anon_bucket_seconds", "csrf_max_sessions")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate durations and sizes are positive."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("lock_timeout_seconds")
    @classmethod
    def validate_lock_timeout(cls, v: float) -> float:
        """Validate lock timeout is positive."""
        if v <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        return v

    @field_validator("cleanup_interval_seconds")
    @classmethod
    def validate_cleanup_interval(cls, v: int) -> int:
        """Validate cleanup interval is disabled or reasonable."""
        if v < 0:
            raise ValueError("cleanup_interval_seconds cannot be negative")
        if 0 < v < 10:
            raise ValueError(
                "cleanup_interval_seconds should be at least 10 seconds"
            )
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
