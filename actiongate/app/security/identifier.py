"""Caller identification for rate limiting.

Resolution walks a fixed ladder of trust signals and always produces an
identifier, getting coarser rather than failing:

1. a valid session credential      -> ``user:<digest>``
2. a validated proxy-header address -> ``ip:<address>``
3. user-agent hash per time bucket  -> ``anon:<hash>:<bucket>``
4. header inspection blew up        -> ``fallback:<bucket>:<random>``
"""

import hashlib
import ipaddress
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional, Sequence

from actiongate.app.core.config import settings
from actiongate.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

MAX_SESSION_TOKEN_LENGTH = 512
_SESSION_TOKEN_RE = re.compile(r"^[A-Za-z0-9._~+/=-]+$")


class IdentifierTier(str, Enum):
    """Which resolution rule produced an identifier."""
    SESSION = "session"
    VALIDATED_IP = "validated_ip"
    ANONYMOUS_FALLBACK = "anonymous_fallback"
    RANDOM_FALLBACK = "random_fallback"


@dataclass(frozen=True)
class ResolvedIdentifier:
    """Tagged identifier result."""
    value: str
    tier: IdentifierTier
    source_header: Optional[str] = None

    @property
    def degraded(self) -> bool:
        """True when resolution fell through to a coarse fallback tier."""
        return self.tier in (
            IdentifierTier.ANONYMOUS_FALLBACK,
            IdentifierTier.RANDOM_FALLBACK,
        )

    def __str__(self) -> str:
        return self.value


def parse_ip(value: Optional[str]) -> Optional[str]:
    """Strictly validate an IPv4/IPv6 literal and return its canonical form.

    Zone identifiers (``fe80::1%eth0``), ports and anything else that isn't a
    bare address are rejected.
    """
    if not value:
        return None
    candidate = value.strip()
    if not candidate or "%" in candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def hash_value(value: str, length: int = 32) -> str:
    """SHA-256 hex digest truncated to ``length`` characters."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


class ClientIdentifierResolver:
    """Derives one stable identifier per caller from transport metadata.

    Never raises: every failure degrades to a coarser tier.
    """

    def __init__(
        self,
        trusted_headers: Optional[Sequence[str]] = None,
        session_cookie_name: Optional[str] = None,
        bucket_seconds: Optional[int] = None,
        session_validator: Optional[Callable[[str], bool]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the resolver.

        Args:
            trusted_headers: Proxy headers in priority order (highest trust first)
            session_cookie_name: Cookie carrying the session credential
            bucket_seconds: Width of the anonymous fallback time bucket
            session_validator: Optional check that a session credential is live
            clock: Returns the current time in seconds
        """
        headers = settings.trusted_ip_headers if trusted_headers is None else trusted_headers
        self.trusted_headers = tuple(h.lower() for h in headers)
        self.session_cookie_name = session_cookie_name or settings.session_cookie_name
        self.bucket_seconds = (
            settings.anon_bucket_seconds if bucket_seconds is None else bucket_seconds
        )
        if self.bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        self._session_validator = session_validator
        self._clock = clock

    def _time_bucket(self) -> int:
        return int(self._clock() // self.bucket_seconds)

    def is_valid_session(self, token: Optional[str]) -> bool:
        """Check the shape of a session credential, then the injected validator."""
        if not token or len(token) > MAX_SESSION_TOKEN_LENGTH:
            return False
        if not _SESSION_TOKEN_RE.match(token):
            return False
        if self._session_validator is None:
            return True
        try:
            return bool(self._session_validator(token))
        except Exception:
            logger.warning("Session validator raised; treating session as absent", exc_info=True)
            return False

    def _from_headers(self, headers: Mapping[str, str]) -> Optional[ResolvedIdentifier]:
        for name in self.trusted_headers:
            raw = headers.get(name)
            if not raw:
                continue
            # Only the first hop (closest to the client) is considered
            address = parse_ip(raw.split(",")[0])
            if address is None:
                logger.debug(f"Ignoring invalid address in {name} header")
                continue
            return ResolvedIdentifier(
                value=f"ip:{address}",
                tier=IdentifierTier.VALIDATED_IP,
                source_header=name,
            )
        return None

    def resolve(
        self,
        headers: Mapping[str, str],
        cookies: Optional[Mapping[str, str]] = None,
    ) -> ResolvedIdentifier:
        """Resolve the caller identifier.

        Args:
            headers: Request headers; lookups must be case-insensitive
                (Starlette ``Headers``) or use lower-case keys
            cookies: Request cookies

        Returns:
            ResolvedIdentifier tagged with the tier that produced it
        """
        try:
            session_token = (cookies or {}).get(self.session_cookie_name)
        except Exception:
            logger.warning("Could not read session cookie", exc_info=True)
            session_token = None
        if self.is_valid_session(session_token):
            return ResolvedIdentifier(
                value=f"user:{hash_value(session_token)}",
                tier=IdentifierTier.SESSION,
            )

        try:
            resolved = self._from_headers(headers)
            if resolved is not None:
                return resolved

            user_agent = headers.get("user-agent") or "unknown"
            resolved = ResolvedIdentifier(
                value=f"anon:{hash_value(user_agent, 16)}:{self._time_bucket()}",
                tier=IdentifierTier.ANONYMOUS_FALLBACK,
            )
            logger.info(
                "Identifier resolution degraded to anonymous fallback",
                extra=get_log_context(
                    client_id=resolved.value,
                    identifier_tier=resolved.tier.value,
                ),
            )
            return resolved
        except Exception:
            try:
                bucket = self._time_bucket()
            except Exception:
                bucket = int(time.time() // self.bucket_seconds)
            resolved = ResolvedIdentifier(
                value=f"fallback:{bucket}:{secrets.token_hex(4)}",
                tier=IdentifierTier.RANDOM_FALLBACK,
            )
            logger.warning(
                "Identifier resolution failed; using random fallback",
                exc_info=True,
                extra=get_log_context(
                    client_id=resolved.value,
                    identifier_tier=resolved.tier.value,
                ),
            )
            return resolved
