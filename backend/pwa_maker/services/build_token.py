"""Short-lived HMAC build tokens.

A token binds a build request to a recent page load. It deters scripted
build spam; it is not user authentication.

Format: `{timestamp_ms}.{hex(HMAC-SHA256(secret, timestamp_ms))}`

The secret is process-lifetime state. Without BUILD_TOKEN_SECRET a random
secret is generated per process, so every restart invalidates issued tokens.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from typing import Callable, Optional

from pwa_maker import config

logger = logging.getLogger(__name__)

TOKEN_TTL_MS = 10 * 60 * 1000
# Tolerated clock drift for tokens stamped slightly in the future
TOKEN_MAX_SKEW_MS = 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


class BuildTokenIssuer:
    """Issues and verifies build tokens.

    Usage:
        issuer = BuildTokenIssuer()
        token = issuer.generate_token()
        assert issuer.verify_token(token)
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        ttl_ms: int = TOKEN_TTL_MS,
        max_skew_ms: int = TOKEN_MAX_SKEW_MS,
        clock: Callable[[], int] = _now_ms,
    ):
        """Initialize the issuer.

        Args:
            secret: HMAC key. Defaults to BUILD_TOKEN_SECRET, else random.
            ttl_ms: Maximum token age.
            max_skew_ms: Maximum tolerated future timestamp.
            clock: Millisecond clock (tests pin it).
        """
        secret = secret if secret is not None else config.BUILD_TOKEN_SECRET
        if not secret:
            secret = secrets.token_hex(32)
            logger.warning(
                "BUILD_TOKEN_SECRET is not set; using a random ephemeral secret. "
                "Tokens will be invalidated on every restart."
            )
        self._key = secret.encode("utf-8")
        self._ttl_ms = ttl_ms
        self._max_skew_ms = max_skew_ms
        self._clock = clock

    def _sign(self, timestamp: str) -> str:
        return hmac.new(self._key, timestamp.encode("ascii"), hashlib.sha256).hexdigest()

    def generate_token(self) -> str:
        """Issue a token stamped with the current time."""
        timestamp = str(self._clock())
        return f"{timestamp}.{self._sign(timestamp)}"

    def verify_token(self, token: object) -> bool:
        """Check a token's freshness and signature.

        Returns:
            True only for a correctly signed token issued within the TTL.
        """
        if not isinstance(token, str):
            return False

        timestamp, dot, signature = token.rpartition(".")
        if not dot:
            return False
        if not (timestamp.isascii() and timestamp.isdigit()):
            return False

        issued_at = int(timestamp)
        now = self._clock()
        if now - issued_at > self._ttl_ms:
            return False
        if issued_at - now > self._max_skew_ms:
            return False

        expected = self._sign(timestamp)
        # Length mismatch leaks nothing about the secret
        if len(signature) != len(expected) or not signature.isascii():
            return False
        return hmac.compare_digest(expected, signature)
