"""Per-IP rate limits for the public endpoints.

One slowapi Limiter is shared by the routes; `create_app` attaches it to
`app.state.limiter` and maps RateLimitExceeded onto the error envelope.
Counters live in process memory, like the builds themselves.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from pwa_maker import config

limiter = Limiter(key_func=get_remote_address)

BUILD_RATE_LIMIT = f"{config.BUILD_RATE_LIMIT_PER_HOUR}/hour"
BUILD_RATE_LIMIT_MESSAGE = (
    f"Rate limit exceeded. Maximum {config.BUILD_RATE_LIMIT_PER_HOUR} "
    "build requests per hour per IP address."
)

# Each manifest lookup makes outbound requests on the caller's behalf
MANIFEST_RATE_LIMIT = "30/minute"
MANIFEST_RATE_LIMIT_MESSAGE = "Too many manifest fetch requests. Maximum 30 per minute per IP address."

# A normal visitor fetches one token per build
TOKEN_RATE_LIMIT = "20/10 minutes"
TOKEN_RATE_LIMIT_MESSAGE = "Too many token requests. Please wait before trying again."
