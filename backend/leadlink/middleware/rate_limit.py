"""
Rate limiting middleware using slowapi.
Limits redirect traffic per caller address (RATE_LIMIT_REDIRECT, default 60/min).
"""

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from leadlink.core.config import settings
from leadlink.services.sanitizer import client_ip


def _get_client_key(request: Request) -> str:
    """Caller address, honouring proxy headers like the click recorder does."""
    return client_ip(request.headers, get_remote_address(request))


limiter = Limiter(
    key_func=_get_client_key,
    enabled=settings.rate_limit_enabled,
    storage_uri="memory://",
)


def setup_rate_limiting(app):
    """Configure rate limiting for the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
