"""Authentication and rate limiting helpers for the API."""

import os
import secrets
import logging

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from limits import RateLimitItem, parse
from slowapi import Limiter
from slowapi.util import get_remote_address

from .errors import RateLimitedError

logger = logging.getLogger(__name__)

security = HTTPBearer()


def create_limiter(enabled: bool = True) -> Limiter:
    """Build a per-app limiter keyed on the client address, with in-memory storage."""
    return Limiter(key_func=get_remote_address, enabled=enabled)


def parse_rate_limit(rate_limit: str) -> RateLimitItem:
    """Parse a limit such as ``60/minute``. Raises ValueError if malformed."""
    return parse(rate_limit)


async def enforce_rate_limit(request: Request) -> None:
    """Route dependency counting one hit against the app's rate limit.

    Raises:
        RateLimitedError: If the client address is over the limit.
    """
    limiter: Limiter = request.app.state.limiter
    if not limiter.enabled:
        return
    item: RateLimitItem = request.app.state.rate_limit
    address = get_remote_address(request)
    if not limiter.limiter.hit(item, "payments-mirror", address):
        logger.warning(f"Rate limit {item} exceeded for {address} on {request.url.path}")
        raise RateLimitedError(str(item))


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the operator API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key, expected_key):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key
