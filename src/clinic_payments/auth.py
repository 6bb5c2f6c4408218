"""API key authentication and rate limiting for the HTTP surface."""

import os
import secrets
import logging

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .dependencies import get_runtime
from .runtime import ClinicRuntime

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Shared limiter; the app registers it on app.state
limiter = Limiter(key_func=get_remote_address)

WEBHOOK_RATE_LIMIT = os.getenv("WEBHOOK_RATE_LIMIT", "60/minute")


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(security),
    runtime: ClinicRuntime = Depends(get_runtime),
) -> str:
    """Check the bearer token against the configured API key.

    Args:
        credentials: HTTP Bearer credentials from the request.
        runtime: Running application; its settings carry the API_KEY value.

    Returns:
        The verified API key.

    Raises:
        HTTPException: 500 when API_KEY is unset, 401 when the key does not match.
    """
    expected_key = runtime.settings.api_key
    if not expected_key:
        logger.error("API_KEY is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Rejected request with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials
