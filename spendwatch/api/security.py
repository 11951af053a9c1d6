"""Security and authentication for the spendwatch API."""

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from spendwatch.api.config import Settings, get_settings

# API key header for server authentication
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Annotated[str | None, Security(api_key_header)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str | None:
    """Verify the API key if server authentication is enabled.

    Returns the API key if valid, None if auth is disabled.
    Raises HTTPException if auth is enabled but key is invalid.
    """
    accepted = settings.parse_api_keys()

    # No keys configured, or auth switched off: authentication is disabled
    if not settings.require_api_auth or not accepted:
        return None

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not any(hmac.compare_digest(api_key, key) for key in accepted):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


# Dependency for routes that require authentication
RequireAuth = Annotated[str | None, Depends(verify_api_key)]
