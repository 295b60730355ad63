"""Admin API key check for management endpoints.

Evaluation endpoints (assignments, events, flag checks) are open; anything
that creates or changes experiments, flags or rollouts needs the admin key.
"""
import hashlib
import hmac
from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader
from typing import Optional

from cohortlab.config import get_settings

# API key header
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def hash_api_key(api_key: str) -> str:
    """
    Hash an API key using SHA256.

    Args:
        api_key: Plain text API key

    Returns:
        SHA256 hex digest of the API key
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


async def require_admin_key(api_key: Optional[str] = Security(api_key_header)) -> None:
    """
    Dependency rejecting requests without the admin API key.

    Usage:
        @router.post("/flags", dependencies=[Depends(require_admin_key)])

    Raises:
        HTTPException: 401 if API key is invalid or missing
    """
    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    expected = hash_api_key(get_settings().admin_api_key)
    if not hmac.compare_digest(hash_api_key(api_key), expected):
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )
