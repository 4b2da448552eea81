"""
FastAPI Security Dependencies
Bearer-token authentication against Supabase Auth
"""

import logging
from typing import Any

from fastapi import Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import AuthError

from src.config.supabase_config import execute_with_retry
from src.utils.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme with auto_error=False to allow custom error handling
security = HTTPBearer(auto_error=False)


def _verify_access_token(token: str) -> dict[str, Any] | None:
    """
    Resolve a Supabase access token to its user.

    Returns:
        ``{"id", "email"}`` or None when Supabase rejects the token. Transport
        and configuration errors propagate.
    """

    def _get_user(client):
        return client.auth.get_user(token)

    try:
        response = execute_with_retry(_get_user, operation_name="verify_access_token")
    except AuthError as e:
        logger.info(f"Access token rejected by Supabase Auth: {e}")
        return None

    user = getattr(response, "user", None) if response else None
    if user is None:
        return None
    return {"id": user.id, "email": getattr(user, "email", None)}


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict[str, Any]:
    """
    Get the authenticated user from the Authorization header.

    Raises:
        AuthenticationError: 401 when the header is missing or the token is invalid
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("No authorization header")

    user = await run_in_threadpool(_verify_access_token, credentials.credentials)
    if not user:
        raise AuthenticationError("Unauthorized")

    return user
