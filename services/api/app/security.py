"""
API security: static bearer token for the internal leaderboard routes
"""

import secrets

from fastapi import Header, HTTPException, status

from services.shared import config as shared_config


async def verify_api_auth_token(authorization: str = Header(default=None)) -> None:
    """
    Verify the static bearer token

    Internal routes stay closed when API_AUTH_TOKEN is not configured

    Args:
        authorization (str): Authorization header

    Returns:
        None. Raises HTTPException on failure
    """
    expected = shared_config.API_AUTH_TOKEN
    if not expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    provided_token = authorization[7:]
    if not secrets.compare_digest(provided_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
