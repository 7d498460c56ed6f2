"""Bearer token authentication for the management endpoints.

Only the experiment/results API is protected. Rendering and conversion
tracking are called by anonymous visitors.
"""
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from split_service.context import ServiceContext, get_context

security = HTTPBearer()


def verify_token(
    credentials: HTTPAuthorizationCredentials = Security(security),
    ctx: ServiceContext = Depends(get_context),
):
    """
    Verify Bearer token against the configured API tokens.
    Returns the token if valid, raises 401 otherwise.
    """
    token = credentials.credentials

    if token not in ctx.settings.api_tokens:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing authentication token"
        )

    return token
