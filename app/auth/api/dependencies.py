from typing import Annotated, Optional
from fastapi import Depends, Request, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.auth.entity.entity import Principal, UserTier
from app.core.config import settings
from app.core.logger import get_logger
from pkg.auth_token_client.client import TokenClient

logger = get_logger("Auth")

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def get_token_client(request: Request) -> TokenClient:
    """Token client from app state, built on first use."""
    client = getattr(request.app.state, "token_client", None)
    if client is None:
        client = TokenClient(settings.JWT_SUPER_SECRET)
        request.app.state.token_client = client
    return client


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """
    Dependency to get the authenticated principal from the bearer JWT.

    Usage:
        @router.post("/protected")
        async def protected_route(principal: Principal = Depends(get_current_principal)):
            ...
    """
    if not credentials:
        raise _unauthorized("Not authenticated")

    try:
        payload = get_token_client(request).decode_token(credentials.credentials)
    except ValueError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise _unauthorized("Invalid or expired token")

    user_id = payload.get("user_id")
    if not user_id:
        raise _unauthorized("Invalid or expired token")
    try:
        tier = UserTier(payload.get("tier") or UserTier.REGULAR.value)
    except ValueError:
        tier = UserTier.REGULAR
    return Principal(id=str(user_id), email=payload.get("email"), tier=tier)


CurrentPrincipalDep = Annotated[Principal, Depends(get_current_principal)]
