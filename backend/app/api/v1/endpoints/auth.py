"""Authentication dependencies.

Every study route requires a bearer JWT signed with the configured secret.
Tokens are issued by the identity provider (or ``app.cli issue-token``);
this service only verifies them.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from app.core.config import settings
from app.core.security import SecurityManager, TokenData

router = APIRouter()

bearer_scheme = HTTPBearer(auto_error=False)

# Security manager instance
security = SecurityManager(
    secret_key=settings.secret_key,
    algorithm=settings.algorithm,
    access_token_expire_minutes=settings.access_token_expire_minutes,
)


class CurrentUser(BaseModel):
    """Identity carried by the caller's token."""

    user_id: str
    username: str
    roles: list[str]


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TokenData:
    """
    Validate JWT token and return current user.

    Raises HTTPException if token is missing, invalid or expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise credentials_exception

    token_data = security.decode_token(credentials.credentials)
    if not token_data:
        raise credentials_exception

    return token_data


async def get_current_active_user(
    current_user: Annotated[TokenData, Depends(get_current_user)],
) -> TokenData:
    """
    Get current active user.

    Returns the current user token data if valid.
    """
    return current_user


@router.get("/me", response_model=CurrentUser)
async def get_current_user_info(
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
) -> CurrentUser:
    """Return the identity of the authenticated caller."""
    return CurrentUser(
        user_id=current_user.user_id,
        username=current_user.username,
        roles=current_user.roles,
    )
