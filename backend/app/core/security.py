"""Security utilities for the DICOM study catalog.

Callers are authenticated by bearer JWTs issued by the hospital's identity
provider (or the ``issue-token`` CLI command). This module only signs and
verifies those tokens; there is no user database.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from pydantic import BaseModel


class TokenData(BaseModel):
    """JWT token payload data."""

    user_id: str
    username: str
    roles: list[str] = []
    exp: datetime | None = None


class SecurityManager:
    """Signs and verifies access tokens."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_token_expire_minutes: int = 60,
    ):
        """Initialize security manager.

        Args:
            secret_key: Secret key for JWT signing
            algorithm: JWT algorithm (default: HS256)
            access_token_expire_minutes: Token expiration in minutes

        """
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.access_token_expire_minutes = access_token_expire_minutes

    def create_access_token(
        self,
        data: dict[str, Any],
        expires_delta: timedelta | None = None,
    ) -> str:
        """Create a JWT access token.

        Args:
            data: Token payload data (``sub``, ``username``, ``roles``)
            expires_delta: Optional custom expiration time

        Returns:
            Encoded JWT token string

        """
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.access_token_expire_minutes)
        )
        to_encode.update({"exp": expire, "iat": datetime.now(timezone.utc)})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def decode_token(self, token: str) -> TokenData | None:
        """Decode and validate a JWT token.

        Args:
            token: JWT token string

        Returns:
            TokenData if valid, None otherwise

        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None
        if not payload.get("sub"):
            return None
        return TokenData(
            user_id=payload["sub"],
            username=payload.get("username", ""),
            roles=payload.get("roles", []),
            exp=datetime.fromtimestamp(payload.get("exp", 0), tz=timezone.utc),
        )
