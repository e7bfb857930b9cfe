"""
Authentication middleware for JWT validation.

Tokens are issued by the external auth service; this module only verifies
them and extracts the caller's identity and role.
"""

from datetime import datetime, timezone
from typing import Annotated
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from comms_engine.config import Settings, get_settings
from comms_engine.shared.exceptions import AppException
from comms_engine.shared.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


class InvalidTokenError(AppException):
    """Raised when a token is invalid or expired."""

    def __init__(self, message: str = "Invalid token", code: str = "INVALID_TOKEN") -> None:
        super().__init__(message, code)


class CurrentUser(BaseModel):
    """Current authenticated user information."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="User ID")
    email: str = Field(default="", description="User email")
    name: str = Field(default="", description="User display name")
    role: str = Field(..., description="User role")


class JWTTokenValidator:
    """JWT token validator."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def validate_access_token(self, token: str) -> dict:
        """Validate an access token and return its payload.

        Raises:
            InvalidTokenError: If token is invalid, of the wrong type or expired.
        """
        try:
            payload = jwt.decode(
                token,
                self._settings.jwt_secret_key,
                algorithms=[self._settings.jwt_algorithm],
            )
        except jwt.ExpiredSignatureError:
            raise InvalidTokenError("Token has expired", "TOKEN_EXPIRED")
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}")

        if payload.get("type", "access") != "access":
            raise InvalidTokenError("Invalid token type")

        exp = payload.get("exp")
        if exp and datetime.fromtimestamp(exp, tz=timezone.utc) < datetime.now(timezone.utc):
            raise InvalidTokenError("Token has expired", "TOKEN_EXPIRED")

        return payload


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    """Extract and validate current user from the bearer token."""
    if credentials is None:
        logger.warning(
            "Missing authentication credentials",
            extra={
                "endpoint": str(request.url.path),
                "method": request.method,
                "client_ip": request.client.host if request.client else "unknown",
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "MISSING_CREDENTIALS",
                "message": "Authentication credentials required",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = JWTTokenValidator(settings).validate_access_token(credentials.credentials)
        user_id = payload.get("user_id") or payload.get("sub")
        role = payload.get("role")
        if not user_id or not role:
            raise InvalidTokenError("Token missing user_id or role")
        return CurrentUser(
            id=UUID(str(user_id)),
            email=payload.get("email", ""),
            name=payload.get("name", ""),
            role=role,
        )
    except (InvalidTokenError, ValueError) as e:
        code = getattr(e, "code", "INVALID_TOKEN")
        message = getattr(e, "message", str(e))
        logger.warning(
            "Invalid token",
            extra={
                "endpoint": str(request.url.path),
                "method": request.method,
                "error": message,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": code, "message": message},
            headers={"WWW-Authenticate": "Bearer"},
        )


# Type alias for dependency injection
AuthenticatedUser = Annotated[CurrentUser, Depends(get_current_user)]
