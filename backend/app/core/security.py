"""
Security and Authentication for the bulk operations API.

Sessions and OAuth token exchange live outside this service. The API only
verifies a signed JWT bearer token and derives the acting user from ``sub``.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, List

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, SecurityScopes
from jose import JWTError, jwt
from pydantic import BaseModel

from backend.app.core.config import get_settings
from backend.app.core.logging import user_id_ctx

settings = get_settings()

PLAYLIST_READ = "playlist:read"
PLAYLIST_WRITE = "playlist:write"
QUOTA_READ = "quota:read"

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="api/v1/auth/token",
    scopes={
        PLAYLIST_READ: "Read action history and item outcomes",
        PLAYLIST_WRITE: "Submit bulk add/remove/move, undo and retry",
        QUOTA_READ: "Read remote API quota usage",
    },
)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """
    Generate a signed JWT token.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


class Role:
    OWNER = "owner"
    VIEWER = "viewer"


ROLE_SCOPES = {
    Role.OWNER: [PLAYLIST_READ, PLAYLIST_WRITE, QUOTA_READ],
    Role.VIEWER: [PLAYLIST_READ, QUOTA_READ],
}


class User(BaseModel):
    user_id: str
    role: str
    scopes: List[str] = []


class TokenData(BaseModel):
    user_id: Optional[str] = None
    role: Optional[str] = None
    scopes: List[str] = []


async def get_current_user(
    security_scopes: SecurityScopes,
    token: str = Depends(oauth2_scheme)
) -> User:
    """
    Validate JWT token and check required scopes based on role.
    """
    if security_scopes.scopes:
        authenticate_value = f'Bearer scope="{security_scopes.scope_str}"'
    else:
        authenticate_value = "Bearer"

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "unauthorized", "message": "Sign in to continue"},
        headers={"WWW-Authenticate": authenticate_value},
    )

    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm]
        )
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception

    role: str = payload.get("role", Role.OWNER)
    token_scopes = payload.get("scopes", ROLE_SCOPES.get(role, []))
    token_data = TokenData(user_id=str(user_id), role=role, scopes=token_scopes)

    for scope in security_scopes.scopes:
        if scope not in token_data.scopes:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "forbidden", "message": f"Not enough permissions. Required scope: {scope}"},
                headers={"WWW-Authenticate": authenticate_value},
            )

    user_id_ctx.set(token_data.user_id)
    return User(user_id=token_data.user_id, role=role, scopes=token_data.scopes)
