"""
Authentication Middleware and Utilities for ContextDB

Provides:
1. Bearer token extraction and the RFC 6750 error envelope (MCP endpoints)
2. Session cookie authentication (account API)
3. Password hashing
"""

from typing import Annotated, Mapping, Optional

import bcrypt
from fastapi import Cookie, Depends, HTTPException, status

from config import Settings
from oauth import AuthError, InvalidRequestError, MissingCredentialsError
from oauth_models import User, WebSession

REALM = "contextdb"
SESSION_COOKIE = "contextdb_session"

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


# =============================================================================
# Bearer tokens
# =============================================================================

def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def extract_bearer_token(headers: Mapping[str, str]) -> str:
    """
    Pull the bearer token out of the Authorization header.

    Raises MissingCredentialsError when no bearer credentials are present and
    InvalidRequestError when the header is malformed.
    """
    auth_header = _header(headers, "authorization")
    if not auth_header or not auth_header.strip():
        raise MissingCredentialsError("Authentication required")

    parts = auth_header.strip().split(" ", 1)
    if parts[0].lower() != "bearer":
        raise MissingCredentialsError("Bearer token required")

    token = parts[1].strip() if len(parts) == 2 else ""
    if not token or " " in token:
        raise InvalidRequestError("Authorization header must be 'Bearer <token>'")
    return token


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def www_authenticate_header(error: AuthError, settings: Settings) -> str:
    """WWW-Authenticate challenge pointing the client at the authorization server"""
    params = [f'realm="{REALM}"']
    if error.error:
        params.append(f'error="{error.error}"')
        params.append(f'error_description="{_quote(error.description)}"')
    if settings.authorization_endpoint:
        params.append(f'authorization_uri="{settings.authorization_endpoint}"')
    if settings.token_endpoint:
        params.append(f'token_uri="{settings.token_endpoint}"')
    params.append(f'resource_metadata="{settings.resource_metadata_url}"')
    return "Bearer " + ", ".join(params)


def auth_error_body(error: AuthError) -> dict:
    return {
        "error": error.error or "unauthorized",
        "error_description": error.description,
    }


# =============================================================================
# Passwords
# =============================================================================

def hash_password(password: str) -> str:
    """Hash password with bcrypt"""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=10)).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against hash"""
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


# =============================================================================
# Session cookies
# =============================================================================

def get_db_session():
    """Database dependency"""
    from server import DB
    if DB.SessionLocal is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not initialized",
        )
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user(
    db=Depends(get_db_session),
    session_token: Annotated[Optional[str], Cookie(alias=SESSION_COOKIE)] = None,
) -> Optional[User]:
    """Get user from session token (cookie)"""
    if not session_token:
        return None

    web_session = db.query(WebSession).filter(
        WebSession.token == session_token
    ).first()

    if not web_session or not web_session.is_valid:
        return None

    web_session.refresh_activity()
    db.commit()

    return web_session.user


async def require_auth(
    user: Annotated[Optional[User], Depends(get_current_user)]
) -> User:
    """Require authentication - raises 401 if not authenticated"""
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return user
