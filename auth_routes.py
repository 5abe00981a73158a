"""
Account Routes for ContextDB

Email/password signup and cookie sessions for the dashboard API.
MCP clients never use these; they authenticate with provider-issued tokens.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from auth_middleware import (
    MAX_PASSWORD_BYTES,
    SESSION_COOKIE,
    get_db_session,
    hash_password,
    require_auth,
    verify_password,
)
from oauth_models import User, WebSession, cleanup_expired_sessions
from schemas import LoginRequest, SignupRequest

logger = logging.getLogger("contextdb")

MIN_PASSWORD_LENGTH = 8
SESSION_HOURS = 24 * 7

# Router
router = APIRouter(prefix="/api/auth", tags=["authentication"])


async def _parse(request: Request, model):
    try:
        return model.model_validate(await request.json())
    except (ValueError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        )


def _user_info(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
    }


@router.post("/signup")
async def signup(request: Request, db=Depends(get_db_session)):
    """Create an email/password account"""
    payload = await _parse(request, SignupRequest)

    email = payload.email.strip().lower()
    name = payload.name.strip() if payload.name and payload.name.strip() else None
    password = payload.password

    if not email or len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Email and password (min {MIN_PASSWORD_LENGTH} chars) are required",
        )
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at most {MAX_PASSWORD_BYTES} bytes",
        )

    try:
        existing = db.query(User).filter(User.email == email).first()
        if existing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="User with this email already exists",
            )

        user = User(email=email, name=name, password_hash=hash_password(password))
        db.add(user)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create user {email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create user",
        )

    logger.info(f"Created account {user.id} for {email}")
    return {"success": True}


@router.post("/login")
async def login(request: Request, response: Response, db=Depends(get_db_session)):
    """Check credentials and start a cookie session"""
    payload = await _parse(request, LoginRequest)
    email = payload.email.strip().lower()

    user = db.query(User).filter(User.email == email).first()
    if not user or not user.password_hash or not verify_password(payload.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    cleanup_expired_sessions(db)

    web_session = WebSession(
        user_id=user.id,
        expires_in_hours=SESSION_HOURS,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    db.add(web_session)
    db.commit()

    settings = request.app.state.settings
    response.set_cookie(
        key=SESSION_COOKIE,
        value=web_session.token,
        httponly=True,
        secure=settings.base_url.startswith("https://"),
        samesite="lax",
        max_age=SESSION_HOURS * 60 * 60,
    )
    return _user_info(user)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    user: User = Depends(require_auth),
    db=Depends(get_db_session),
):
    """Logout user by revoking session"""
    session_token = request.cookies.get(SESSION_COOKIE)
    if session_token:
        web_session = db.query(WebSession).filter(
            WebSession.token == session_token
        ).first()

        if web_session:
            web_session.is_revoked = True
            db.commit()

    # Clear cookie
    response.delete_cookie(SESSION_COOKIE)

    return {"message": "Logged out successfully"}


@router.get("/me")
async def get_current_user_info(user: User = Depends(require_auth)):
    """Get current authenticated user information"""
    info = _user_info(user)
    info["created_at"] = user.created_at.isoformat() if user.created_at else None
    return info
