"""
Identity bridge: external identity-provider subject -> internal user id.

Two modes:
- lookup: the user row was provisioned out-of-band and carries the subject
  in `auth_subject`; an unknown subject resolves to None.
- sync: find the user by subject, then by email (or a placeholder address
  derived from the subject), and create it on first sight. A placeholder
  address is replaced once a real email arrives.
"""

import logging
import re
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from oauth_models import User

logger = logging.getLogger("contextdb.identity")

PLACEHOLDER_EMAIL_DOMAIN = "users.contextdb.internal"


class IdentityResolutionError(Exception):
    """The database could not be consulted to resolve an identity"""


def placeholder_email(subject: str) -> str:
    """Stable synthetic address for subjects whose token carries no email"""
    local = re.sub(r"[^a-zA-Z0-9._-]+", "-", subject).strip("-") or "user"
    return f"{local}@{PLACEHOLDER_EMAIL_DOMAIN}"


def resolve_user_id(db, subject: str) -> Optional[str]:
    """Find the internal user id linked to an external subject."""
    try:
        user = db.query(User).filter(User.auth_subject == subject).first()
    except SQLAlchemyError as e:
        logger.error(f"Error finding user by auth_subject {subject}: {e}")
        raise IdentityResolutionError("identity resolution failed") from e

    if not user:
        logger.warning(f"User with auth_subject {subject} not found")
        return None

    logger.info(f"Found user {user.id} for subject {subject}")
    return str(user.id)


def sync_user(
    db,
    subject: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> str:
    """Find-or-create a user for an external sign-in and return its id.

    A subject already linked to a user always resolves to that user, even if
    the token's email has changed since.
    """
    address = (email or "").strip().lower() or placeholder_email(subject)

    try:
        user = db.query(User).filter(User.auth_subject == subject).first()
        if user:
            if user.email == placeholder_email(subject) and address != user.email:
                taken = db.query(User).filter(User.email == address).first()
                if not taken:
                    user.email = address
                    db.commit()
            return str(user.id)

        user = db.query(User).filter(User.email == address).first()
        if user:
            if not user.auth_subject:
                user.auth_subject = subject
                db.commit()
            return str(user.id)

        user = User(email=address, name=name, auth_subject=subject)
        db.add(user)
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error syncing user for subject {subject}: {e}")
        raise IdentityResolutionError("identity resolution failed") from e

    logger.info(f"Created user {user.id} for subject {subject}")
    return str(user.id)


def resolve_identity(db, claims: dict, mode: str = "lookup") -> Optional[str]:
    """Resolve verified token claims to an internal user id."""
    subject = claims.get("sub")
    if not subject:
        return None
    if mode == "sync":
        return sync_user(db, subject, email=claims.get("email"), name=claims.get("name"))
    return resolve_user_id(db, subject)
