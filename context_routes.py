"""
Dashboard API for browsing and removing saved contexts (session cookie auth)
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError

import context_service
from auth_middleware import get_db_session, require_auth
from context_service import ContextNotFoundError
from oauth_models import User

logger = logging.getLogger("contextdb.contexts")

router = APIRouter(prefix="/api/contexts", tags=["contexts"])


def _server_error(detail: str, error: Exception) -> HTTPException:
    logger.error(f"{detail}: {error}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


@router.get("")
async def list_contexts(
    tag: Optional[List[str]] = Query(None),
    user: User = Depends(require_auth),
    db=Depends(get_db_session),
):
    """User's contexts, most recently updated first"""
    try:
        contexts = context_service.list_contexts(db, str(user.id), tags=tag)
    except SQLAlchemyError as e:
        raise _server_error("Failed to load contexts", e)
    return {"contexts": [context_service.context_summary(c) for c in contexts]}


@router.get("/{name}")
async def get_context(
    name: str,
    user: User = Depends(require_auth),
    db=Depends(get_db_session),
):
    try:
        context = context_service.get_context(db, str(user.id), name)
    except SQLAlchemyError as e:
        raise _server_error("Failed to load context", e)
    if context is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return {"context": context_service.context_to_dict(context)}


@router.delete("/{name}")
async def delete_context(
    name: str,
    user: User = Depends(require_auth),
    db=Depends(get_db_session),
):
    """Delete a context and its history. Deleting a missing name is not an error."""
    try:
        context_service.delete_context(db, str(user.id), name)
    except SQLAlchemyError as e:
        db.rollback()
        raise _server_error("Failed to delete context", e)
    return {"success": True}


@router.get("/{name}/history")
async def get_context_history(
    name: str,
    user: User = Depends(require_auth),
    db=Depends(get_db_session),
):
    try:
        entries = context_service.list_history(db, str(user.id), name)
    except ContextNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    except SQLAlchemyError as e:
        raise _server_error("Failed to load context history", e)
    return {"history": [context_service.history_to_dict(e) for e in entries]}
