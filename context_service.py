"""
Context document CRUD services.

Every function takes the owning user's id and uses it as a filter predicate,
so one user can never read or mutate another user's documents.
"""

import copy
import logging
from typing import Callable, List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from models import Context, ContextHistory, DB_BACKEND_EFFECTIVE, utcnow
from schemas import ContextContent, LIST_FIELDS, TEXT_FIELDS

logger = logging.getLogger("contextdb.contexts")

ContentInput = Union[ContextContent, dict, None]

TEXT_SEPARATOR = "\n\n"


# =============================================================================
# Errors
# =============================================================================

class ContextServiceError(Exception):
    """Base class for context document errors"""

    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name
        self.message = message


class ContextAlreadyExistsError(ContextServiceError):
    def __init__(self, name: str):
        super().__init__(name, f"Context '{name}' already exists.")


class ContextNotFoundError(ContextServiceError):
    def __init__(self, name: str):
        super().__init__(name, f"Context '{name}' not found.")


class VersionConflictError(ContextServiceError):
    def __init__(self, name: str, expected_version: int, actual_version: Optional[int] = None):
        message = f"Context '{name}' was modified concurrently (expected v{expected_version}"
        if actual_version is not None:
            message += f", found v{actual_version}"
        super().__init__(name, message + "). Reload it and retry.")
        self.expected_version = expected_version
        self.actual_version = actual_version


# =============================================================================
# Merge helpers
# =============================================================================

def _coerce_content(content: ContentInput) -> ContextContent:
    if isinstance(content, ContextContent):
        return content
    return ContextContent.model_validate(content or {})


def merge_append(existing: dict, addition: ContextContent) -> dict:
    """Concatenate list fields; join text fields with a blank line."""
    updated = copy.deepcopy(existing)
    for field in TEXT_FIELDS:
        value = getattr(addition, field)
        if not value:
            continue
        current = updated.get(field) or ""
        updated[field] = f"{current}{TEXT_SEPARATOR}{value}" if current else value
    for field in LIST_FIELDS:
        values = getattr(addition, field)
        if not values:
            continue
        updated[field] = list(updated.get(field) or []) + list(values)
    return updated


def merge_replace(existing: dict, replacement: ContextContent) -> dict:
    """Shallow merge: provided fields overwrite the stored ones."""
    updated = copy.deepcopy(existing)
    updated.update(replacement.provided_fields())
    return updated


# =============================================================================
# Queries
# =============================================================================

def _find(db, user_id: str, name: str) -> Optional[Context]:
    return db.query(Context).filter(
        Context.user_id == user_id,
        Context.name == name,
    ).first()


def create_context(
    db,
    user_id: str,
    name: str,
    content: ContentInput = None,
    summary: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> Context:
    """Insert a new document at version 1."""
    payload = _coerce_content(content)

    if _find(db, user_id, name) is not None:
        raise ContextAlreadyExistsError(name)

    context = Context(
        user_id=user_id,
        name=name,
        summary=summary,
        tags=list(tags or []),
        content=payload.model_dump(exclude_none=True),
        version=1,
    )
    db.add(context)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race against a concurrent create for the same (user, name)
        db.rollback()
        raise ContextAlreadyExistsError(name)
    db.refresh(context)
    logger.info(f"Created context '{name}' for user {user_id}")
    return context


def get_context(db, user_id: str, name: str) -> Optional[Context]:
    return _find(db, user_id, name)


def list_contexts(db, user_id: str, tags: Optional[List[str]] = None) -> List[Context]:
    """User's documents, most recently updated first.

    When tags are given, only documents carrying every one of them are returned.
    """
    wanted = [tag for tag in (tags or []) if tag]
    query = db.query(Context).filter(Context.user_id == user_id).order_by(
        Context.updated_at.desc(),
        Context.created_at.desc(),
    )

    if wanted and DB_BACKEND_EFFECTIVE == "postgres":
        return query.filter(Context.tags.contains(wanted)).all()

    contexts = query.all()
    if wanted:
        contexts = [c for c in contexts if set(wanted).issubset(c.tags or [])]
    return contexts


def _mutate(
    db,
    user_id: str,
    name: str,
    merge: Callable[[dict], dict],
    expected_version: Optional[int],
) -> Context:
    """Snapshot the current payload into history, then apply `merge`.

    The history insert and the version-guarded update commit together; if the
    row changed since it was read, nothing is written.
    """
    context = _find(db, user_id, name)
    if context is None:
        raise ContextNotFoundError(name)

    current_version = context.version
    if expected_version is not None and expected_version != current_version:
        raise VersionConflictError(name, expected_version, current_version)

    previous = copy.deepcopy(context.content or {})
    updated = merge(previous)

    db.add(ContextHistory(
        context_id=context.id,
        version=current_version,
        content=previous,
    ))
    result = db.execute(
        update(Context)
        .where(Context.id == context.id, Context.version == current_version)
        .values(content=updated, version=current_version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning(f"Version conflict on context '{name}' (expected v{current_version})")
        raise VersionConflictError(name, current_version)

    db.commit()
    db.refresh(context)
    return context


def append_context(
    db,
    user_id: str,
    name: str,
    content: ContentInput,
    expected_version: Optional[int] = None,
) -> Context:
    addition = _coerce_content(content)
    return _mutate(db, user_id, name, lambda existing: merge_append(existing, addition), expected_version)


def replace_context(
    db,
    user_id: str,
    name: str,
    content: ContentInput,
    expected_version: Optional[int] = None,
) -> Context:
    replacement = _coerce_content(content)
    return _mutate(db, user_id, name, lambda existing: merge_replace(existing, replacement), expected_version)


def delete_context(db, user_id: str, name: str) -> bool:
    """Delete a document and its history. Returns False if nothing matched."""
    context = _find(db, user_id, name)
    if context is None:
        return False
    db.delete(context)
    db.commit()
    logger.info(f"Deleted context '{name}' for user {user_id}")
    return True


def list_history(db, user_id: str, name: str) -> List[ContextHistory]:
    """Snapshots for one document, newest version first."""
    context = _find(db, user_id, name)
    if context is None:
        raise ContextNotFoundError(name)
    return db.query(ContextHistory).filter(
        ContextHistory.context_id == context.id
    ).order_by(ContextHistory.version.desc()).all()


# =============================================================================
# Serializers
# =============================================================================

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def context_to_dict(context: Context) -> dict:
    return {
        "id": str(context.id),
        "user_id": str(context.user_id),
        "name": context.name,
        "summary": context.summary,
        "tags": list(context.tags or []),
        "content": context.content or {},
        "version": context.version,
        "created_at": _iso(context.created_at),
        "updated_at": _iso(context.updated_at),
    }


def context_summary(context: Context) -> dict:
    return {
        "id": str(context.id),
        "name": context.name,
        "summary": context.summary,
        "tags": list(context.tags or []),
        "version": context.version,
        "updated_at": _iso(context.updated_at),
    }


def history_to_dict(entry: ContextHistory) -> dict:
    return {
        "version": entry.version,
        "content": entry.content or {},
        "inserted_at": _iso(entry.inserted_at),
    }
