"""
ContextDB - Persistent Project Context for AI Chat Clients
MCP Server with PostgreSQL backend (SQLite for local development)
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import unquote

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastmcp import FastMCP
from fastmcp.exceptions import ResourceError
from fastmcp.server.dependencies import get_http_request
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

import context_service
from config import Settings, load_settings
from context_service import ContextServiceError
from models import Base
from schemas import ContextContent

# =============================================================================
# Configuration
# =============================================================================

SETTINGS = load_settings()

logging.basicConfig(level=getattr(logging, SETTINGS.log_level, logging.INFO))
logger = logging.getLogger("contextdb")

SERVICE_VERSION = "0.1.0"
UNAUTHORIZED_MESSAGE = "Unauthorized: missing user id for session"

# =============================================================================
# Global State
# =============================================================================

# Database state holder (avoids global scoping issues)
class DB:
    engine = None
    SessionLocal = None


def init_db(settings: Settings):
    """Initialize database connection and create tables."""
    if DB.SessionLocal is not None:
        return

    logger.info("Connecting to database...")
    DB.engine = create_engine(settings.resolve_database_url(), pool_pre_ping=True)
    DB.SessionLocal = sessionmaker(bind=DB.engine)

    # Import user models to register tables with Base
    import oauth_models  # noqa: F401

    logger.info("Creating tables...")
    Base.metadata.create_all(DB.engine)
    logger.info("Database initialized")


# =============================================================================
# Helper Functions
# =============================================================================

def _current_user_id() -> Optional[str]:
    """Internal user id the auth gate resolved for the in-flight request."""
    try:
        request = get_http_request()
    except RuntimeError:
        return None
    return getattr(request.state, "user_id", None)


def _to_json(payload) -> str:
    return json.dumps(payload, indent=2)


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP("ContextDB")


@mcp.tool()
def create_context(
    name: str,
    content: ContextContent,
    summary: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> str:
    """
    Create a new named context for this user.

    Args:
        name: Unique name for the context (per user)
        content: Initial payload (background, assumptions, decisions, open_items, notes)
        summary: Optional one-line description
        tags: Optional tags for filtering

    Returns:
        Confirmation text, or why the context could not be created
    """
    user_id = _current_user_id()
    if not user_id:
        return UNAUTHORIZED_MESSAGE

    start = time.monotonic()
    db = DB.SessionLocal()
    try:
        context_service.create_context(db, user_id, name, content, summary=summary, tags=tags)
        duration_ms = int((time.monotonic() - start) * 1000)
        return f"Created context '{name}' (v1) in {duration_ms}ms"
    except ContextServiceError as e:
        return e.message
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create context '{name}': {e}")
        return f"Failed to create context: {e}"
    finally:
        db.close()


@mcp.tool()
def get_context(name: str) -> str:
    """
    Load a context by name for this user.

    Returns:
        The full context document as JSON
    """
    user_id = _current_user_id()
    if not user_id:
        return UNAUTHORIZED_MESSAGE

    db = DB.SessionLocal()
    try:
        context = context_service.get_context(db, user_id, name)
        if context is None:
            return f"Context '{name}' not found."
        return _to_json(context_service.context_to_dict(context))
    except SQLAlchemyError as e:
        logger.error(f"Failed to load context '{name}': {e}")
        return f"Failed to load context: {e}"
    finally:
        db.close()


@mcp.tool()
def list_contexts(tags: Optional[List[str]] = None) -> str:
    """
    List all contexts for this user, most recently updated first.

    Args:
        tags: Only return contexts carrying every one of these tags

    Returns:
        JSON object with a `contexts` list of summaries
    """
    user_id = _current_user_id()
    if not user_id:
        return UNAUTHORIZED_MESSAGE

    db = DB.SessionLocal()
    try:
        contexts = context_service.list_contexts(db, user_id, tags=tags)
        return _to_json({"contexts": [context_service.context_summary(c) for c in contexts]})
    except SQLAlchemyError as e:
        logger.error(f"Failed to list contexts: {e}")
        return f"Failed to list contexts: {e}"
    finally:
        db.close()


@mcp.tool()
def append_context(
    name: str,
    content: ContextContent,
    expected_version: Optional[int] = None,
) -> str:
    """
    Append new information to an existing context.

    List fields (assumptions, decisions, open_items) are extended; text
    fields (background, notes) are joined with a blank line. The previous
    state is kept in the context's history.

    Args:
        name: Context to append to
        content: Fields to add
        expected_version: Fail instead of writing if the context has moved past this version
    """
    user_id = _current_user_id()
    if not user_id:
        return UNAUTHORIZED_MESSAGE

    db = DB.SessionLocal()
    try:
        context = context_service.append_context(
            db, user_id, name, content, expected_version=expected_version
        )
        return f"Appended to context '{name}' (v{context.version})."
    except ContextServiceError as e:
        return e.message
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to append to context '{name}': {e}")
        return f"Failed to append to context: {e}"
    finally:
        db.close()


@mcp.tool()
def update_context(
    name: str,
    content: ContextContent,
    expected_version: Optional[int] = None,
) -> str:
    """
    Replace specified fields in an existing context.

    Only the fields provided are overwritten; everything else is kept.
    The previous state is kept in the context's history.
    """
    user_id = _current_user_id()
    if not user_id:
        return UNAUTHORIZED_MESSAGE

    db = DB.SessionLocal()
    try:
        context = context_service.replace_context(
            db, user_id, name, content, expected_version=expected_version
        )
        return f"Updated context '{name}' (v{context.version})."
    except ContextServiceError as e:
        return e.message
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update context '{name}': {e}")
        return f"Failed to update context: {e}"
    finally:
        db.close()


@mcp.tool()
def delete_context(name: str) -> str:
    """Delete a context (and its history) by name for this user."""
    user_id = _current_user_id()
    if not user_id:
        return UNAUTHORIZED_MESSAGE

    db = DB.SessionLocal()
    try:
        if not context_service.delete_context(db, user_id, name):
            return f"Context '{name}' not found."
        return f"Deleted context '{name}'."
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete context '{name}': {e}")
        return f"Failed to delete context: {e}"
    finally:
        db.close()


@mcp.tool()
def get_context_history(name: str) -> str:
    """
    Previous versions of a context, newest first.

    Each entry holds the payload as it was before the mutation that
    produced the next version.
    """
    user_id = _current_user_id()
    if not user_id:
        return UNAUTHORIZED_MESSAGE

    db = DB.SessionLocal()
    try:
        entries = context_service.list_history(db, user_id, name)
        return _to_json({
            "name": name,
            "history": [context_service.history_to_dict(e) for e in entries],
        })
    except ContextServiceError as e:
        return e.message
    except SQLAlchemyError as e:
        logger.error(f"Failed to load history for '{name}': {e}")
        return f"Failed to load context history: {e}"
    finally:
        db.close()


@mcp.resource(
    "context://{name}",
    name="contexts",
    description="Saved contexts in ContextDB",
    mime_type="application/json",
)
def read_context_resource(name: str) -> str:
    """A saved context as JSON, addressed as context://<name>"""
    user_id = _current_user_id()
    if not user_id:
        raise ResourceError(UNAUTHORIZED_MESSAGE)

    context_name = unquote(name)
    db = DB.SessionLocal()
    try:
        context = context_service.get_context(db, user_id, context_name)
        if context is None:
            raise ResourceError(f"Context '{context_name}' not found.")
        return _to_json(context_service.context_to_dict(context))
    except SQLAlchemyError as e:
        logger.error(f"Failed to load context resource '{context_name}': {e}")
        raise ResourceError(f"Failed to load context: {e}")
    finally:
        db.close()


# =============================================================================
# Pure ASGI wrapper: Normalize /mcp to /mcp/ without buffering
# =============================================================================

class SlashNormalizerASGI:
    """Pure ASGI middleware - no response buffering, SSE-safe."""
    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope["path"] == "/mcp":
            scope = dict(scope)  # Make mutable copy
            scope["path"] = "/mcp/"
        await self.wrapped_app(scope, receive, send)


# =============================================================================
# FastAPI App
# =============================================================================

def create_app(settings: Optional[Settings] = None, verifier=None) -> FastAPI:
    """Build the HTTP application around the shared MCP server."""
    from auth_routes import router as auth_router
    from context_routes import router as context_router
    from mcp_auth_gate import BearerAuthGateASGI
    from oauth import TokenVerifier
    from oauth_discovery import router as oauth_discovery_router
    from session_registry import SessionRegistry
    from sse_transport import SseTransport

    settings = settings or SETTINGS
    verifier = verifier or TokenVerifier.from_settings(settings)

    # Stateless MCP over a single HTTP exchange; one instance per app because
    # its session manager can only be started once
    mcp_app = mcp.http_app(
        path="/",
        transport="streamable-http",
        stateless_http=True,
        json_response=True,
    )
    sessions = SessionRegistry()
    sse = SseTransport(mcp._mcp_server, sessions)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize on startup, cleanup on shutdown."""
        init_db(settings)
        app.state.http_client = httpx.AsyncClient(timeout=10.0)
        logger.info("HTTP client initialized")
        try:
            async with mcp_app.lifespan(app):
                yield
        finally:
            await app.state.http_client.aclose()
            app.state.http_client = None
            await verifier.aclose()
            logger.info("HTTP client closed")

    app = FastAPI(title="ContextDB", redirect_slashes=False, lifespan=lifespan)
    app.state.settings = settings
    app.state.verifier = verifier
    app.state.sessions = sessions
    app.state.sse_transport = sse
    app.state.mcp_app = mcp_app
    app.state.http_client = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_origin],
        allow_credentials=settings.cors_origin != "*",
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate", "Mcp-Session-Id"],
    )

    # OAuth discovery + registration proxy (for MCP clients)
    app.include_router(oauth_discovery_router)
    # Account and dashboard API (session cookie)
    app.include_router(auth_router)
    app.include_router(context_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/")
    async def root():
        """Root endpoint with service info."""
        return {
            "service": "ContextDB",
            "version": SERVICE_VERSION,
            "description": "Persistent project context for AI chat clients",
            "endpoints": {
                "health": "/health",
                "mcp": "/mcp",
                "sse": "/sse",
                "messages": "/messages?sessionId=<id>",
                "oauth": {
                    "protected_resource": "/.well-known/oauth-protected-resource",
                    "authorization_server": "/.well-known/oauth-authorization-server",
                    "register": "/register",
                },
                "auth": {
                    "signup": "/api/auth/signup",
                    "login": "/api/auth/login",
                    "logout": "/api/auth/logout",
                    "me": "/api/auth/me",
                },
                "contexts": "/api/contexts",
            },
        }

    def gate(wrapped):
        # Late binding: DB.SessionLocal is set by init_db during startup
        return BearerAuthGateASGI(wrapped, verifier, lambda: DB.SessionLocal, settings)

    app.router.add_route("/sse", gate(sse.handle_sse), methods=["GET"], include_in_schema=False)
    app.add_api_route("/messages", sse.handle_post_message, methods=["POST"], include_in_schema=False)
    app.mount("/mcp", gate(mcp_app))

    return app


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

app = create_app()

# Wrap entire app with slash normalizer to handle /mcp -> /mcp/
asgi_app = SlashNormalizerASGI(app)


# =============================================================================
# Main (for local development only)
# =============================================================================

if __name__ == "__main__":
    print("ContextDB starting...")
    uvicorn.run(asgi_app, host="0.0.0.0", port=SETTINGS.port)
