"""
MCP Authentication Gate - ASGI Middleware

Protects /mcp and /sse with OAuth bearer tokens.
SSE-safe (no buffering), validates headers before forwarding to the MCP app.
"""

import json
import logging
from typing import Optional

from auth_middleware import auth_error_body, extract_bearer_token, www_authenticate_header
from config import Settings
from identity import IdentityResolutionError, resolve_identity
from oauth import AuthError, TokenVerifier

logger = logging.getLogger("contextdb.auth")


class BearerAuthGateASGI:
    """
    Pure ASGI middleware that gates MCP transports with bearer auth.

    - Verifies Authorization: Bearer <jwt> against the identity provider
    - Returns 400/401/500 with an RFC 6750 envelope on failure
    - Allows OPTIONS (CORS preflight)
    - Resolves the internal user id and stores it on scope["state"]
    - No response buffering (SSE-safe)
    """

    def __init__(
        self,
        wrapped_app,
        verifier: TokenVerifier,
        sessionmaker_getter,
        settings: Settings,
    ):
        self.wrapped_app = wrapped_app
        self.verifier = verifier
        self.get_sessionmaker = sessionmaker_getter
        self.settings = settings

    async def __call__(self, scope, receive, send):
        # Only gate HTTP requests
        if scope["type"] != "http":
            await self.wrapped_app(scope, receive, send)
            return

        # Allow OPTIONS (CORS preflight)
        if scope["method"] == "OPTIONS":
            await self.wrapped_app(scope, receive, send)
            return

        headers = {
            k.decode("latin-1"): v.decode("latin-1")
            for k, v in scope.get("headers", [])
        }

        try:
            token = extract_bearer_token(headers)
            claims = await self.verifier.verify(token)
        except AuthError as e:
            logger.warning(f"Rejected {scope['method']} {scope.get('path')}: {e.description}")
            await self._send_auth_error(send, e)
            return

        # Late binding - sessionmaker set after init_db
        SessionLocal = self.get_sessionmaker()
        if SessionLocal is None:
            await self._send_503(send)
            return

        user_id = self._resolve_user_id(SessionLocal, claims)

        state = scope.setdefault("state", {})
        state["user_id"] = user_id
        state["auth_subject"] = claims.get("sub")
        state["auth_claims"] = claims

        await self.wrapped_app(scope, receive, send)

    def _resolve_user_id(self, SessionLocal, claims: dict) -> Optional[str]:
        db = SessionLocal()
        try:
            return resolve_identity(db, claims, mode=self.settings.identity_mode)
        except IdentityResolutionError:
            # Request proceeds unauthenticated; tools report it in-band
            return None
        finally:
            db.close()

    async def _send_json(self, send, status: int, payload: dict, extra_headers=()):
        response_body = json.dumps(payload).encode()
        await send({
            "type": "http.response.start",
            "status": status,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(response_body)).encode()),
                *extra_headers,
            ],
        })
        await send({
            "type": "http.response.body",
            "body": response_body,
        })

    async def _send_auth_error(self, send, error: AuthError):
        """Send the bearer challenge with a JSON error body."""
        challenge = www_authenticate_header(error, self.settings)
        await self._send_json(
            send,
            error.status_code,
            auth_error_body(error),
            extra_headers=[(b"www-authenticate", challenge.encode())],
        )

    async def _send_503(self, send):
        """Send 503 Service Unavailable response."""
        await self._send_json(send, 503, {
            "error": "Service Unavailable",
            "message": "Database not initialized - server is starting up",
        })
