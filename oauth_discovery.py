"""
OAuth 2.0 Discovery and Client Registration for MCP Clients

Chat clients find the identity provider through these endpoints, then obtain
tokens from it directly. This service never issues tokens itself.

Flow:
1. Client probes /.well-known/oauth-protected-resource (or gets a 401 whose
   WWW-Authenticate header points there)
2. Client reads /.well-known/oauth-authorization-server for the provider's
   authorize/token/JWKS endpoints
3. Client registers itself via POST /register, proxied to the provider
4. Client runs authorization code + PKCE against the provider
5. Provider-issued access token is used for all subsequent MCP requests
"""

import logging
from typing import Any, Dict

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from config import Settings

logger = logging.getLogger("contextdb.auth")

REGISTRATION_TIMEOUT_SECONDS = 10.0

# Headers that describe the upstream connection, not the payload
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}


# =============================================================================
# Metadata builders
# =============================================================================

def protected_resource_metadata(settings: Settings) -> Dict[str, Any]:
    """OAuth Protected Resource Metadata (RFC 9728)"""
    metadata = {
        "resource": f"{settings.base_url}/mcp",
        "authorization_servers": [settings.issuer],
        "bearer_methods_supported": ["header"],
        "scopes_supported": settings.scopes,
    }
    if settings.upstream_registration_url:
        metadata["registration_endpoint"] = settings.upstream_registration_url
    return metadata


def authorization_server_metadata(settings: Settings) -> Dict[str, Any]:
    """OAuth Authorization Server Metadata (RFC 8414)"""
    return {
        "issuer": settings.issuer,
        "authorization_endpoint": settings.authorization_endpoint,
        "token_endpoint": settings.token_endpoint,
        "registration_endpoint": f"{settings.base_url}/register",
        "jwks_uri": settings.resolved_jwks_url,
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "code_challenge_methods_supported": ["S256"],
        "scopes_supported": settings.scopes,
        "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
    }


# =============================================================================
# Router
# =============================================================================

router = APIRouter()


def _settings(request: Request) -> Settings:
    return request.app.state.settings


# =============================================================================
# Discovery Endpoints
# =============================================================================

@router.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource(request: Request):
    return protected_resource_metadata(_settings(request))


@router.get("/.well-known/oauth-protected-resource/{resource:path}")
async def oauth_protected_resource_for_path(resource: str, request: Request):
    """Path-suffixed form some clients use (e.g. .../oauth-protected-resource/mcp)"""
    return protected_resource_metadata(_settings(request))


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server(request: Request):
    return authorization_server_metadata(_settings(request))


# Clients also probe relative to the MCP base path
@router.get("/mcp/.well-known/oauth-protected-resource")
async def oauth_protected_resource_mcp(request: Request):
    return protected_resource_metadata(_settings(request))


@router.get("/mcp/.well-known/oauth-authorization-server")
async def oauth_authorization_server_mcp(request: Request):
    return authorization_server_metadata(_settings(request))


# =============================================================================
# Dynamic Client Registration proxy
# =============================================================================

def _registration_error(description: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "server_error", "error_description": description},
    )


@router.post("/register")
async def register_client(request: Request):
    """
    Forward a Dynamic Client Registration request to the identity provider.

    Body and content type go upstream unchanged; status, headers and body
    come back unchanged apart from hop-by-hop headers.
    """
    target = _settings(request).upstream_registration_url
    if not target:
        return _registration_error("Client registration is not configured")

    body = await request.body()
    headers = {"content-type": request.headers.get("content-type", "application/json")}

    client = getattr(request.app.state, "http_client", None)
    try:
        if client is not None:
            upstream = await client.post(target, content=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=REGISTRATION_TIMEOUT_SECONDS) as temp_client:
                upstream = await temp_client.post(target, content=body, headers=headers)
    except httpx.HTTPError as e:
        logger.error(f"Client registration proxy to {target} failed: {e}")
        return _registration_error("Failed to reach the authorization server")

    relayed = {
        key: value
        for key, value in upstream.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    }
    logger.info(f"Proxied client registration, upstream status {upstream.status_code}")
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=relayed,
    )
