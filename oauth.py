"""
OAuth 2.0 Bearer Token Verification for ContextDB

Access tokens are RS256 JWTs issued by the external identity provider.
They are verified against the provider's published JWKS (fetched with httpx
and cached in memory), then checked for issuer, audience and expiry.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import jwt

from config import Settings

logger = logging.getLogger("contextdb.auth")

JWKS_REFRESH_INTERVAL_SECONDS = 30


# =============================================================================
# Errors (RFC 6750 error codes)
# =============================================================================

class AuthError(Exception):
    """Base class for bearer authentication failures"""
    status_code = 401
    error: Optional[str] = None

    def __init__(self, description: str):
        super().__init__(description)
        self.description = description


class MissingCredentialsError(AuthError):
    """No bearer credentials were presented"""
    status_code = 401
    error = None


class InvalidRequestError(AuthError):
    """Authorization header is structurally invalid"""
    status_code = 400
    error = "invalid_request"


class InvalidTokenError(AuthError):
    """Bad signature, expired, or issuer/audience mismatch"""
    status_code = 401
    error = "invalid_token"


class AuthUpstreamError(AuthError):
    """Signing keys could not be retrieved from the identity provider"""
    status_code = 500
    error = "server_error"


# =============================================================================
# Verifier
# =============================================================================

@dataclass
class TokenVerifierConfig:
    """Configuration for verifying identity-provider access tokens"""
    issuer: str
    audience: str
    jwks_url: str
    algorithms: list[str] = field(default_factory=lambda: ["RS256"])
    leeway_seconds: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVerifierConfig":
        return cls(
            issuer=settings.issuer,
            audience=settings.audience,
            jwks_url=settings.resolved_jwks_url,
        )


class TokenVerifier:
    """Verifies bearer JWTs against a JWKS endpoint"""

    def __init__(self, config: TokenVerifierConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http_client = http_client
        self._owns_client = http_client is None
        self._keys: Dict[Optional[str], jwt.PyJWK] = {}
        self._last_fetch = 0.0

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "TokenVerifier":
        return cls(TokenVerifierConfig.from_settings(settings), http_client=http_client)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _fetch_jwks(self) -> None:
        if not self.config.jwks_url:
            raise AuthUpstreamError("Token verification is not configured")

        try:
            response = await self._client().get(self.config.jwks_url)
            response.raise_for_status()
            jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch JWKS from {self.config.jwks_url}: {e}")
            raise AuthUpstreamError("Unable to retrieve signing keys") from e

        keys: Dict[Optional[str], jwt.PyJWK] = {}
        for jwk in jwks.get("keys", []):
            try:
                keys[jwk.get("kid")] = jwt.PyJWK(jwk)
            except jwt.PyJWTError as e:
                logger.warning(f"Skipping unusable JWK {jwk.get('kid')}: {e}")
        self._keys = keys
        self._last_fetch = time.monotonic()
        logger.info(f"Loaded {len(keys)} signing key(s) from JWKS")

    async def _signing_key(self, kid: Optional[str]) -> jwt.PyJWK:
        if kid not in self._keys:
            stale = time.monotonic() - self._last_fetch >= JWKS_REFRESH_INTERVAL_SECONDS
            if not self._keys or stale:
                await self._fetch_jwks()

        key = self._keys.get(kid)
        if key is None and kid is None and len(self._keys) == 1:
            key = next(iter(self._keys.values()))
        if key is None:
            raise InvalidTokenError("No matching signing key")
        return key

    async def verify(self, token: str) -> Dict[str, Any]:
        """Return the token's claims or raise an AuthError"""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise InvalidTokenError("Invalid token format") from e

        algorithm = header.get("alg")
        if algorithm not in self.config.algorithms:
            raise InvalidTokenError(f"Unsupported signing algorithm: {algorithm}")

        key = await self._signing_key(header.get("kid"))

        options = {"require": ["exp", "sub"]}
        if not self.config.audience:
            options["verify_aud"] = False
        if not self.config.issuer:
            options["verify_iss"] = False

        try:
            return jwt.decode(
                token,
                key.key,
                algorithms=self.config.algorithms,
                audience=self.config.audience or None,
                issuer=self.config.issuer or None,
                leeway=self.config.leeway_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidTokenError("Token has expired") from e
        except jwt.InvalidAudienceError as e:
            raise InvalidTokenError("Token audience is not accepted") from e
        except jwt.InvalidIssuerError as e:
            raise InvalidTokenError("Token issuer is not accepted") from e
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e
