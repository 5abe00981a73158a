"""
Runtime configuration for ContextDB

All settings come from environment variables and are read once into a
frozen Settings instance.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("contextdb")

DEFAULT_SCOPES = "openid profile email offline_access"
IDENTITY_MODES = {"lookup", "sync"}


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _with_trailing_slash(url: str) -> str:
    if url and not url.endswith("/"):
        return url + "/"
    return url


@dataclass(frozen=True)
class Settings:
    """Process configuration"""
    database_url: Optional[str] = None
    db_backend: str = "postgres"
    sqlite_path: str = "./contextdb.db"

    # Identity provider
    issuer_base_url: str = ""
    audience: str = ""
    jwks_url: str = ""
    registration_url: str = ""
    scopes: list[str] = field(default_factory=lambda: DEFAULT_SCOPES.split())
    identity_mode: str = "lookup"

    # This service
    public_base_url: str = "http://localhost:8080"
    cors_origin: str = "*"
    port: int = 8080
    log_level: str = "INFO"

    @property
    def issuer(self) -> str:
        """Issuer as it appears in the `iss` claim (trailing slash)"""
        return _with_trailing_slash(self.issuer_base_url)

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.issuer}authorize" if self.issuer else ""

    @property
    def token_endpoint(self) -> str:
        return f"{self.issuer}oauth/token" if self.issuer else ""

    @property
    def resolved_jwks_url(self) -> str:
        if self.jwks_url:
            return self.jwks_url
        return f"{self.issuer}.well-known/jwks.json" if self.issuer else ""

    @property
    def upstream_registration_url(self) -> str:
        if self.registration_url:
            return self.registration_url
        return f"{self.issuer}oidc/register" if self.issuer else ""

    @property
    def base_url(self) -> str:
        return self.public_base_url.rstrip("/")

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.base_url}/.well-known/oauth-protected-resource"

    def resolve_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        if self.db_backend == "sqlite":
            return f"sqlite:///{self.sqlite_path}"
        raise RuntimeError("DATABASE_URL environment variable is required")


def load_settings() -> Settings:
    """Build Settings from the environment"""
    identity_mode = _env("IDENTITY_MODE", "lookup").lower()
    if identity_mode not in IDENTITY_MODES:
        logger.warning(f"Unknown IDENTITY_MODE {identity_mode!r}, falling back to 'lookup'")
        identity_mode = "lookup"

    settings = Settings(
        database_url=_env("DATABASE_URL") or None,
        db_backend=_env("DB_BACKEND", "postgres").lower(),
        sqlite_path=_env("SQLITE_PATH", "./contextdb.db"),
        issuer_base_url=_env("AUTH_ISSUER_BASE_URL"),
        audience=_env("AUTH_AUDIENCE"),
        jwks_url=_env("AUTH_JWKS_URL"),
        registration_url=_env("AUTH_REGISTRATION_URL"),
        scopes=_env("AUTH_SCOPES", DEFAULT_SCOPES).split(),
        identity_mode=identity_mode,
        public_base_url=_env("PUBLIC_BASE_URL", "http://localhost:8080"),
        cors_origin=_env("CORS_ORIGIN", "*"),
        port=int(_env("PORT", "8080") or 8080),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
    )

    for name, value in (
        ("AUTH_ISSUER_BASE_URL", settings.issuer_base_url),
        ("AUTH_AUDIENCE", settings.audience),
    ):
        if not value:
            logger.warning(f"{name} is not set")

    return settings
