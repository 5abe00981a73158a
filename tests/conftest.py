"""
Pytest fixtures for ContextDB tests.

Provides an in-memory database shared by the server, a signing key whose
JWKS is served through httpx.MockTransport, and a token factory.
"""
import os
import sys
import time

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment before any imports
os.environ.setdefault("DB_BACKEND", "sqlite")

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import Base first
from models import Base

# Import ALL model modules to register tables with Base.metadata
import models  # noqa: F401
import oauth_models  # noqa: F401

from config import Settings
from oauth import TokenVerifier, TokenVerifierConfig
from oauth_models import User

ISSUER_BASE_URL = "https://auth.example.com"
AUDIENCE = "https://contextdb.example.com/mcp"
KID = "test-key-1"
SUBJECT = "auth0|alice"


# =============================================================================
# Async backend
# =============================================================================

@pytest.fixture
def anyio_backend():
    """The MCP/fastmcp stack runs on asyncio only."""
    return "asyncio"


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """
    Create a SHARED in-memory database that persists across connections.

    Critical: Use StaticPool for in-memory SQLite to ensure
    all connections see the same database instance.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={
            "check_same_thread": False,  # Allow multi-threading
        },
        poolclass=StaticPool,
    )

    # Create ALL tables
    Base.metadata.create_all(engine)

    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Create a test database session."""
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def server_db(db_engine):
    """Bind server.DB to the in-memory engine for app-level tests."""
    from server import DB

    SessionLocal = sessionmaker(bind=db_engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = db_engine
    DB.SessionLocal = SessionLocal
    try:
        yield DB
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session


def create_user(db, email="alice@example.com", auth_subject=SUBJECT, name="Alice") -> User:
    user = User(email=email, name=name, auth_subject=auth_subject)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db_session):
    return create_user(db_session)


# =============================================================================
# Tokens
# =============================================================================

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_private_key):
    jwk = jwt.algorithms.RSAAlgorithm.to_jwk(rsa_private_key.public_key(), as_dict=True)
    jwk.update({"kid": KID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def make_token(rsa_private_key):
    """Sign an access token; keyword arguments override the default claims."""
    def _make_token(kid=KID, key=None, **overrides):
        now = int(time.time())
        claims = {
            "iss": f"{ISSUER_BASE_URL}/",
            "aud": AUDIENCE,
            "sub": SUBJECT,
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(
            claims,
            key or rsa_private_key,
            algorithm="RS256",
            headers={"kid": kid},
        )
    return _make_token


# =============================================================================
# Settings, verifier, app
# =============================================================================

@pytest.fixture
def test_settings():
    return Settings(
        db_backend="sqlite",
        issuer_base_url=ISSUER_BASE_URL,
        audience=AUDIENCE,
        public_base_url="http://testserver",
        identity_mode="lookup",
    )


@pytest.fixture
def jwks_requests():
    return []


@pytest.fixture
def jwks_transport(jwks, jwks_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        jwks_requests.append(request)
        return httpx.Response(200, json=jwks)
    return httpx.MockTransport(handler)


@pytest.fixture
def verifier(test_settings, jwks_transport):
    return TokenVerifier(
        TokenVerifierConfig.from_settings(test_settings),
        http_client=httpx.AsyncClient(transport=jwks_transport),
    )


@pytest.fixture
def app(server_db, test_settings, verifier):
    from server import create_app
    return create_app(settings=test_settings, verifier=verifier)


@pytest.fixture
def client(app):
    """TestClient running the app lifespan, with /mcp slash normalization."""
    from server import SlashNormalizerASGI
    with TestClient(SlashNormalizerASGI(app)) as test_client:
        yield test_client
