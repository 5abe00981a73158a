import pytest

from auth_middleware import (
    auth_error_body,
    extract_bearer_token,
    hash_password,
    verify_password,
    www_authenticate_header,
)
from oauth import InvalidRequestError, InvalidTokenError, MissingCredentialsError


def test_extract_bearer_token_is_case_insensitive():
    assert extract_bearer_token({"Authorization": "Bearer abc.def.ghi"}) == "abc.def.ghi"
    assert extract_bearer_token({"authorization": "bearer abc.def.ghi"}) == "abc.def.ghi"


@pytest.mark.parametrize("headers", [{}, {"authorization": ""}, {"authorization": "Basic dXNlcjpwYXNz"}])
def test_missing_bearer_credentials(headers):
    with pytest.raises(MissingCredentialsError) as excinfo:
        extract_bearer_token(headers)

    assert excinfo.value.status_code == 401
    assert excinfo.value.error is None


@pytest.mark.parametrize("value", ["Bearer", "Bearer ", "Bearer two tokens"])
def test_malformed_bearer_header(value):
    with pytest.raises(InvalidRequestError) as excinfo:
        extract_bearer_token({"authorization": value})

    assert excinfo.value.status_code == 400
    assert excinfo.value.error == "invalid_request"


def test_www_authenticate_names_discovery_endpoints(test_settings):
    header = www_authenticate_header(InvalidTokenError('Token has "expired"'), test_settings)

    assert header.startswith('Bearer realm="contextdb"')
    assert 'error="invalid_token"' in header
    assert 'error_description="Token has \\"expired\\""' in header
    assert 'authorization_uri="https://auth.example.com/authorize"' in header
    assert 'token_uri="https://auth.example.com/oauth/token"' in header
    assert 'resource_metadata="http://testserver/.well-known/oauth-protected-resource"' in header


def test_www_authenticate_omits_error_when_credentials_missing(test_settings):
    header = www_authenticate_header(MissingCredentialsError("Authentication required"), test_settings)

    assert "error=" not in header
    assert "authorization_uri=" in header


def test_auth_error_body():
    assert auth_error_body(InvalidTokenError("bad")) == {
        "error": "invalid_token",
        "error_description": "bad",
    }
    assert auth_error_body(MissingCredentialsError("Authentication required"))["error"] == "unauthorized"


def test_password_hash_round_trip():
    password_hash = hash_password("correct horse")

    assert password_hash != "correct horse"
    assert verify_password("correct horse", password_hash)
    assert not verify_password("wrong horse", password_hash)


def test_verify_password_rejects_corrupt_hash():
    assert verify_password("anything", "not-a-bcrypt-hash") is False
