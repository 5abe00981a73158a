from datetime import datetime, timedelta, timezone

import pytest

import context_service
from conftest import create_user
from models import Context
from oauth_models import User


@pytest.fixture
def logged_in(client, db_session):
    """Sign up and log in through the API; returns the account's User row."""
    client.post("/api/auth/signup", json={"email": "alice@example.com", "password": "correct horse"})
    client.post("/api/auth/login", json={"email": "alice@example.com", "password": "correct horse"})
    return db_session.query(User).filter(User.email == "alice@example.com").one()


def test_requires_session(client):
    assert client.get("/api/contexts").status_code == 401
    assert client.get("/api/contexts/alpha").status_code == 401
    assert client.delete("/api/contexts/alpha").status_code == 401


def test_list_newest_first_with_tag_filter(client, db_session, logged_in):
    context_service.create_context(db_session, logged_in.id, "old", {}, tags=["design"])
    context_service.create_context(db_session, logged_in.id, "new", {}, tags=["design", "api"])
    context_service.create_context(db_session, logged_in.id, "ops", {}, tags=["ops"])
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for offset, name in enumerate(("ops", "old", "new")):
        db_session.query(Context).filter(Context.name == name).one().updated_at = base + timedelta(hours=offset)
    db_session.commit()

    everything = client.get("/api/contexts").json()["contexts"]
    design = client.get("/api/contexts", params={"tag": "design"}).json()["contexts"]
    both = client.get("/api/contexts", params=[("tag", "design"), ("tag", "api")]).json()["contexts"]

    assert [c["name"] for c in everything] == ["new", "old", "ops"]
    assert [c["name"] for c in design] == ["new", "old"]
    assert [c["name"] for c in both] == ["new"]


def test_get_context(client, db_session, logged_in):
    context_service.create_context(db_session, logged_in.id, "alpha", {"notes": "n"})

    response = client.get("/api/contexts/alpha")

    assert response.status_code == 200
    assert response.json()["context"]["content"] == {"notes": "n"}


def test_get_missing_context_is_404(client, logged_in):
    assert client.get("/api/contexts/missing").status_code == 404


def test_other_users_contexts_are_invisible(client, db_session, logged_in):
    bob = create_user(db_session, email="bob@example.com", auth_subject="auth0|bob")
    context_service.create_context(db_session, bob.id, "secret", {"notes": "bob only"})

    assert client.get("/api/contexts").json()["contexts"] == []
    assert client.get("/api/contexts/secret").status_code == 404


def test_delete_context(client, db_session, logged_in):
    context_service.create_context(db_session, logged_in.id, "alpha", {})

    response = client.delete("/api/contexts/alpha")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert client.get("/api/contexts/alpha").status_code == 404


def test_history(client, db_session, logged_in):
    context_service.create_context(db_session, logged_in.id, "alpha", {"notes": "one"})
    context_service.append_context(db_session, logged_in.id, "alpha", {"notes": "two"})

    response = client.get("/api/contexts/alpha/history")

    assert response.status_code == 200
    history = response.json()["history"]
    assert [entry["version"] for entry in history] == [1]
    assert history[0]["content"] == {"notes": "one"}
    assert client.get("/api/contexts/missing/history").status_code == 404
