import json
import logging

import pytest
from sqlalchemy.exc import OperationalError

import context_service
from conftest import create_user


MCP_HEADERS = {"accept": "application/json, text/event-stream"}


def _jsonrpc(client, token: str, method: str, params: dict) -> dict:
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": method,
        "params": params,
    }
    response = client.post(
        "/mcp",
        json=payload,
        headers={**MCP_HEADERS, "authorization": f"Bearer {token}"},
    )
    assert response.status_code == 200
    return response.json()


def _call_tool(client, token: str, name: str, arguments: dict) -> str:
    data = _jsonrpc(client, token, "tools/call", {"name": name, "arguments": arguments})
    assert "error" not in data
    return data["result"]["content"][0]["text"]


@pytest.fixture
def alice(db_session):
    return create_user(db_session)


@pytest.fixture
def token(make_token, alice):
    return make_token()


def test_create_then_get(client, token):
    text = _call_tool(client, token, "create_context", {
        "name": "alpha",
        "summary": "Alpha project",
        "tags": ["design"],
        "content": {"background": "bg", "assumptions": ["a"]},
    })
    assert text.startswith("Created context 'alpha' (v1) in ")
    assert text.endswith("ms")

    document = json.loads(_call_tool(client, token, "get_context", {"name": "alpha"}))
    assert document["name"] == "alpha"
    assert document["version"] == 1
    assert document["tags"] == ["design"]
    assert document["content"] == {"background": "bg", "assumptions": ["a"]}


def test_create_twice_reports_already_exists(client, token):
    _call_tool(client, token, "create_context", {"name": "alpha", "content": {"notes": "first"}})

    text = _call_tool(client, token, "create_context", {"name": "alpha", "content": {"notes": "second"}})

    assert text == "Context 'alpha' already exists."
    document = json.loads(_call_tool(client, token, "get_context", {"name": "alpha"}))
    assert document["content"] == {"notes": "first"}


def test_get_missing_context(client, token):
    assert _call_tool(client, token, "get_context", {"name": "missing"}) == "Context 'missing' not found."


def test_append_update_and_history(client, token):
    _call_tool(client, token, "create_context", {"name": "alpha", "content": {"assumptions": ["a"]}})

    assert _call_tool(client, token, "append_context", {
        "name": "alpha", "content": {"assumptions": ["b"]},
    }) == "Appended to context 'alpha' (v2)."
    assert _call_tool(client, token, "update_context", {
        "name": "alpha", "content": {"notes": "x"},
    }) == "Updated context 'alpha' (v3)."

    document = json.loads(_call_tool(client, token, "get_context", {"name": "alpha"}))
    assert document["content"] == {"assumptions": ["a", "b"], "notes": "x"}

    history = json.loads(_call_tool(client, token, "get_context_history", {"name": "alpha"}))
    assert [entry["version"] for entry in history["history"]] == [2, 1]
    assert history["history"][1]["content"] == {"assumptions": ["a"]}


def test_append_with_stale_version_reports_conflict(client, token):
    _call_tool(client, token, "create_context", {"name": "alpha", "content": {}})
    _call_tool(client, token, "append_context", {"name": "alpha", "content": {"notes": "one"}})

    text = _call_tool(client, token, "append_context", {
        "name": "alpha", "content": {"notes": "two"}, "expected_version": 1,
    })

    assert "modified concurrently" in text
    document = json.loads(_call_tool(client, token, "get_context", {"name": "alpha"}))
    assert document["version"] == 2


def test_append_missing_context(client, token):
    text = _call_tool(client, token, "append_context", {"name": "missing", "content": {"notes": "x"}})

    assert text == "Context 'missing' not found."


def test_list_with_tag_filter(client, token):
    _call_tool(client, token, "create_context", {"name": "a", "tags": ["design"], "content": {}})
    _call_tool(client, token, "create_context", {"name": "b", "tags": ["ops"], "content": {}})

    everything = json.loads(_call_tool(client, token, "list_contexts", {}))
    design = json.loads(_call_tool(client, token, "list_contexts", {"tags": ["design"]}))

    assert {c["name"] for c in everything["contexts"]} == {"a", "b"}
    assert [c["name"] for c in design["contexts"]] == ["a"]
    assert "content" not in design["contexts"][0]


def test_delete_is_scoped_to_caller(client, token, db_session, make_token):
    bob = create_user(db_session, email="bob@example.com", auth_subject="auth0|bob")
    context_service.create_context(db_session, bob.id, "shared", {"notes": "bob"})
    _call_tool(client, token, "create_context", {"name": "shared", "content": {"notes": "alice"}})

    assert _call_tool(client, token, "delete_context", {"name": "shared"}) == "Deleted context 'shared'."

    remaining = json.loads(_call_tool(client, token, "list_contexts", {}))
    assert remaining["contexts"] == []
    bob_token = make_token(sub="auth0|bob")
    bob_doc = json.loads(_call_tool(client, bob_token, "get_context", {"name": "shared"}))
    assert bob_doc["content"] == {"notes": "bob"}


def test_delete_missing_context(client, token):
    assert _call_tool(client, token, "delete_context", {"name": "missing"}) == "Context 'missing' not found."


def test_unlinked_subject_gets_in_band_unauthorized(client, make_token, alice):
    stranger = make_token(sub="auth0|stranger")

    text = _call_tool(client, stranger, "list_contexts", {})

    assert text.startswith("Unauthorized")


def test_read_context_resource(client, token):
    _call_tool(client, token, "create_context", {"name": "alpha", "content": {"notes": "n"}})

    data = _jsonrpc(client, token, "resources/read", {"uri": "context://alpha"})

    contents = data["result"]["contents"]
    assert contents[0]["mimeType"] == "application/json"
    assert json.loads(contents[0]["text"])["content"] == {"notes": "n"}


def test_read_missing_resource_is_an_error(client, token):
    data = _jsonrpc(client, token, "resources/read", {"uri": "context://missing"})

    assert "error" in data


def test_resource_database_failure_is_an_error(client, token, monkeypatch, caplog):
    def unavailable(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database unavailable"))

    monkeypatch.setattr(context_service, "get_context", unavailable)

    with caplog.at_level(logging.ERROR, logger="contextdb"):
        data = _jsonrpc(client, token, "resources/read", {"uri": "context://alpha"})

    assert "error" in data
    assert "Failed to load context resource 'alpha'" in caplog.text


def test_resource_template_is_listed(client, token):
    data = _jsonrpc(client, token, "resources/templates/list", {})

    templates = [t["uriTemplate"] for t in data["result"]["resourceTemplates"]]
    assert "context://{name}" in templates
