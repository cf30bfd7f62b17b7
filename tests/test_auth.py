from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

import docshare.auth
from docshare.api import create_app
from docshare.auth import hash_password, verify_password
from docshare.config import Settings
from docshare.errors import Unauthorized


def test_register_and_login(client):
    resp = client.post("/api/register", json={"username": "bob", "password": "secret"})
    assert resp.status_code == 201
    assert client.get("/api/auth_status").json() == {"authenticated": False}

    resp = client.post("/api/login", json={"username": "bob", "password": "secret"})
    assert resp.status_code == 200
    assert resp.json()["username"] == "bob"

    status = client.get("/api/auth_status").json()
    assert status == {"authenticated": True, "username": "bob"}


def test_register_duplicate_username(client):
    payload = {"username": "bob", "password": "secret"}
    assert client.post("/api/register", json=payload).status_code == 201
    resp = client.post("/api/register", json=payload)
    assert resp.status_code == 409


def test_register_requires_username_and_password(client):
    resp = client.post("/api/register", json={"username": "bob"})
    assert resp.status_code == 400


def test_login_failure_does_not_reveal_which_part_was_wrong(client):
    client.post("/api/register", json={"username": "bob", "password": "secret"})

    wrong_password = client.post("/api/login", json={"username": "bob", "password": "nope"})
    unknown_user = client.post("/api/login", json={"username": "carol", "password": "secret"})

    assert wrong_password.status_code == 401
    assert unknown_user.status_code == 401
    assert wrong_password.json() == unknown_user.json()
    assert client.get("/api/auth_status").json()["authenticated"] is False


def test_logout_ends_session(auth_client):
    assert auth_client.get("/api/documents").status_code == 200

    resp = auth_client.post("/api/logout")
    assert resp.status_code == 200
    assert auth_client.get("/api/auth_status").json() == {"authenticated": False}
    assert auth_client.get("/api/documents").status_code == 401


def test_stale_cookie_is_rejected_after_logout(app, auth_client):
    token = auth_client.cookies.get("docshare_session")
    assert token
    auth_client.post("/api/logout")

    replay = TestClient(app)
    resp = replay.get("/api/articles", headers={"Cookie": f"docshare_session={token}"})
    assert resp.status_code == 401


def test_expired_session_is_not_authenticated(app):
    auth = app.state.authenticator
    auth.session_ttl = timedelta(0)
    auth.register("bob", "secret")
    record = auth.login("bob", "secret")

    assert auth.resolve(record.token) is None
    assert auth.auth_status(record.token) == {"authenticated": False}


def test_api_routes_return_401_without_session(client):
    assert client.get("/api/documents").status_code == 401
    assert client.get("/api/articles").status_code == 401
    assert client.post("/api/articles", json={"title": "t", "content": "c"}).status_code == 401
    assert client.delete("/api/documents/1").status_code == 401
    assert client.get("/api/download/1").status_code == 401


def test_pages_redirect_to_login_without_session(client):
    for path in ["/", "/upload", "/documents", "/knowledge", "/knowledge/new", "/knowledge/3"]:
        resp = client.get(path, follow_redirects=False)
        assert resp.status_code == 303, path
        assert resp.headers["location"] == "/login"

    assert client.get("/login").status_code == 200
    assert client.get("/register").status_code == 200


def test_pages_served_with_session(auth_client):
    resp = auth_client.get("/documents")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]


def test_login_is_rate_limited(client):
    codes = [
        client.post("/api/login", json={"username": "x", "password": "y"}).status_code
        for _ in range(6)
    ]
    assert codes[:5] == [401] * 5
    assert codes[5] == 429


def test_password_hash_is_salted():
    first = hash_password("secret", rounds=4)
    second = hash_password("secret", rounds=4)
    assert first != second
    assert verify_password("secret", first)
    assert not verify_password("other", first)
    assert not verify_password("secret", "not-a-hash")


def test_unknown_user_login_still_checks_a_hash(app, monkeypatch):
    checked = []

    def recording_verify(password, password_hash):
        checked.append(password_hash)
        return verify_password(password, password_hash)

    monkeypatch.setattr(docshare.auth, "verify_password", recording_verify)
    auth = app.state.authenticator

    with pytest.raises(Unauthorized):
        auth.login("nobody", "secret")
    assert checked == [auth._dummy_hash]

    with pytest.raises(Unauthorized):
        auth.login("", "")
    assert len(checked) == 2


def test_register_and_login_accept_null_fields_as_missing(client):
    resp = client.post("/api/register", json={"username": None, "password": None})
    assert resp.status_code == 400
    resp = client.post("/api/login", json={"username": None, "password": "x"})
    assert resp.status_code == 401


def test_numeric_username_is_coerced(client):
    assert client.post("/api/register", json={"username": 42, "password": "secret"}).status_code == 201
    resp = client.post("/api/login", json={"username": "42", "password": "secret"})
    assert resp.json()["username"] == "42"


def test_logout_fails_when_store_fails(auth_client, monkeypatch):
    def broken_commit(self):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(Session, "commit", broken_commit)
    resp = auth_client.post("/api/logout")
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to end session"


def test_register_fails_when_store_fails(client, monkeypatch):
    def broken_commit(self):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(Session, "commit", broken_commit)
    resp = client.post("/api/register", json={"username": "bob", "password": "secret"})
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Registration failed"


def test_register_conflict_from_unique_constraint(client, monkeypatch):
    payload = {"username": "bob", "password": "secret"}
    assert client.post("/api/register", json=payload).status_code == 201

    # the existence check misses, so the insert hits the unique index
    monkeypatch.setattr(Query, "first", lambda self: None)
    resp = client.post("/api/register", json=payload)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Username already exists"


def test_rate_limit_setting_is_per_app(tmp_path):
    limited = create_app(
        Settings(database_url=f"sqlite:///{tmp_path / 'a.db'}", upload_dir=str(tmp_path / "a"), bcrypt_rounds=4)
    )
    unlimited = create_app(
        Settings(
            database_url=f"sqlite:///{tmp_path / 'b.db'}",
            upload_dir=str(tmp_path / "b"),
            bcrypt_rounds=4,
            rate_limit_enabled=False,
        )
    )
    assert limited.state.limiter.enabled
    assert not unlimited.state.limiter.enabled

    def attempts(app):
        client = TestClient(app)
        return [
            client.post("/api/login", json={"username": "x", "password": "y"}).status_code
            for _ in range(6)
        ]

    assert attempts(limited)[5] == 429
    assert attempts(unlimited) == [401] * 6
