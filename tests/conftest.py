import pytest
from fastapi.testclient import TestClient

from docshare.api import create_app
from docshare.config import Settings


@pytest.fixture
def settings(tmp_path):
    """Isolated database and upload directory for each test."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        upload_dir=str(tmp_path / "uploads"),
        bcrypt_rounds=4,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_client(client):
    """A client logged in as ``alice``."""
    client.post("/api/register", json={"username": "alice", "password": "wonderland"})
    resp = client.post("/api/login", json={"username": "alice", "password": "wonderland"})
    assert resp.status_code == 200
    return client
