import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vidtube import profiles, services
from vidtube.api import app
from vidtube.config import settings
from vidtube.database import Base
from vidtube.models.user import User

API = "/api/v1/users"


@pytest.fixture
def session_local(monkeypatch):
    """Provide an isolated in-memory database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(services, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(profiles, "SessionLocal", TestingSessionLocal)
    return TestingSessionLocal


@pytest.fixture
def staging_dir(tmp_path, monkeypatch):
    path = tmp_path / "temp"
    monkeypatch.setattr(settings, "upload_temp_dir", str(path))
    return path


@pytest.fixture
def fake_upload(monkeypatch):
    """Replace the media host with one that always succeeds.

    Behaves like the real uploader towards the staged file: it is
    removed whether or not the upload works.
    """
    uploaded = []

    def fake(local_file_path):
        if not local_file_path:
            return None
        os.remove(local_file_path)
        uploaded.append(local_file_path)
        return {"url": f"https://media.example.com/{os.path.basename(local_file_path)}"}

    monkeypatch.setattr(services, "upload_on_cloudinary", fake)
    return uploaded


@pytest.fixture
def client(session_local, staging_dir, fake_upload):
    return TestClient(app)


@pytest.fixture
def make_user(session_local):
    """Insert a user row directly and return its id."""

    def _make(username, email=None, full_name=None, password_hash="not-a-hash"):
        session = session_local()
        user = User(
            username=username,
            email=email or f"{username}@example.com",
            full_name=full_name or username.title(),
            avatar=f"https://media.example.com/{username}.png",
            password_hash=password_hash,
        )
        session.add(user)
        session.commit()
        user_id = user.id
        session.close()
        return user_id

    return _make


def register(client, username="alice", email=None, password="secret", cover=False, **fields):
    data = {
        "fullName": fields.get("full_name", "Alice Doe"),
        "email": email or f"{username.lower()}@example.com",
        "username": username,
        "password": password,
    }
    files = [("avatar", ("avatar.png", b"avatar-bytes", "image/png"))]
    if cover:
        files.append(("coverImage", ("cover.jpg", b"cover-bytes", "image/jpeg")))
    return client.post(f"{API}/register", data=data, files=files)


def login(client, username="alice", password="secret"):
    resp = client.post(f"{API}/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.json()
    return resp.json()["data"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
