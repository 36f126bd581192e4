import time

import mongomock
import pytest
from fastapi.testclient import TestClient

import database


class IdleChangeStream:
    """Change stream that never reports a change."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def try_next(self):
        time.sleep(0.01)
        return None


@pytest.fixture
def mongo_db(monkeypatch):
    db = mongomock.MongoClient().bookclub_test
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(
        mongomock.collection.Collection,
        "watch",
        lambda self, *args, **kwargs: IdleChangeStream(),
        raising=False,
    )
    database.ensure_indexes()
    return db


@pytest.fixture
def client(mongo_db):
    from main import app
    with TestClient(app) as c:
        yield c


def register(client, username, email=None, password="secret123"):
    resp = client.post("/api/auth/register", json={
        "username": username,
        "email": email or f"{username}@example.com",
        "password": password,
    })
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice(client):
    return register(client, "alice")


@pytest.fixture
def bob(client):
    return register(client, "bob")


@pytest.fixture
def group(client, alice):
    resp = client.post("/api/groups", headers=bearer(alice["token"]), json={
        "title": "  Sunrise on the Reaping ",
        "author": "Suzanne Collins",
        "image_url": "https://example.com/cover.jpg",
        "moderation_question": "Which district is Haymitch from?",
        "correct_answer": "District 12",
    })
    assert resp.status_code == 200, resp.text
    return resp.json()
