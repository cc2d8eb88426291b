import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main


@pytest.fixture
def mongo(monkeypatch):
    """In-memory MongoDB standing in for the configured database."""
    fake_db = mongomock.MongoClient()["tierlist_test"]
    monkeypatch.setattr(database, "db", fake_db)
    return fake_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


def auth_header(username, user_id=None):
    token = main.create_token(username, user_id or f"id-{username}")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner():
    return auth_header("alice")


@pytest.fixture
def voter():
    return auth_header("bob")


@pytest.fixture
def app_id(client, owner):
    """A tier list created by alice, who becomes its installer moderator."""
    response = client.post("/api/app", json={"title": "Best Movies"}, headers=owner)
    assert response.status_code == 201
    return response.json()["appId"]


@pytest.fixture
def scheduler(monkeypatch):
    """Header for the internal scheduler callbacks."""
    monkeypatch.setattr(main, "SCHEDULER_TOKEN", "sched-secret")
    return {"X-Scheduler-Token": "sched-secret"}
