from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.attendance as attendance
import backend.routers.sessions as sessions
import database.db as db

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)  # a Monday


@pytest.fixture()
def database(tmp_path, monkeypatch):
    test_db = tmp_path / "classcheck_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(database, monkeypatch):
    monkeypatch.setattr(attendance, "utcnow", lambda: NOW)
    monkeypatch.setattr(sessions, "utcnow", lambda: NOW)
    # no real AI calls from tests unless a test installs a classifier
    main.app.dependency_overrides[attendance.get_classifier] = lambda: None

    with TestClient(main.app) as c:
        yield c

    main.app.dependency_overrides.clear()


def login(client, username: str, password: str) -> dict:
    res = client.post("/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def register(client, username: str, role: str = "student") -> tuple[int, dict]:
    res = client.post(
        "/auth/register",
        json={
            "username": username,
            "password": "secret-pass",
            "full_name": username.title(),
            "role": role,
        },
    )
    assert res.status_code == 201, res.text
    body = res.json()
    return body["user_id"], {"Authorization": f"Bearer {body['access_token']}"}


@pytest.fixture()
def teacher_headers(client):
    return login(client, config.DEFAULT_TEACHER_USERNAME, config.DEFAULT_TEACHER_PASSWORD)


@pytest.fixture()
def course_id(client, teacher_headers):
    res = client.post("/courses", json={"code": "CS101", "title": "Intro"}, headers=teacher_headers)
    assert res.status_code == 201, res.text
    return res.json()["id"]
