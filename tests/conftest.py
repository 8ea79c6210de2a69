"""
Shared fixtures: an in-memory MongoDB (mongomock), a TestClient over the app
and registered student/admin users.
"""

from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import database
import main
from attempts import utcnow


def sample_test_payload(negative_marking=0.25, duration=60, title="General Aptitude Mock 1"):
    return {
        "title": title,
        "description": "Quantitative and reasoning practice paper",
        "duration": duration,
        "negativeMarking": negative_marking,
        "category": "aptitude",
        "examType": "SSC",
        "instructions": ["Each wrong answer costs 0.25 marks"],
        "sections": [
            {
                "title": "Quantitative",
                "order": 1,
                "questions": [
                    {"text": "2 + 2 = ?", "options": ["3", "4", "5", "6"], "correctAnswer": 1, "marks": 2,
                     "explanation": "Basic addition"},
                    {"text": "10 / 2 = ?", "options": ["2", "5"], "correctAnswer": 1, "marks": 1},
                ],
            },
            {
                "title": "Reasoning",
                "order": 2,
                "questions": [
                    {"text": "Odd one out", "options": ["cat", "dog", "car"], "correctAnswer": 2, "marks": 1},
                ],
            },
        ],
    }


def question_ids(test):
    return [q["id"] for s in test["sections"] for q in s["questions"]]


def rewind(db, attempt_id, seconds):
    """Pretend the attempt was started ``seconds`` ago."""
    db["attempt"].update_one(
        {"_id": ObjectId(attempt_id)},
        {"$set": {"started_at": utcnow() - timedelta(seconds=seconds)}},
    )


@pytest.fixture(autouse=True)
def mongo_db():
    database.use_database(mongomock.MongoClient(tz_aware=True)["mock_tests_test"])
    yield database.get_db()


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(main, "pwd_context", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


def register(client, email):
    resp = client.post(
        "/auth/register",
        data={"name": email.split("@")[0], "email": email, "password": "s3cret-pass"},
    )
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def login(client, email, password="s3cret-pass"):
    resp = client.post("/auth/token", data={"username": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
    return register(client, "student@example.com")


@pytest.fixture
def other_headers(client):
    return register(client, "other@example.com")


@pytest.fixture
def admin_headers(client):
    main.create_user("admin", "admin@example.com", "s3cret-pass", role="admin")
    return login(client, "admin@example.com")


@pytest.fixture
def mock_test(client, admin_headers):
    """A published test, as the admin sees it (correct answers included)."""
    resp = client.post("/admin/tests", json=sample_test_payload(), headers=admin_headers)
    assert resp.status_code == 201, resp.text
    test_id = resp.json()["id"]
    return client.get(f"/admin/tests/{test_id}", headers=admin_headers).json()
