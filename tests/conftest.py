import contextlib
import os

# Must be set before the application modules read their settings
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SMTP_HOST", None)

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from database import get_db
from main import app
from repositories import UserRepository
from security import create_access_token, hash_password

PASSWORD = "correct-horse-battery"


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["clinical_education_test"]


@pytest.fixture(autouse=True)
def transactions(monkeypatch):
    """mongomock has no sessions; run transactional blocks without one and record how each ended."""
    ended = []

    @contextlib.contextmanager
    def fake_transaction(mongo_client=None):
        outcome = {"committed": False, "aborted": False, "error": None}
        ended.append(outcome)
        try:
            yield None
        except Exception as e:
            outcome.update(aborted=True, error=e)
            raise
        outcome["committed"] = True

    monkeypatch.setattr(database, "start_transaction", fake_transaction)
    return ended


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(role="student", status="active", department=None, email=None, password=PASSWORD):
        return UserRepository(db).create_user_with_profile(
            {
                "email": email or f"{role}.{ObjectId()}@medschool.org",
                "password_hash": hash_password(password),
                "role": role,
                "status": status,
                "is_email_verified": True,
                "department": department,
            },
            {"first_name": role.title(), "last_name": "User"},
        )

    return _make


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _headers


@pytest.fixture
def student(make_user):
    return make_user("student")


@pytest.fixture
def teacher(make_user):
    return make_user("teacher")


@pytest.fixture
def admin(make_user):
    return make_user("admin")
