"""
Shared fixtures for the API test-suite.

The app runs against an in-memory mongomock database injected through
``app.dependency_overrides``; the real MongoDB connection (made in the app
lifespan) is never opened because the TestClient is not used as a context
manager.
"""
import os

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["BCRYPT_ROUNDS"] = "4"
# Generous limits so fixtures can create several accounts; the rate-limit
# tests lower them explicitly.
os.environ["SIGNUP_RATE_LIMIT"] = "1000"
os.environ["LOGIN_RATE_LIMIT"] = "1000"

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from main import app
from ratelimit import login_limiter, signup_limiter

PASSWORD = "Abcdef1!"


@pytest.fixture
def mongo():
    db = mongomock.MongoClient()["servicehub_test"]
    database.ensure_indexes(db)
    return db


@pytest.fixture
def client(mongo):
    app.dependency_overrides[database.get_db] = lambda: mongo
    signup_limiter.reset()
    login_limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(client):
    """Sign up an account and return ``{"id", "token", "headers", "email"}``."""
    counter = {"n": 0}

    def _make(role="customer", email=None, full_name="Test User", **extra):
        counter["n"] += 1
        email = email or f"{role}{counter['n']}@acme.io"
        body = {"fullName": full_name, "email": email, "password": PASSWORD, "role": role}
        body.update(extra)
        resp = client.post("/users/signup", json=body)
        assert resp.status_code == 201, resp.text
        client.cookies.clear()
        data = resp.json()
        return {
            "id": data["user"]["id"],
            "token": data["token"],
            "headers": auth(data["token"]),
            "email": email,
        }

    return _make


@pytest.fixture
def customer(make_user):
    return make_user("customer", full_name="Casey Client")


@pytest.fixture
def provider(make_user):
    return make_user("provider", full_name="Pat Provider")


@pytest.fixture
def admin(make_user):
    return make_user("admin", full_name="Ada Admin")


ONBOARDING = {
    "headline": "Licensed plumber",
    "workDescription": "Leaks, installs and emergency call-outs.",
    "skills": [{"name": "Plumbing", "proficiency": 8, "years": 6}],
    "serviceAreas": [{"address": "Springfield", "radiusKm": 30}],
}


@pytest.fixture
def pending_provider(client, make_user):
    """A provider who filled in onboarding and submitted it for review."""

    def _make(full_name="Pat Provider"):
        user = make_user("provider", full_name=full_name)
        resp = client.patch(
            "/users/onboarding",
            json={**ONBOARDING, "verificationStatus": "pending"},
            headers=user["headers"],
        )
        assert resp.status_code == 200, resp.text
        return user

    return _make


def set_provider_status(mongo, user_id, status):
    mongo["user"].update_one(
        {"_id": ObjectId(user_id)}, {"$set": {"providerDetails.verificationStatus": status}}
    )


def stored_user(mongo, user_id):
    return mongo["user"].find_one({"_id": ObjectId(user_id)})


def stored_job(mongo, job_id):
    return mongo["job"].find_one({"_id": ObjectId(job_id)})
