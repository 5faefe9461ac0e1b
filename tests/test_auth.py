import pytest

from conftest import PASSWORD, stored_user
from ratelimit import login_limiter, signup_limiter
from security import PASSWORD_POLICY, verify_password


def signup(client, **overrides):
    body = {"fullName": "Jane Doe", "email": "jane@acme.io", "password": PASSWORD}
    body.update(overrides)
    return client.post("/users/signup", json=body)


def test_signup_creates_customer_and_sets_cookie(client, mongo):
    resp = signup(client, email="  Jane@Acme.IO ")
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "User created successfully"
    assert body["token"]
    assert resp.cookies.get("token") == body["token"]

    user = body["user"]
    assert user["email"] == "jane@acme.io"
    assert user["role"] == "customer"
    assert "password" not in user
    assert "providerDetails" not in user

    doc = stored_user(mongo, user["id"])
    assert doc["password"] != PASSWORD
    assert verify_password(PASSWORD, doc["password"])
    assert doc["isActive"] is True
    assert doc["revision"] == 0


def test_signup_rejects_duplicate_email_case_insensitively(client, mongo):
    assert signup(client).status_code == 201
    client.cookies.clear()
    resp = signup(client, email="JANE@acme.io")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "Email already in use"}
    assert mongo["user"].count_documents({}) == 1


@pytest.mark.parametrize("password", ["short1!", "alllowercase1!", "NoDigits!!", "NoSpecial123"])
def test_signup_enforces_password_policy(client, mongo, password):
    resp = signup(client, password=password)
    assert resp.status_code == 400
    assert resp.json()["message"] == PASSWORD_POLICY
    assert mongo["user"].count_documents({}) == 0


def test_signup_requires_core_fields(client, mongo):
    resp = client.post("/users/signup", json={"email": "x@acme.io"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Missing required fields: fullName, email, password"
    assert mongo["user"].count_documents({}) == 0


def test_signup_rejects_unknown_role(client, mongo):
    resp = signup(client, role="superuser")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid role. Use 'customer', 'provider', or 'admin'."
    assert mongo["user"].count_documents({}) == 0


def test_signup_rejects_malformed_email(client, mongo):
    resp = signup(client, email="not-an-email")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid email format"
    assert mongo["user"].count_documents({}) == 0


def test_signup_wrong_types_use_error_envelope(client):
    resp = signup(client, fullName=123)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    assert any(d.startswith("fullName") for d in body["details"])


def test_provider_signup_cannot_self_verify(client, mongo):
    resp = signup(
        client,
        role="provider",
        providerDetails={
            "bio": "Twenty years on the tools",
            "hourlyRate": 40,
            "verificationStatus": "approved",
            "isVerified": True,
        },
    )
    assert resp.status_code == 201
    details = resp.json()["user"]["providerDetails"]
    assert details["verificationStatus"] == "incomplete"
    assert details["isVerified"] is False
    assert details["bio"] == "Twenty years on the tools"

    stored = stored_user(mongo, resp.json()["user"]["id"])["providerDetails"]
    assert stored["verificationStatus"] == "incomplete"
    assert stored["isVerified"] is False
    assert stored["hourlyRate"] == 40


def test_login_returns_token_and_user(client, make_user):
    user = make_user("customer", email="login@acme.io")
    resp = client.post("/users/login", json={"email": "LOGIN@acme.io", "password": PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Login successful"
    assert body["user"]["id"] == user["id"]
    assert resp.cookies.get("token") == body["token"]


def test_login_failures_share_one_message(client, make_user):
    make_user("customer", email="known@acme.io")
    wrong_password = client.post("/users/login", json={"email": "known@acme.io", "password": "Wrong123!"})
    unknown_email = client.post("/users/login", json={"email": "nobody@acme.io", "password": PASSWORD})
    for resp in (wrong_password, unknown_email):
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "message": "Invalid email or password"}


def test_login_requires_both_fields(client):
    resp = client.post("/users/login", json={"email": "a@acme.io"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Missing email or password"


def test_login_rejects_inactive_account(client, mongo, make_user):
    user = make_user("customer", email="gone@acme.io")
    mongo["user"].update_one({"email": "gone@acme.io"}, {"$set": {"isActive": False}})
    resp = client.post("/users/login", json={"email": "gone@acme.io", "password": PASSWORD})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid email or password"
    assert stored_user(mongo, user["id"])["isActive"] is False


def test_repeated_failures_lock_the_account(client, mongo, make_user):
    user = make_user("customer", email="locked@acme.io")
    for _ in range(5):
        resp = client.post("/users/login", json={"email": "locked@acme.io", "password": "Wrong123!"})
        assert resp.status_code == 400

    doc = stored_user(mongo, user["id"])
    assert doc.get("lockUntil") is not None
    assert doc["loginAttempts"] == 0

    resp = client.post("/users/login", json={"email": "locked@acme.io", "password": PASSWORD})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Too many failed login attempts. Please try again later."


def test_successful_login_resets_failure_counter(client, mongo, make_user):
    user = make_user("customer", email="retry@acme.io")
    client.post("/users/login", json={"email": "retry@acme.io", "password": "Wrong123!"})
    assert stored_user(mongo, user["id"])["loginAttempts"] == 1

    resp = client.post("/users/login", json={"email": "retry@acme.io", "password": PASSWORD})
    assert resp.status_code == 200
    assert stored_user(mongo, user["id"])["loginAttempts"] == 0


def test_logout_clears_cookie(client):
    resp = client.post("/users/logout")
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Logged out successfully"}
    set_cookie = resp.headers["set-cookie"].lower()
    assert set_cookie.startswith("token=")
    assert "max-age=0" in set_cookie


def test_signup_rate_limit(client, monkeypatch):
    monkeypatch.setattr(signup_limiter, "limit", 3)
    for i in range(3):
        assert signup(client, email=f"burst{i}@acme.io").status_code == 201
    resp = signup(client, email="burst3@acme.io")
    assert resp.status_code == 429
    assert resp.json()["message"] == "Too many signups from this IP, please try again later."
    assert int(resp.headers["retry-after"]) > 0


def test_login_rate_limit(client, monkeypatch):
    monkeypatch.setattr(login_limiter, "limit", 2)
    for _ in range(2):
        client.post("/users/login", json={"email": "x@acme.io", "password": PASSWORD})
    resp = client.post("/users/login", json={"email": "x@acme.io", "password": PASSWORD})
    assert resp.status_code == 429
    assert resp.json()["message"] == "Too many login attempts. Please try again later."
