"""
Tests for the authentication endpoints and guard.

Covers:
- Register/login envelopes and token contents
- Refresh with the distinct refresh secret
- Logout and logout-all revoking tokens through the in-memory blacklist
- Guard rejections (missing, malformed, expired, revoked, future-issued tokens)
"""

import logging
from datetime import timedelta

from fastapi.testclient import TestClient
from jose import jwt

import models
from auth import security
from conftest import auth_header, create_auth_token
from time_utils import utc_timestamp

logger = logging.getLogger(__name__)


# ============== Register ==============

def test_register_returns_tokens_and_user(client: TestClient):
    response = client.post("/api/auth/register", json={
        "username": "dave",
        "email": "dave@test.com",
        "password": "dave1234",
        "full_name": "Dave Example",
    })

    assert response.status_code == 201, response.json()
    body = response.json()
    assert body["success"] is True
    assert body["data"]["user"]["username"] == "dave"
    assert body["data"]["token_type"] == "bearer"
    assert "timestamp" in body["meta"]
    logger.info("✓ Registration returns login envelope")


def test_register_duplicate_email_conflicts(client: TestClient, user: models.User):
    response = client.post("/api/auth/register", json={
        "username": "someone-else",
        "email": user.email,
        "password": "secret123",
    })

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICT"
    logger.info("✓ Duplicate email rejected with CONFLICT")


def test_register_invalid_body_is_validation_error(client: TestClient):
    response = client.post("/api/auth/register", json={"username": "x", "email": "not-an-email", "password": "1"})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    fields = {detail["field"] for detail in error["details"]}
    assert "body.email" in fields
    assert error["path"] == "/api/auth/register"
    logger.info("✓ Invalid registration body reported with field details")


# ============== Login ==============

def test_login_with_valid_credentials(client: TestClient, user: models.User):
    response = client.post("/api/auth/login", json={"email": user.email, "password": "alice123"})

    assert response.status_code == 200, response.json()
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["access_token"]
    assert data["refresh_token"]
    assert data["user"] == {
        "id": user.id,
        "username": "alice",
        "email": "alice@test.com",
        "full_name": "Alice Example",
    }

    claims = jwt.get_unverified_claims(data["access_token"])
    assert claims["sub"] == str(user.id)
    assert claims["username"] == "alice"
    assert claims["type"] == "access"
    assert claims["exp"] > claims["iat"]
    logger.info("✓ Login returns tokens and public profile")


def test_login_with_wrong_password(client: TestClient, user: models.User):
    response = client.post("/api/auth/login", json={"email": user.email, "password": "wrong-password"})

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"
    logger.info("✓ Wrong password rejected")


def test_login_unknown_email(client: TestClient):
    response = client.post("/api/auth/login", json={"email": "nobody@test.com", "password": "whatever"})
    assert response.status_code == 401


# ============== Refresh ==============

def test_refresh_issues_new_pair(client: TestClient, user: models.User):
    login = client.post("/api/auth/login", json={"email": user.email, "password": "alice123"}).json()["data"]

    response = client.post("/api/auth/refresh", json={"refresh_token": login["refresh_token"]})

    assert response.status_code == 200, response.json()
    data = response.json()["data"]
    assert data["access_token"] != login["access_token"]
    me = client.get("/api/auth/me", headers=auth_header(data["access_token"]))
    assert me.status_code == 200
    logger.info("✓ Refresh issues a working access token")


def test_refresh_token_signed_with_wrong_secret_is_rejected(client: TestClient, user: models.User):
    now = utc_timestamp()
    forged = jwt.encode(
        {"sub": str(user.id), "email": user.email, "username": user.username,
         "type": "refresh", "iat": now, "exp": now + 3600},
        security.SECRET_KEY,  # access secret, not the refresh secret
        algorithm=security.ALGORITHM,
    )

    response = client.post("/api/auth/refresh", json={"refresh_token": forged})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"
    logger.info("✓ Refresh token signed with the access secret rejected")


def test_access_token_cannot_be_used_to_refresh(client: TestClient, auth_token: str):
    response = client.post("/api/auth/refresh", json={"refresh_token": auth_token})
    assert response.status_code == 401


def test_refresh_for_deleted_user_is_rejected(client: TestClient, test_db, user: models.User):
    refresh_token = security.create_refresh_token(
        {"sub": str(user.id), "email": user.email, "username": user.username}
    )
    test_db.delete(user)
    test_db.commit()

    response = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "User not found"


# ============== Guard ==============

def test_protected_route_without_token(client: TestClient):
    response = client.get("/api/auth/me")

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "No token provided"


def test_expired_access_token_is_unauthorized(client: TestClient, user: models.User):
    token = create_auth_token(user, expires_delta=timedelta(seconds=-30))

    response = client.get("/api/tasks", headers=auth_header(token))

    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["error"]["message"] == "Token expired"
    logger.info("✓ Expired token rejected with 401")


def test_malformed_token_is_unauthorized(client: TestClient):
    response = client.get("/api/auth/me", headers=auth_header("not-a-jwt"))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid token format"


def test_token_missing_required_claims_is_unauthorized(client: TestClient, user: models.User):
    token = security.create_access_token({"sub": str(user.id)})

    response = client.get("/api/auth/me", headers=auth_header(token))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid token payload"


def test_token_issued_in_the_future_is_unauthorized(client: TestClient, user: models.User):
    now = utc_timestamp()
    token = jwt.encode(
        {"sub": str(user.id), "email": user.email, "username": user.username,
         "type": "access", "iat": now + 600, "exp": now + 1200},
        security.SECRET_KEY,
        algorithm=security.ALGORITHM,
    )

    response = client.get("/api/auth/me", headers=auth_header(token))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid token"


def test_token_issued_slightly_ahead_is_accepted(client: TestClient, user: models.User):
    # Clock skew under the 60 s tolerance is allowed
    now = utc_timestamp()
    token = jwt.encode(
        {"sub": str(user.id), "email": user.email, "username": user.username,
         "type": "access", "iat": now + 30, "exp": now + 900},
        security.SECRET_KEY,
        algorithm=security.ALGORITHM,
    )

    response = client.get("/api/auth/me", headers=auth_header(token))

    assert response.status_code == 200
    assert response.json()["data"]["id"] == user.id
    logger.info("✓ Token within iat tolerance accepted")


def test_token_without_expiry_is_unauthorized(client: TestClient, user: models.User):
    token = jwt.encode(
        {"sub": str(user.id), "email": user.email, "username": user.username,
         "type": "access", "iat": utc_timestamp()},
        security.SECRET_KEY,
        algorithm=security.ALGORITHM,
    )

    response = client.get("/api/auth/me", headers=auth_header(token))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid token payload"


def test_refresh_token_is_not_accepted_as_access_token(client: TestClient, user: models.User):
    refresh_token = security.create_refresh_token(
        {"sub": str(user.id), "email": user.email, "username": user.username}
    )

    response = client.get("/api/auth/me", headers=auth_header(refresh_token))

    assert response.status_code == 401


def test_me_returns_profile(client: TestClient, user: models.User, auth_headers):
    response = client.get("/api/auth/me", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["id"] == user.id
    assert data["email"] == "alice@test.com"
    assert "password_hash" not in data


# ============== Logout ==============

def test_logout_revokes_access_token(client: TestClient, user: models.User):
    token = create_auth_token(user)
    headers = auth_header(token)
    assert client.get("/api/auth/me", headers=headers).status_code == 200

    response = client.post("/api/auth/logout", headers=headers)
    assert response.status_code == 200, response.json()

    # Still within its original expiry, but revoked
    after = client.get("/api/auth/me", headers=headers)
    assert after.status_code == 401
    assert after.json()["error"]["message"] == "Token has been invalidated"
    logger.info("✓ Revoked token rejected before expiry")


def test_logout_revokes_refresh_token_from_body(client: TestClient, user: models.User):
    login = client.post("/api/auth/login", json={"email": user.email, "password": "alice123"}).json()["data"]

    client.post(
        "/api/auth/logout",
        json={"refresh_token": login["refresh_token"]},
        headers=auth_header(login["access_token"]),
    )

    response = client.post("/api/auth/refresh", json={"refresh_token": login["refresh_token"]})
    assert response.status_code == 401


def test_logout_all_revokes_every_known_token(client: TestClient, user: models.User):
    first = client.post("/api/auth/login", json={"email": user.email, "password": "alice123"}).json()["data"]
    second = client.post("/api/auth/login", json={"email": user.email, "password": "alice123"}).json()["data"]

    response = client.post("/api/auth/logout-all", headers=auth_header(first["access_token"]))
    assert response.status_code == 200
    assert response.json()["data"]["revoked_tokens"] == 4

    assert client.get("/api/auth/me", headers=auth_header(second["access_token"])).status_code == 401
    assert client.post("/api/auth/refresh", json={"refresh_token": second["refresh_token"]}).status_code == 401
    logger.info("✓ Logout-all revokes tokens from every session")


def test_logout_all_does_not_touch_other_users(client: TestClient, user: models.User, other_user: models.User):
    bob_token = create_auth_token(other_user)
    assert client.get("/api/auth/me", headers=auth_header(bob_token)).status_code == 200

    client.post("/api/auth/logout-all", headers=auth_header(create_auth_token(user)))

    assert client.get("/api/auth/me", headers=auth_header(bob_token)).status_code == 200
