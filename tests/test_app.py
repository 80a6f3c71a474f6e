import pytest
from fastapi.testclient import TestClient

from latchkey.app import app
from latchkey.service.runtime import get_runtime

COOKIE = "persistent_session_cookie"
LOGIN = {"user": {"email": "alice@example.com", "password": "Correct-Horse-9"}}


@pytest.fixture
def client():
    get_runtime().users.create("alice@example.com", "Correct-Horse-9", user_id="42")
    with TestClient(app) as test_client:
        yield test_client


def test_anonymous_request_is_unauthorized(client):
    response = client.get("/session")

    assert response.status_code == 401
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"


def test_login_session_logout_flow(client):
    login = client.post("/session", json=LOGIN)
    assert login.status_code == 200
    assert login.json()["data"] == {"user_id": "42", "message": "Signed in successfully."}
    assert client.cookies.get("auth")
    assert client.cookies.get(COOKIE)

    current = client.get("/session")
    assert current.status_code == 200
    assert current.json()["data"]["user_id"] == "42"

    logout = client.delete("/session")
    assert logout.status_code == 200
    assert logout.json()["data"]["message"] == "Signed out successfully."
    assert client.get("/session").status_code == 401


def test_wrong_password_is_rejected(client):
    response = client.post(
        "/session", json={"user": {"email": "alice@example.com", "password": "wrong"}}
    )

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_credentials"
    assert "auth" not in response.cookies


def test_remember_me_cookie_restores_session(client):
    client.post("/session", json=LOGIN)
    original_token = client.cookies.get(COOKIE)
    client.cookies.delete("auth")

    response = client.get("/session")

    assert response.status_code == 200
    assert response.json()["data"]["user_id"] == "42"
    assert client.cookies.get("auth")
    assert client.cookies.get(COOKIE) != original_token


def test_replayed_remember_me_token_is_refused(client):
    client.post("/session", json=LOGIN)
    original_token = client.cookies.get(COOKIE)
    client.cookies.delete("auth")
    assert client.get("/session").status_code == 200

    client.cookies.clear()
    replay = client.get("/session", headers={"Cookie": f"{COOKIE}={original_token}"})

    assert replay.status_code == 401


def test_invalid_confirmation_token(client):
    response = client.get("/confirm-email/not-a-token")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_token"


def test_request_id_is_echoed(client):
    response = client.get("/session", headers={"X-Request-ID": "req-abc"})
    assert response.headers["X-Request-ID"] == "req-abc"


def test_malformed_login_body_is_rejected(client):
    assert client.post("/session", json={"user": {"email": "x"}}).status_code == 422


def _remember_me_tokens():
    return [key for key in get_runtime().store._entries if "persistent_session:" in key]


def test_login_over_remember_me_cookie_leaves_one_token(client):
    client.post("/session", json=LOGIN)
    client.cookies.delete("auth")

    response = client.post("/session", json=LOGIN)

    assert response.status_code == 200
    assert len(_remember_me_tokens()) == 1
    assert _remember_me_tokens()[0].endswith(client.cookies.get(COOKIE))


def test_reset_password_flow(client):
    sent = []
    get_runtime().reset_password_controller.extension.deliver = (
        lambda user, token: sent.append(token)
    )

    requested = client.post("/reset-password", json={"user": {"email": "alice@example.com"}})
    assert requested.status_code == 200
    assert requested.json()["data"]["message"].startswith("If an account")
    assert "token" not in requested.text
    (token,) = sent

    assert client.get(f"/reset-password/{token}").json()["data"] == {"valid": True}

    new_password = {"password": "Battery-Staple-7", "password_confirmation": "Battery-Staple-7"}
    reset = client.put(f"/reset-password/{token}", json={"user": new_password})
    assert reset.status_code == 200
    assert reset.json()["data"] == {"user_id": "42", "message": "The password has been updated."}
    assert client.cookies.get("auth")
    assert client.get("/session").status_code == 200

    client.cookies.clear()
    replay = client.put(f"/reset-password/{token}", json={"user": new_password})
    assert replay.status_code == 400
    assert replay.json()["error"]["code"] == "invalid_token"
    login = {"user": {"email": "alice@example.com", "password": "Battery-Staple-7"}}
    assert client.post("/session", json=login).status_code == 200


def test_reset_password_for_unknown_email_looks_the_same(client):
    response = client.post("/reset-password", json={"user": {"email": "nobody@example.com"}})

    assert response.status_code == 200
    assert response.json()["data"]["message"].startswith("If an account")


def test_reset_password_refused_when_signed_in(client):
    client.post("/session", json=LOGIN)

    response = client.post("/reset-password", json={"user": {"email": "alice@example.com"}})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "already_authenticated"


def test_unknown_reset_token_is_rejected(client):
    response = client.get("/reset-password/not-a-token")

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "The reset token has expired."
