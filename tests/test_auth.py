"""
Tests for request authentication.

Run tests:
    pytest tests/test_auth.py -v
"""

from fastapi.security import HTTPAuthorizationCredentials

from api.auth import DEV_TOKEN, resolve_user

DEV_HEADERS = {"Authorization": f"Bearer {DEV_TOKEN}"}


def bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestResolveUser:
    def test_no_credentials(self):
        assert resolve_user(None) is None

    def test_registered_token(self, auth_headers, user_id):
        user = resolve_user(bearer("test-token"))
        assert user.id == user_id
        assert user.email == "researcher@example.com"
        assert user.is_dev is False

    def test_unknown_token(self):
        assert resolve_user(bearer("nope")) is None

    def test_dev_mode_ignores_token(self, set_env):
        set_env(DEV_MODE="true", DEV_MODE_USER_ID="dev-user")
        user = resolve_user(None)
        assert user.id == "dev-user"
        assert user.is_dev is True


class TestDevToken:
    """The ``dev-mode`` bearer token."""

    def test_accepted_outside_production(self, client):
        response = client.get("/api/credits", headers=DEV_HEADERS)
        assert response.status_code == 200

    def test_rejected_in_production(self, client, set_env, memory_store):
        set_env(NEURODATA_ENV="production")

        response = client.post(
            "/api/credits/add",
            json={"credits": 10000, "discountCode": "WELCOME20"},
            headers=DEV_HEADERS,
        )

        assert response.status_code == 401
        assert memory_store.select("user_credits") == []

    def test_resolve_in_production(self, set_env):
        set_env(NODE_ENV="production")
        assert resolve_user(bearer(DEV_TOKEN)) is None
