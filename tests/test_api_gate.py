"""The request gate as seen through the HTTP surface."""

from fastapi.testclient import TestClient

from conftest import make_settings, signup
from coris.app import create_app
from coris.service.cookies import CSRF_COOKIE, SESSION_COOKIE
from coris.service.runtime import Runtime
from coris.storage.memory import MemoryStore

TEMPLATE = {
    "bill_name": "Rent",
    "category": "housing",
    "frequency": "monthly",
    "due_day": 1,
    "default_amount": 1200,
}


class TestProtectedPaths:
    def test_requires_session(self, client):
        response = client.get("/v1/templates/me")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_get_does_not_need_csrf(self, client):
        signup(client)
        assert client.get("/v1/templates/me").status_code == 200

    def test_unsafe_method_without_csrf_is_forbidden(self, client, store):
        signup(client)
        response = client.post("/v1/templates", json=TEMPLATE)
        assert response.status_code == 403
        assert response.json() == {"error": "CSRF token missing or invalid"}
        assert store.templates == {}

    def test_mismatched_csrf_is_forbidden(self, client, store):
        signup(client)
        response = client.post("/v1/templates", json=TEMPLATE, headers={"X-CSRF-Token": "x" * 48})
        assert response.status_code == 403
        assert store.templates == {}

    def test_patch_with_prefix_header_does_not_mutate(self, client, store):
        _, csrf = signup(client)
        created = client.post("/v1/templates", json=TEMPLATE, headers={"X-CSRF-Token": csrf})
        template_id = created.json()["id"]

        response = client.patch(
            f"/v1/templates/{template_id}",
            json={"bill_name": "Changed"},
            headers={"X-CSRF-Token": csrf[:-1]},
        )
        assert response.status_code == 403
        assert response.json() == {"error": "CSRF token missing or invalid"}
        assert store.templates[template_id]["bill_name"] == "Rent"

    def test_csrf_checked_before_session(self, client):
        # No cookies at all: CSRF fails first
        response = client.post("/v1/templates", json=TEMPLATE, headers={"X-CSRF-Token": "abc"})
        assert response.status_code == 403

    def test_valid_csrf_without_session_is_unauthorized(self, client):
        client.cookies.set(CSRF_COOKIE, "token123")
        response = client.post(
            "/v1/templates", json=TEMPLATE, headers={"X-CSRF-Token": "token123"}
        )
        assert response.status_code == 401

    def test_valid_request_passes(self, client):
        _, csrf = signup(client)
        response = client.post("/v1/templates", json=TEMPLATE, headers={"X-CSRF-Token": csrf})
        assert response.status_code == 200
        assert response.json()["bill_name"] == "Rent"

    def test_forged_session_cookie(self, client):
        client.cookies.set(SESSION_COOKIE, "eyJhbGciOiJub25lIn0.e30.")
        assert client.get("/v1/templates/me").status_code == 401

    def test_deleted_user_is_unauthorized(self, client, store):
        response, _ = signup(client)
        store.delete_user(response.json()["user"]["id"])
        assert client.get("/v1/templates/me").status_code == 401

    def test_version_bump_revokes(self, client, store):
        response, _ = signup(client)
        store.bump_auth_version(response.json()["user"]["id"])
        assert client.get("/v1/templates/me").status_code == 401

    def test_store_failure_fails_closed(self, client, store, monkeypatch):
        signup(client)

        def broken(user_id):
            raise ConnectionError("database unavailable")

        monkeypatch.setattr(store, "get_auth_version", broken)
        response = client.get("/v1/templates/me")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}


class TestPublicAndPassthrough:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_auth_routes_skip_csrf(self, client):
        # Signup is a POST with no CSRF header and still succeeds
        signup(client)

    def test_unknown_non_api_path(self, client):
        response = client.post("/not-an-api-path")
        assert response.status_code == 404
        assert response.json() == {"error": "Not Found"}

    def test_unknown_api_path_needs_session(self, client):
        assert client.get("/v1/nowhere").status_code == 401


class TestGateConfiguration:
    def test_csrf_can_be_disabled(self):
        runtime = Runtime(make_settings(csrf_enabled=False), store=MemoryStore())
        client = TestClient(create_app(runtime))
        signup(client)
        assert client.post("/v1/templates", json=TEMPLATE).status_code == 200

    def test_global_rate_limit(self):
        runtime = Runtime(make_settings(global_rate_limit_per_minute=2), store=MemoryStore())
        client = TestClient(create_app(runtime))
        codes = [client.get("/v1/templates/me").status_code for _ in range(3)]
        assert codes == [401, 401, 429]
        assert client.get("/v1/templates/me").json() == {"error": "Too many requests"}
        assert client.get("/health").status_code == 200


class TestResponseHeaders:
    def test_security_and_request_id_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_api_responses_not_cached(self, client):
        response = client.get("/v1/templates/me")
        assert response.headers["Cache-Control"] == "no-store"
