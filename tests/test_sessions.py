"""Unit tests for session issuance, verification and revocation."""

import time

from fastapi import Response

from conftest import make_request
from coris.service.cookies import SESSION_COOKIE, CookiePolicy
from coris.service.sessions import AuthFailure, Principal, SessionManager
from coris.service.tokens import TokenCodec


class FakeVersions:
    def __init__(self, versions=None, *, error=None, delay=0.0):
        self.versions = dict(versions or {})
        self.error = error
        self.delay = delay
        self.calls = []

    def get_auth_version(self, user_id):
        self.calls.append(user_id)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.versions.get(user_id)


def _manager(versions, **kwargs):
    return SessionManager(
        TokenCodec("session-test-secret"), versions, CookiePolicy(secure=False), **kwargs
    )


async def _issue(manager, user_id):
    response = Response()
    token = await manager.issue_session(response, user_id)
    return token, response


class TestIssueSession:
    async def test_sets_httponly_cookie(self):
        manager = _manager(FakeVersions({"u1": 1}))
        token, response = await _issue(manager, "u1")
        header = response.headers["set-cookie"]
        assert header.startswith(f"{SESSION_COOKIE}={token}")
        assert "HttpOnly" in header
        assert "SameSite=lax" in header
        assert "Max-Age=604800" in header
        assert "Secure" not in header

    async def test_embeds_current_version(self):
        manager = _manager(FakeVersions({"u1": 4}))
        token, _ = await _issue(manager, "u1")
        assert manager.codec.decode(token).version == 4

    async def test_missing_row_defaults_to_version_one(self):
        manager = _manager(FakeVersions({}))
        token, _ = await _issue(manager, "ghost")
        assert manager.codec.decode(token).version == 1

    async def test_clear_session(self):
        response = Response()
        _manager(FakeVersions()).clear_session(response)
        header = response.headers["set-cookie"]
        assert header.startswith(f"{SESSION_COOKIE}=")
        assert "Max-Age=0" in header
        assert "HttpOnly" in header


class TestVerifySession:
    async def test_valid_session(self):
        versions = FakeVersions({"u1": 2})
        manager = _manager(versions)
        token, _ = await _issue(manager, "u1")
        result = await manager.verify_session(make_request(cookies={SESSION_COOKIE: token}))
        assert result == Principal(id="u1")

    async def test_missing_cookie(self):
        result = await _manager(FakeVersions()).verify_session(make_request())
        assert result == AuthFailure("missing")

    async def test_garbage_cookie(self):
        request = make_request(cookies={SESSION_COOKIE: "not-a-token"})
        result = await _manager(FakeVersions()).verify_session(request)
        assert result == AuthFailure("invalid")

    async def test_token_from_other_secret(self):
        foreign = TokenCodec("another-secret").encode("u1", 1)
        request = make_request(cookies={SESSION_COOKIE: foreign})
        result = await _manager(FakeVersions({"u1": 1})).verify_session(request)
        assert result == AuthFailure("invalid")

    async def test_invalid_token_skips_store(self):
        versions = FakeVersions({"u1": 1})
        request = make_request(cookies={SESSION_COOKIE: "a.b.c"})
        await _manager(versions).verify_session(request)
        assert versions.calls == []

    async def test_bumped_version_revokes(self):
        versions = FakeVersions({"u1": 1})
        manager = _manager(versions)
        token, _ = await _issue(manager, "u1")
        versions.versions["u1"] = 2
        result = await manager.verify_session(make_request(cookies={SESSION_COOKIE: token}))
        assert result == AuthFailure("revoked")

    async def test_deleted_user(self):
        versions = FakeVersions({"u1": 1})
        manager = _manager(versions)
        token, _ = await _issue(manager, "u1")
        del versions.versions["u1"]
        result = await manager.verify_session(make_request(cookies={SESSION_COOKIE: token}))
        assert result == AuthFailure("user_missing")

    async def test_store_exception_fails_closed(self):
        versions = FakeVersions({"u1": 1})
        manager = _manager(versions)
        token, _ = await _issue(manager, "u1")
        versions.error = ConnectionError("db down")
        result = await manager.verify_session(make_request(cookies={SESSION_COOKIE: token}))
        assert result == AuthFailure("store_error")

    async def test_store_timeout_fails_closed(self):
        versions = FakeVersions({"u1": 1})
        manager = _manager(versions, store_timeout=0.05)
        token, _ = await _issue(manager, "u1")
        versions.delay = 0.3
        result = await manager.verify_session(make_request(cookies={SESSION_COOKIE: token}))
        assert result == AuthFailure("store_error")
