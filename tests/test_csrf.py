"""Tests for the double-submit CSRF guard."""

from fastapi import Response

from conftest import make_request
from coris.service.cookies import CSRF_COOKIE, CookiePolicy
from coris.service.csrf import CsrfFailure, CsrfGuard, CsrfOk, generate_csrf_token


def _guard(enabled=True):
    return CsrfGuard(CookiePolicy(secure=False), enabled=enabled)


class TestTokenGeneration:
    def test_token_is_192_bit_hex(self):
        token = generate_csrf_token()
        assert len(token) == 48
        int(token, 16)

    def test_tokens_are_unique(self):
        assert len({generate_csrf_token() for _ in range(50)}) == 50


class TestIssueCookie:
    def test_cookie_is_script_readable(self):
        response = Response()
        token = _guard().issue_csrf_cookie(response)
        header = response.headers["set-cookie"]
        assert header.startswith(f"{CSRF_COOKIE}={token}")
        assert "httponly" not in header.lower()
        assert "samesite=lax" in header.lower()
        assert "Path=/" in header
        assert "Max-Age=604800" in header

    def test_secure_and_domain_follow_policy(self):
        guard = CsrfGuard(CookiePolicy(secure=True, domain="coris.example"))
        response = Response()
        guard.issue_csrf_cookie(response)
        header = response.headers["set-cookie"]
        assert "Secure" in header
        assert "Domain=coris.example" in header

    def test_clear_expires_cookie(self):
        response = Response()
        _guard().clear_csrf_cookie(response)
        header = response.headers["set-cookie"]
        assert header.startswith(f"{CSRF_COOKIE}=")
        assert "Max-Age=0" in header


class TestCheck:
    def test_safe_methods_pass_without_token(self):
        guard = _guard()
        for method in ("GET", "HEAD", "OPTIONS"):
            assert isinstance(guard.check(make_request(method)), CsrfOk)

    def test_matching_header_and_cookie(self):
        request = make_request(
            "POST", headers={"X-CSRF-Token": "abc123"}, cookies={CSRF_COOKIE: "abc123"}
        )
        assert isinstance(_guard().check(request), CsrfOk)

    def test_missing_header(self):
        request = make_request("PATCH", cookies={CSRF_COOKIE: "abc123"})
        assert _guard().check(request) == CsrfFailure("missing_header")

    def test_missing_cookie(self):
        request = make_request("DELETE", headers={"X-CSRF-Token": "abc123"})
        assert _guard().check(request) == CsrfFailure("missing_cookie")

    def test_mismatch(self):
        request = make_request(
            "POST", headers={"X-CSRF-Token": "abc123"}, cookies={CSRF_COOKIE: "abc124"}
        )
        assert _guard().check(request) == CsrfFailure("mismatch")

    def test_comparison_is_case_sensitive(self):
        request = make_request(
            "POST", headers={"X-CSRF-Token": "ABC123"}, cookies={CSRF_COOKIE: "abc123"}
        )
        assert _guard().check(request) == CsrfFailure("mismatch")

    def test_prefix_header_rejected(self):
        request = make_request(
            "PATCH", headers={"X-CSRF-Token": "abc12"}, cookies={CSRF_COOKIE: "abc123"}
        )
        assert _guard().check(request) == CsrfFailure("mismatch")

    def test_cookie_prefix_of_header_rejected(self):
        request = make_request(
            "PATCH", headers={"X-CSRF-Token": "abc1234"}, cookies={CSRF_COOKIE: "abc123"}
        )
        assert _guard().check(request) == CsrfFailure("mismatch")

    def test_disabled_guard_passes_everything(self):
        assert isinstance(_guard(enabled=False).check(make_request("POST")), CsrfOk)
