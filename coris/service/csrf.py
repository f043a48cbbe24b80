from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from typing import Literal, Union

from fastapi import Request, Response

from coris.service.cookies import CSRF_COOKIE, CSRF_HEADER, CookiePolicy

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def generate_csrf_token() -> str:
    """192 bits of randomness, hex encoded."""
    return secrets.token_hex(24)


@dataclass(frozen=True)
class CsrfOk:
    pass


@dataclass(frozen=True)
class CsrfFailure:
    reason: Literal["missing_header", "missing_cookie", "mismatch"]


CsrfResult = Union[CsrfOk, CsrfFailure]


class CsrfGuard:
    """Double-submit CSRF protection.

    The token lives in a script-readable cookie and must be echoed in the
    ``X-CSRF-Token`` header on unsafe methods. A cross-site page cannot read
    the cookie, so it cannot produce the header.
    """

    def __init__(
        self,
        cookies: CookiePolicy,
        *,
        enabled: bool = True,
        cookie_name: str = CSRF_COOKIE,
        header_name: str = CSRF_HEADER,
    ) -> None:
        self.cookies = cookies
        self.enabled = enabled
        self.cookie_name = cookie_name
        self.header_name = header_name

    def issue_csrf_cookie(self, response: Response) -> str:
        token = generate_csrf_token()
        self.cookies.set(response, self.cookie_name, token, httponly=False)
        return token

    def clear_csrf_cookie(self, response: Response) -> None:
        self.cookies.clear(response, self.cookie_name, httponly=False)

    def check(self, request: Request) -> CsrfResult:
        if not self.enabled:
            return CsrfOk()
        if request.method.upper() in SAFE_METHODS:
            return CsrfOk()
        header = request.headers.get(self.header_name) or ""
        cookie = request.cookies.get(self.cookie_name) or ""
        if not header:
            return CsrfFailure("missing_header")
        if not cookie:
            return CsrfFailure("missing_cookie")
        if not hmac.compare_digest(header.encode("utf-8"), cookie.encode("utf-8")):
            return CsrfFailure("mismatch")
        return CsrfOk()
