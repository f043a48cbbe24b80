from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from fastapi import Response

SESSION_COOKIE = "coris_session"
CSRF_COOKIE = "coris_csrf"
CSRF_HEADER = "X-CSRF-Token"


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes shared by the session and CSRF cookies.

    Deletion must repeat the attributes used at issuance or browsers keep
    the cookie, so both set and clear go through here.
    """

    secure: bool
    domain: Optional[str] = None
    samesite: Literal["lax", "strict", "none"] = "lax"
    path: str = "/"
    max_age: int = 60 * 60 * 24 * 7

    @classmethod
    def from_settings(cls, settings) -> "CookiePolicy":
        return cls(
            secure=bool(settings.cookie_secure),
            domain=settings.cookie_domain or None,
            max_age=settings.session_ttl_days * 24 * 60 * 60,
        )

    def set(self, response: Response, name: str, value: str, *, httponly: bool) -> None:
        response.set_cookie(
            name,
            value,
            max_age=self.max_age,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=httponly,
            samesite=self.samesite,
        )

    def clear(self, response: Response, name: str, *, httponly: bool) -> None:
        response.delete_cookie(
            name,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=httponly,
            samesite=self.samesite,
        )
