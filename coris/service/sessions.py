from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal, Optional, Protocol, Union

from fastapi import Request, Response

from coris.logging import get_logger
from coris.service.cookies import SESSION_COOKIE, CookiePolicy
from coris.service.tokens import TokenCodec

logger = get_logger(__name__)


class VersionSource(Protocol):
    """Read side of the credential store used for revocation checks."""

    def get_auth_version(self, user_id: str) -> Optional[int]: ...


@dataclass(frozen=True)
class Principal:
    id: str


AuthFailureReason = Literal["missing", "invalid", "store_error", "user_missing", "revoked"]


@dataclass(frozen=True)
class AuthFailure:
    reason: AuthFailureReason


SessionResult = Union[Principal, AuthFailure]


class SessionManager:
    """Issues, verifies and clears cookie-held session tokens.

    Tokens are stateless. Revocation works by comparing the version embedded
    at issuance with the user's current ``auth_version``; bumping the
    counter invalidates every outstanding token for that user at once.
    """

    def __init__(
        self,
        codec: TokenCodec,
        versions: VersionSource,
        cookies: CookiePolicy,
        *,
        store_timeout: float = 3.0,
        cookie_name: str = SESSION_COOKIE,
    ) -> None:
        self.codec = codec
        self.versions = versions
        self.cookies = cookies
        self.store_timeout = store_timeout
        self.cookie_name = cookie_name

    async def _lookup_version(self, user_id: str) -> Optional[int]:
        return await asyncio.wait_for(
            asyncio.to_thread(self.versions.get_auth_version, user_id),
            timeout=self.store_timeout,
        )

    async def issue_session(self, response: Response, user_id: str) -> str:
        version = await self._lookup_version(user_id)
        if version is None:
            # Only reachable if the user row vanished between login and issuance
            logger.warning("session_issue_version_missing", user_id=user_id)
            version = 1
        token = self.codec.encode(user_id, version)
        self.cookies.set(response, self.cookie_name, token, httponly=True)
        logger.info("session_issued", user_id=user_id, auth_version=version)
        return token

    def clear_session(self, response: Response) -> None:
        self.cookies.clear(response, self.cookie_name, httponly=True)

    async def verify_session(self, request: Request) -> SessionResult:
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return AuthFailure("missing")
        claims = self.codec.decode(raw)
        if claims is None:
            return AuthFailure("invalid")
        try:
            current = await self._lookup_version(claims.subject)
        except asyncio.TimeoutError:
            logger.error(
                "session_version_lookup_timeout",
                user_id=claims.subject,
                timeout=self.store_timeout,
            )
            return AuthFailure("store_error")
        except Exception as exc:
            logger.error(
                "session_version_lookup_failed",
                user_id=claims.subject,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AuthFailure("store_error")
        if current is None:
            return AuthFailure("user_missing")
        if current != claims.version:
            logger.info(
                "session_revoked",
                user_id=claims.subject,
                token_version=claims.version,
                current_version=current,
            )
            return AuthFailure("revoked")
        return Principal(id=claims.subject)
