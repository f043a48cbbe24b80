from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Sequence

from fastapi import Request

from coris.logging import get_logger
from coris.service.csrf import CsrfFailure, CsrfGuard
from coris.service.errors import AuthenticationError, CsrfError, ServiceError
from coris.service.sessions import AuthFailure, Principal, SessionManager

logger = get_logger(__name__)

PathClass = Literal["public", "protected", "passthrough"]


@dataclass(frozen=True)
class GateDecision:
    principal: Optional[Principal] = None
    error: Optional[ServiceError] = None

    @property
    def allowed(self) -> bool:
        return self.error is None


class RequestGate:
    """Per-request policy: CSRF first, then session, for protected API paths."""

    def __init__(
        self,
        csrf: CsrfGuard,
        sessions: SessionManager,
        *,
        api_prefix: str = "/v1/",
        public_prefixes: Sequence[str] = ("/v1/auth/",),
        public_paths: Sequence[str] = ("/health",),
    ) -> None:
        self.csrf = csrf
        self.sessions = sessions
        self.api_prefix = api_prefix
        self.public_prefixes = tuple(public_prefixes)
        self.public_paths = frozenset(public_paths)

    def classify(self, path: str) -> PathClass:
        if path in self.public_paths or path.startswith(self.public_prefixes):
            return "public"
        if path.startswith(self.api_prefix):
            return "protected"
        return "passthrough"

    async def evaluate(self, request: Request) -> GateDecision:
        path = request.url.path
        if self.classify(path) != "protected":
            return GateDecision()

        csrf_result = self.csrf.check(request)
        if isinstance(csrf_result, CsrfFailure):
            logger.warning(
                "csrf_rejected",
                path=path,
                method=request.method,
                reason=csrf_result.reason,
            )
            return GateDecision(error=CsrfError())

        session_result = await self.sessions.verify_session(request)
        if isinstance(session_result, AuthFailure):
            log_fn = logger.error if session_result.reason == "store_error" else logger.info
            log_fn(
                "session_rejected",
                path=path,
                method=request.method,
                reason=session_result.reason,
            )
            return GateDecision(error=AuthenticationError())
        return GateDecision(principal=session_result)
