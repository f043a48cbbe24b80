from __future__ import annotations

import asyncio
import hashlib
import secrets
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from coris.logging import get_logger, redact_email, sanitize_error_message
from coris.service.email import EmailService
from coris.service.errors import ConflictError, InvalidTokenError
from coris.storage.errors import ConstraintViolation
from coris.storage.models import PasswordReset, User

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = "If an account exists, a reset email will be sent."


class AuthStore(Protocol):
    def create_user(self, email: str, password_hash: str) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_auth_version(self, user_id: str) -> Optional[int]: ...

    def create_password_reset(
        self, user_id: str, token_hash: str, ttl_minutes: int
    ) -> PasswordReset: ...

    def consume_password_reset(self, token_hash: str, password_hash: str) -> Optional[str]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_reset_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AuthService:
    """Credential flows: signup, login and password reset.

    Cookie handling stays in the route layer; this class only talks to the
    store, the password hasher and the mailer.
    """

    def __init__(
        self,
        store: AuthStore,
        email: EmailService,
        *,
        reset_ttl_minutes: int = 30,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.reset_ttl_minutes = reset_ttl_minutes
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost a hash
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_hex(16))

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def signup(self, email: str, password: str) -> User:
        email = normalize_email(email)
        pwd_hash = await asyncio.to_thread(self._hash_password, password)
        try:
            user = await asyncio.to_thread(self.store.create_user, email, pwd_hash)
        except ConstraintViolation as exc:
            logger.info("signup_conflict", email=redact_email(email))
            raise ConflictError("Email already registered", detail=exc.detail) from exc
        logger.info("user_signed_up", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> Optional[User]:
        email = normalize_email(email)
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if not user:
            await asyncio.to_thread(self._verify_hash, self._dummy_hash, password)
            logger.info("login_failed", email=redact_email(email))
            return None
        ok = await asyncio.to_thread(self._verify_hash, user.password_hash, password)
        if not ok:
            logger.info("login_failed", user_id=user.id)
            return None
        logger.info("login_succeeded", user_id=user.id)
        return user

    async def request_password_reset(self, email: str) -> dict:
        """Issue a reset token and mail it if the account exists.

        The response never depends on whether the address is registered.
        """
        email = normalize_email(email)
        ok_response = {"ok": True, "message": RESET_REQUESTED_MESSAGE}

        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if not user:
            logger.info("password_reset_unknown_email", email=redact_email(email))
            return ok_response

        raw_token = secrets.token_hex(32)
        # Failures stay internal so known and unknown addresses answer alike
        try:
            await asyncio.to_thread(
                self.store.create_password_reset,
                user.id,
                hash_reset_token(raw_token),
                self.reset_ttl_minutes,
            )
            sent = await asyncio.to_thread(self.email.send_password_reset, user.email, raw_token)
        except Exception as exc:
            logger.error(
                "password_reset_issue_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return ok_response
        if not sent:
            logger.warning("password_reset_email_failed", user_id=user.id)
        logger.info("password_reset_requested", user_id=user.id)
        return ok_response

    async def confirm_password_reset(self, raw_token: str, new_password: str) -> str:
        """Spend a reset token, rotate the password and revoke all sessions.

        Raises InvalidTokenError for unknown, expired or already used tokens.
        """
        pwd_hash = await asyncio.to_thread(self._hash_password, new_password)
        user_id = await asyncio.to_thread(
            self.store.consume_password_reset, hash_reset_token(raw_token), pwd_hash
        )
        if not user_id:
            logger.warning("password_reset_invalid_token")
            raise InvalidTokenError()
        logger.info("password_reset_completed", user_id=user_id)
        return user_id


__all__ = [
    "AuthService",
    "AuthStore",
    "RESET_REQUESTED_MESSAGE",
    "hash_reset_token",
    "normalize_email",
]
