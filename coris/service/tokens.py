from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from coris.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class SessionClaims:
    subject: str
    version: int
    issued_at: int
    expires_at: int
    type: str = ACCESS_TOKEN_TYPE


class TokenCodec:
    """Signs and verifies the compact HS256 session token.

    Payload shape is ``{"sub", "v", "typ", "iat", "exp"}``. Only the session
    manager calls this; nothing else reads token internals.
    """

    algorithm = "HS256"

    def __init__(self, secret: str, *, ttl: timedelta = timedelta(days=7)) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._key = secret.encode("utf-8")
        self.ttl = ttl

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def encode(self, subject: str, version: int, *, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload: dict[str, Any] = {
            "sub": subject,
            "v": int(version),
            "typ": ACCESS_TOKEN_TYPE,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
        }
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: Optional[float] = None) -> Optional[SessionClaims]:
        """Return the claims of a valid, unexpired access token, else None."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            logger.info("session_token_malformed")
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.info("session_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning(
                "session_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            logger.info("session_token_bad_signature")
            return None

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("session_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        subject = payload.get("sub")
        version = payload.get("v")
        if not isinstance(subject, str) or not subject:
            return None
        # bool is an int subclass; a JSON true must not pass as version 1
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            return None
        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            return None
        try:
            issued_at = int(payload.get("iat", 0))
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        current = now if now is not None else time.time()
        if expires_at <= current:
            logger.info("session_token_expired", subject=subject)
            return None
        return SessionClaims(
            subject=subject,
            version=version,
            issued_at=issued_at,
            expires_at=expires_at,
        )
