from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from coris.config import Settings, get_settings, reset_settings_cache
from coris.logging import get_logger
from coris.service.auth import AuthService
from coris.service.cookies import CookiePolicy
from coris.service.csrf import CsrfGuard
from coris.service.email import EmailService
from coris.service.gate import RequestGate
from coris.service.sessions import SessionManager
from coris.service.tokens import TokenCodec
from coris.storage.memory import MemoryStore
from coris.storage.postgres import PostgresStore, StoredFunctions
from coris.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the service instances for one application.

    Settings are read once here and handed to each component; request
    handling never touches the environment.
    """

    def __init__(self, settings: Optional[Settings] = None, *, store=None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        else:
            try:
                self.store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(
                        self.settings.database_url,
                        functions=StoredFunctions.from_settings(self.settings),
                    )
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        logger.info("runtime_store_initialized", store_type=type(self.store).__name__)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits are per-process until Redis is reachable",
                )

        self.cookies = CookiePolicy.from_settings(self.settings)
        self.codec = TokenCodec(
            self.settings.jwt_secret, ttl=timedelta(days=self.settings.session_ttl_days)
        )
        self.sessions = SessionManager(
            self.codec,
            self.store,
            self.cookies,
            store_timeout=self.settings.store_timeout_seconds,
        )
        self.csrf = CsrfGuard(self.cookies, enabled=self.settings.csrf_enabled)
        self.gate = RequestGate(self.csrf, self.sessions)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.email,
            reset_ttl_minutes=self.settings.reset_token_ttl_minutes,
        )

        # key -> (tokens, last_ts, capacity, refill_rate)
        self._local_rate_limits: Dict[str, Tuple[float, float, float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()
        self._local_rate_limit_calls = 0

        if not self.settings.csrf_enabled:
            logger.warning("csrf_protection_disabled")
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            cookie_secure=self.cookies.secure,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the process-wide Runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


LOCAL_BUCKET_PRUNE_INTERVAL = 256


def _prune_local_buckets(
    buckets: Dict[str, Tuple[float, float, float, float]], now: float
) -> int:
    """Drop buckets that have refilled to capacity.

    Caller holds the bucket lock. Returns the number of entries removed.
    """
    idle = [
        key
        for key, (tokens, last_ts, capacity, refill_rate) in buckets.items()
        if tokens + max(0.0, now - last_ts) * refill_rate >= capacity
    ]
    for key in idle:
        del buckets[key]
    return len(idle)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket rate limit, shared through Redis when it is configured.

    Without Redis the bucket lives in this process only.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts, _, _ = runtime._local_rate_limits.get(
            key, (float(limit), now, float(limit), refill_rate)
        )
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, float(limit), refill_rate)
        runtime._local_rate_limit_calls += 1
        if runtime._local_rate_limit_calls % LOCAL_BUCKET_PRUNE_INTERVAL == 0:
            _prune_local_buckets(runtime._local_rate_limits, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = ["Runtime", "check_rate_limit", "get_runtime", "reset_runtime_for_tests"]
