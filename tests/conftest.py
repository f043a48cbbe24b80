import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi import Request  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coris.app import create_app  # noqa: E402
from coris.config import Settings  # noqa: E402
from coris.service.email import EmailService  # noqa: E402
from coris.service.runtime import Runtime  # noqa: E402
from coris.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "TestPassword123!"


class RecordingEmail(EmailService):
    """EmailService that keeps messages instead of sending them."""

    def __init__(self, *, fail: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.fail = fail
        self.outbox = []

    def send(self, to_email: str, subject: str, text_body: str) -> bool:
        if self.fail:
            return False
        self.outbox.append({"to": to_email, "subject": subject, "body": text_body})
        return True


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=TEST_SECRET,
        app_env="test",
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def outbox_email():
    return RecordingEmail(base_url="http://app.test")


@pytest.fixture
def runtime(settings, store, outbox_email):
    rt = Runtime(settings, store=store)
    rt.auth._pwd_hasher = fast_hasher()
    rt.email = outbox_email
    rt.auth.email = outbox_email
    return rt


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


def make_request(method="GET", path="/v1/templates/me", *, headers=None, cookies=None):
    """Bare ASGI request for exercising guards without an app."""
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie_header.encode()))
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "root_path": "",
        "scheme": "http",
        "query_string": b"",
        "headers": raw_headers,
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
    }
    return Request(scope)


def signup(client, email="user@example.com", password=TEST_PASSWORD):
    """Sign up and return (response, csrf token)."""
    response = client.post("/v1/auth/signup", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response, response.json()["csrf"]


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
