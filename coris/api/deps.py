from __future__ import annotations

from fastapi import Request

from coris.service.errors import AuthenticationError
from coris.service.runtime import Runtime
from coris.service.sessions import Principal


def get_runtime_dep(request: Request) -> Runtime:
    return request.app.state.runtime


def get_principal(request: Request) -> Principal:
    """Principal bound by the request gate; absent means the route is unprotected."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError()
    return principal


def client_key(request: Request) -> str:
    # Peer address only; forwarded headers are client-controlled
    return request.client.host if request.client else "unknown"
