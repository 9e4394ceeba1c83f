"""
auth/dependencies.py -- FastAPI Depends() helpers for the per-request principal.

The HTTP middleware (api/main.py) runs RequestInterceptor once per request
and puts the outcome on request.state.principal. These helpers only read it;
none of them decode tokens a second time.

try_get_principal() is the soft variant (returns None).
get_principal() raises 401 when the request is unauthenticated.

get_context() hands route handlers the RequestContext the middleware built.
"""

from __future__ import annotations

from fastapi import Request

from auth.context import RequestContext
from auth.errors import UnauthorizedError
from auth.models import Principal


def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        ctx = RequestContext(path=request.url.path, client_ip=request.client.host if request.client else "unknown")
    return ctx


def try_get_principal(request: Request) -> Principal | None:
    return getattr(request.state, "principal", None)


def get_principal(request: Request) -> Principal:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise UnauthorizedError(path=request.url.path)
    return principal

