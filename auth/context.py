"""
auth/context.py -- Explicit per-request execution context.

A RequestContext is built once per inbound request by the HTTP middleware and
passed as the first argument to every Authenticator / AccountService
operation. It replaces ambient thread-local state: correlation id, path and
deadline travel with the call instead of living in a global holder.
"""

from __future__ import annotations

import functools
import time
import uuid
from dataclasses import dataclass, field

from auth.errors import AuthError, DeadlineExceeded


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RequestContext:
    path: str = ""
    correlation_id: str = field(default_factory=new_correlation_id)
    client_ip: str = "unknown"
    # time.monotonic() value; None means no deadline.
    deadline: float | None = None

    @classmethod
    def with_timeout(cls, path: str, timeout: float | None, **kwargs) -> "RequestContext":
        deadline = time.monotonic() + timeout if timeout else None
        return cls(path=path, deadline=deadline, **kwargs)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def ensure_active(self) -> None:
        """Raise DeadlineExceeded if the caller's deadline has already passed."""
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceeded(path=self.path)


def operation(func):
    """Decorator for service methods whose first argument is a RequestContext.

    Refuses to start once the deadline has passed and stamps the request path
    onto any AuthError raised inside.
    """

    @functools.wraps(func)
    def wrapper(self, ctx: RequestContext, *args, **kwargs):
        ctx.ensure_active()
        try:
            return func(self, ctx, *args, **kwargs)
        except AuthError as exc:
            exc.at(ctx.path)
            raise

    return wrapper
