"""
tests/conftest.py -- Shared fixtures for EdgeAuth unit and integration tests.

This module provides:
  - FakeClock: a Clock whose time only moves when a test says so
  - RecordingSender: an EmailSender that keeps messages in memory
  - unit fixtures: one fresh in-memory database and one set of services per test
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient and MailDispatcher run code in worker threads. Plain
:memory: DBs are per-connection and would present a blank schema to each
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the process.

Environment variables must be set before any project import: get_settings()
is cached on first use and reads them exactly once.
"""

from __future__ import annotations

import asyncio
import os
import re
import threading
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set these before any auth/core import. DEBUG lets get_settings()
# generate SECRET_KEY and an RSA keypair instead of raising; a low bcrypt cost
# keeps the suite fast; rate limits would otherwise trip on repeated logins.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services, close_services
from auth.accounts import AccountService
from auth.authenticator import Authenticator
from auth.codec import TokenCodec
from auth.context import RequestContext
from auth.email_otp import EmailOtpEngine
from auth.errors import DeliveryFailure
from auth.ledger import TokenLedger
from auth.mailer import EmailSender, MailDispatcher
from auth.models import User
from auth.passwords import hash_password
from auth.proofs import ProofManager
from auth.store import ProofStore, TokenStore, UserStore, create_auth_engine
from auth.totp import TotpEngine
from cache.store import SecretCache
from core.clock import Clock
from core.config import generate_rsa_keypair, get_settings

TEST_SECRET = "t" * 48

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock(Clock):
    """A Clock that only moves on advance() / set().

    Starts on a whole second so epoch arithmetic at TTL boundaries is exact.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)

    def set(self, when: datetime) -> None:
        self._now = when


@dataclass
class SentEmail:
    to: str
    subject: str
    body: str


class RecordingSender(EmailSender):
    """Keeps every message in self.outbox. Set fail=True to simulate an SMTP outage."""

    def __init__(self) -> None:
        super().__init__()
        self.outbox: list[SentEmail] = []
        self.fail = False
        self._lock = threading.Lock()

    def send(self, to: str, body: str, subject: str) -> None:
        if self.fail:
            raise DeliveryFailure()
        with self._lock:
            self.outbox.append(SentEmail(to=to, subject=subject, body=body))

    def last_to(self, to: str) -> SentEmail:
        with self._lock:
            for msg in reversed(self.outbox):
                if msg.to == to:
                    return msg
        raise AssertionError(f"no email sent to {to}")


def link_token(body: str) -> str:
    """Pull the raw proof value out of an emailed link."""
    match = re.search(r"[?&]token=([A-Za-z0-9_\-]+)", body)
    assert match, "email body contains no token link"
    return match.group(1)


def otp_code(body: str) -> str:
    match = re.search(r">(\d{6})<", body)
    assert match, "email body contains no 6-digit code"
    return match.group(1)


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Unit fixtures -- function scoped, fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_keys() -> tuple[str, str]:
    return generate_rsa_keypair()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(path="/test")


@pytest.fixture
def engine():
    eng = create_auth_engine(_memory_url("unit"))
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def token_store(engine) -> TokenStore:
    return TokenStore(engine)


@pytest.fixture
def proof_store(engine) -> ProofStore:
    return ProofStore(engine)


@pytest.fixture
def ledger(token_store) -> TokenLedger:
    return TokenLedger(token_store)


@pytest.fixture
def proofs(proof_store, clock) -> ProofManager:
    return ProofManager(proof_store, TEST_SECRET, clock)


@pytest.fixture
def codec(rsa_keys, clock) -> TokenCodec:
    private_pem, public_pem = rsa_keys
    return TokenCodec(public_key_pem=public_pem, private_key_pem=private_pem, issuer="EdgeAuth-Test", clock=clock)


@pytest.fixture
def totp(clock) -> TotpEngine:
    return TotpEngine("EdgeAuth-Test", "EdgeAuth 2FA", clock, valid_window=1)


@pytest.fixture
def secret_cache(clock) -> SecretCache:
    return SecretCache(ttl=300, clock=clock)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def dispatcher(sender) -> Generator[MailDispatcher, None, None]:
    d = MailDispatcher(sender, max_workers=1)
    yield d
    d.shutdown(wait=True)


@pytest.fixture
def email_otp(secret_cache, dispatcher) -> EmailOtpEngine:
    return EmailOtpEngine(secret_cache, dispatcher)


@pytest.fixture
def authenticator(users, ledger, codec, totp, email_otp) -> Authenticator:
    return Authenticator(
        users=users,
        ledger=ledger,
        codec=codec,
        totp=totp,
        email_otp=email_otp,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


@pytest.fixture
def accounts(users, ledger, proofs, totp, sender, dispatcher, clock) -> AccountService:
    return AccountService(
        users=users,
        ledger=ledger,
        proofs=proofs,
        totp=totp,
        sender=sender,
        dispatcher=dispatcher,
        public_base_url="http://testserver",
        clock=clock,
    )


@pytest.fixture
def make_user(users, totp):
    """Factory: insert a user directly (bypassing registration) and return it."""

    def _make(
        username: str = "alice",
        email: str = "alice@x.com",
        password: str = "correct-horse",
        enabled: bool = True,
        mfa_enabled: bool = False,
    ) -> User:
        user = User(
            username=username,
            email=email,
            hashed_password=hash_password(password),
            mfa_secret=totp.generate_secret(),
            enabled=enabled,
            mfa_enabled=mfa_enabled,
        )
        user.id = users.create_user(user)
        return user

    return _make


# ---------------------------------------------------------------------------
# Integration fixtures -- one TestClient per test module
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, sender: RecordingSender):
    """Return an async context manager that replaces the real lifespan.

    Wires the real services over a test engine and a recording sender. The
    sweep task is a long sleep so shutdown has a real Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings(), engine=engine, sender=sender, clock=Clock())
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.sweep_task
        close_services(app)

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, access_token, user_id) for API integration tests.

    A confirmed user "testuser" / "testpass123" (MFA off) exists before the
    client starts; the token comes from a real login. Tests that log in
    again must use their own user, or they revoke this token.
    """
    engine = create_auth_engine(_memory_url(f"api_{request.module.__name__.rsplit('.', 1)[-1]}"))
    sender = RecordingSender()

    seed = User(
        username="testuser",
        email="testuser@example.com",
        hashed_password=hash_password("testpass123"),
        mfa_secret="JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP",
        enabled=True,
    )
    uid = UserStore(engine).create_user(seed)

    app.router.lifespan_context = _patch_lifespan(engine, sender)

    with TestClient(app, raise_server_exceptions=True) as client:
        result = client.app.state.authenticator.login(RequestContext(path="/setup"), "testuser", "testpass123")
        yield client, result.tokens.access_token, uid


@pytest.fixture(scope="module")
def outbox(api_client) -> RecordingSender:
    client, _token, _uid = api_client
    return client.app.state.dispatcher.sender
