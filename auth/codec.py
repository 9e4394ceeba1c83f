"""
auth/codec.py -- Sign, verify and read RS256 bearer tokens.

Signing uses the RSA private key; verification needs only the public key, so
a verify-only TokenCodec can be built from the public PEM alone.

Every token carries:
  sub    -- the user's stable identifier (email)
  iss    -- Settings.jwt_issuer
  jti    -- uuid4, unique per token
  iat    -- issued-at (epoch seconds)
  exp    -- expires-at (epoch seconds)
  scope  -- space-separated role set
plus whatever the caller passes in claims (type, uid, ...).

decode() fails closed. Anything short of a well-formed RS256 token with a
valid signature, the expected issuer and a future exp raises an InvalidToken
subclass; no partially trusted claim set ever escapes.

Expiry is checked against the injected Clock rather than by python-jose
(which always reads the system time), so tests can move time.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt
from jose.exceptions import JWTError

from auth.errors import InvalidSignature, MalformedToken, TokenExpired
from core.clock import Clock

logger = logging.getLogger("edgeauth.auth.codec")

ALGORITHM = "RS256"
MAX_TOKEN_LENGTH = 8192
RESERVED_CLAIMS = frozenset({"sub", "iss", "jti", "iat", "exp"})


class TokenTooLarge(ValueError):
    pass


def _load_private_key(pem: str) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Expected RSA private key, got {type(key).__name__}")
    return key


def _load_public_key(pem: str) -> rsa.RSAPublicKey:
    key = serialization.load_pem_public_key(pem.encode("ascii"))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError(f"Expected RSA public key, got {type(key).__name__}")
    return key


class TokenCodec:
    def __init__(
        self,
        public_key_pem: str,
        private_key_pem: str | None = None,
        issuer: str = "EdgeAuth-API",
        clock: Clock | None = None,
    ) -> None:
        # Parse once up front so a bad key fails at startup, not on first login.
        _load_public_key(public_key_pem)
        if private_key_pem:
            _load_private_key(private_key_pem)
        self._public_pem = public_key_pem
        self._private_pem = private_key_pem
        self.issuer = issuer
        self._clock = clock or Clock()

    @property
    def can_sign(self) -> bool:
        return self._private_pem is not None

    def issue(self, claims: Mapping[str, Any], subject: str, expiry: timedelta) -> str:
        """Return a signed token for subject that expires after expiry.

        Raises ValueError if claims try to override a reserved claim, and
        TokenTooLarge if the encoded token would exceed MAX_TOKEN_LENGTH.
        """
        if not self.can_sign:
            raise RuntimeError("TokenCodec was built without a private key and cannot sign.")
        collisions = RESERVED_CLAIMS.intersection(claims)
        if collisions:
            raise ValueError(f"Reserved claims cannot be overridden: {sorted(collisions)}")

        now = self._clock.now()
        payload: dict[str, Any] = {"scope": ""}
        payload.update(claims)
        payload.update(
            {
                "sub": subject,
                "iss": self.issuer,
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int((now + expiry).timestamp()),
            }
        )
        token = jwt.encode(payload, self._private_pem, algorithm=ALGORITHM)
        if len(token) > MAX_TOKEN_LENGTH:
            raise TokenTooLarge(f"Encoded token is {len(token)} chars; limit is {MAX_TOKEN_LENGTH}.")
        return token

    @staticmethod
    def token_id(token: str) -> str | None:
        """jti of a token this codec just issued. Does NOT verify; never use on inbound tokens."""
        return jwt.get_unverified_claims(token).get("jti")

    def decode(self, token: str) -> dict[str, Any]:
        """Verify token and return its claims, or raise an InvalidToken subclass."""
        if not token or len(token) > MAX_TOKEN_LENGTH or token.count(".") != 2:
            raise MalformedToken()
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise MalformedToken() from exc
        if header.get("alg") != ALGORITHM:
            logger.warning("Rejected token with alg=%r", header.get("alg"))
            raise MalformedToken("Unsupported token algorithm.")

        try:
            claims = jwt.decode(
                token,
                self._public_pem,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={
                    "verify_aud": False,
                    "verify_exp": False,
                    "require_exp": True,
                    "require_iat": True,
                    "require_iss": True,
                    "require_sub": True,
                    "require_jti": True,
                },
            )
        except JWTError as exc:
            raise InvalidSignature() from exc

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise MalformedToken()
        if self._clock.timestamp() >= exp:
            raise TokenExpired()
        return claims
