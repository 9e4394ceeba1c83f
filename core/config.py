"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for EdgeAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Two secrets are policed here:
        SECRET_KEY  -- HMAC key for the digests of emailed proof values.
        JWT keypair -- RSA keys for RS256 bearer tokens.
      Dev mode generates both with a warning; production refuses to start
      without them.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright.
  The private key never leaves this process; only the public key is needed
  to verify tokens (see auth/codec.py).

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

from __future__ import annotations

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("edgeauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'edgeauth.db'}"


def generate_rsa_keypair(key_size: int = 2048) -> tuple[str, str]:
    """Return a fresh (private_pem, public_pem) RSA pair as text.

    Used for development mode and by the test suite. Production deployments
    supply their own keys via JWT_PRIVATE_KEY_PATH / JWT_PUBLIC_KEY_PATH.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
    return private_pem, public_pem


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Field names map to upper-cased
    env vars (jwt_issuer -> JWT_ISSUER).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    public_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Bearer tokens (RS256)
    # ------------------------------------------------------------------

    jwt_issuer: str = "EdgeAuth-API"
    jwt_private_key_path: str = ""
    jwt_public_key_path: str = ""
    # Inline PEM takes precedence over the *_path fields.
    jwt_private_key_pem: str = ""
    jwt_public_key_pem: str = ""
    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    otp_expiration_minutes: int = 5
    totp_issuer: str = "EdgeAuth-API"
    totp_label: str = "EdgeAuth 2FA"
    totp_valid_window: int = 1

    # ------------------------------------------------------------------
    # Ephemeral proofs
    # ------------------------------------------------------------------

    confirmation_expire_hours: int = 24
    password_reset_expire_hours: int = 24
    email_change_expire_minutes: int = 15

    # ------------------------------------------------------------------
    # Outbound email (empty host = log-only dev mode)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "no-reply@edgeauth.local"
    mail_workers: int = 4

    # ------------------------------------------------------------------
    # Rate limiting and housekeeping
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"
    cache_sweep_seconds: int = 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Outstanding confirmation and reset links stop resolving after a
            restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Emailed links will not survive restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def resolve_jwt_keys(self) -> "Settings":
        """Resolve the RS256 keypair: inline PEM, then file, then dev-generated.

        A public key without a private key is allowed (verify-only deployment).
        A private key without a public key is not.
        """
        if not self.jwt_private_key_pem and self.jwt_private_key_path:
            self.jwt_private_key_pem = Path(self.jwt_private_key_path).read_text(encoding="utf-8")
        if not self.jwt_public_key_pem and self.jwt_public_key_path:
            self.jwt_public_key_pem = Path(self.jwt_public_key_path).read_text(encoding="utf-8")

        if self.jwt_public_key_pem:
            return self
        if self.jwt_private_key_pem:
            raise ValueError("JWT_PUBLIC_KEY_PEM or JWT_PUBLIC_KEY_PATH is required alongside the private key.")
        if not self.debug:
            raise ValueError(
                "An RSA keypair is required in production mode. "
                "Set JWT_PRIVATE_KEY_PATH and JWT_PUBLIC_KEY_PATH. "
                "To run in development mode, set DEBUG=true."
            )
        self.jwt_private_key_pem, self.jwt_public_key_pem = generate_rsa_keypair()
        logger.warning("WARNING: Using an auto-generated RSA keypair. " "Issued tokens will not survive restarts.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
