"""
core/config.py -- DevSolve settings, read once from the environment / .env.

Every tunable lives on Settings: the signing secret, token lifetimes, bcrypt
cost, SMTP credentials, the rate-limit storage URI and the host/CORS lists.
Other modules ask get_settings() for them and never read os.environ.

Field names map to upper-case env vars (access_token_ttl -> ACCESS_TOKEN_TTL).
pydantic-settings handles the lookup and type coercion; the validators below
refuse to start the process on an unsafe or malformed value.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Both token
       backends sign with HMAC-SHA256 keyed by this value.

  [M7] Outside DEBUG a missing SECRET_KEY stops startup. Under DEBUG a
       throwaway key is generated, so sessions die with the process.

  Token lifetimes use the "<number><s|m|h|d>" duration format. A malformed
  value is rejected at startup rather than silently replaced by a default.

Layer rule: core/ sits below everything else and imports none of api/, web/,
auth/ or qa/.
"""

import logging
import re
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("devsolve.config")

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'devsolve.db'}"


def parse_duration(value: str) -> int:
    """Convert a duration string such as "15m" or "7d" to whole seconds.

    Raises ValueError for anything that is not <positive integer><unit>.
    """
    match = _DURATION_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid duration {value!r}; expected <number><s|m|h|d>, e.g. '15m'.")
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration {value!r} must be greater than zero.")
    return seconds


class Settings(BaseSettings):
    """DevSolve configuration. Every field has a default except the secret,
    which DEBUG mode can generate, so tests construct Settings() with no .env.
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
    # "" means unset; validate_secret_key replaces it or refuses to start.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    # Public base URL used to build links inside outgoing emails.
    app_url: str = "http://localhost:8000"

    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:8000", "http://localhost:3000"]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    access_token_ttl: str = "15m"
    refresh_token_ttl: str = "7d"
    verification_token_ttl_hours: int = 24
    reset_token_ttl_minutes: int = 60
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Email (optional -- empty SMTP_HOST disables delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    mail_from_name: str = "DevSolve"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # "memory://" keeps counters in process. Any other URI understood by the
    # limits package (redis://, memcached://) shares them across instances.
    rate_limit_storage_uri: str = "memory://"
    rate_limit_sweep_seconds: int = 300

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def validate_ttl(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        # bcrypt accepts cost factors 4..31
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a dev key under DEBUG, otherwise require one; always >= 32 chars. [M6][M7]"""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("DEBUG is on and SECRET_KEY is unset; using a random key for this process only")
            else:
                raise ValueError("SECRET_KEY must be set unless DEBUG=true (env var or .env file).")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_token_seconds(self) -> int:
        return parse_duration(self.access_token_ttl)

    @property
    def refresh_token_seconds(self) -> int:
        return parse_duration(self.refresh_token_ttl)

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)


@lru_cache
def get_settings() -> Settings:
    """Build Settings on first call and hand back the same instance afterwards.

    Tests that change the environment call get_settings.cache_clear() first.
    """
    return Settings()
