"""Core configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class HashAlgorithm(str, Enum):
    ARGON2ID = "argon2id"
    BCRYPT = "bcrypt"
    SCRYPT = "scrypt"


class Settings(BaseSettings):
    """Core settings loaded from environment variables with KEYMETER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="KEYMETER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.keymeter/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Key hashing.  The first installed algorithm in this order is used for
    # new hashes; verification always dispatches on the stored tag.
    hash_preference: list[HashAlgorithm] = [
        HashAlgorithm.ARGON2ID,
        HashAlgorithm.BCRYPT,
        HashAlgorithm.SCRYPT,
    ]
    bcrypt_rounds: int = 12

    # Plaintext key shape: "kmx_live_" followed by this many hex characters.
    key_random_hex_min: int = 32
    key_random_hex_max: int = 48

    # Provisioning requests whose valid_from lies at most this far in the
    # future are treated as effective immediately (clock skew with billing).
    valid_from_grace_seconds: int = 120

    @field_validator("bcrypt_rounds")
    @classmethod
    def _validate_bcrypt_rounds(cls, v: int) -> int:
        if not 4 <= v <= 31:
            raise ValueError("bcrypt_rounds must be between 4 and 31")
        return v

    @field_validator("valid_from_grace_seconds")
    @classmethod
    def _validate_grace(cls, v: int) -> int:
        if v < 0:
            raise ValueError("valid_from_grace_seconds must be >= 0")
        return v


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded core settings (hash preference: %s)", [a.value for a in settings.hash_preference])

    return settings
