"""API key generation, hashing and verification.

Keys are shown to the customer exactly once.  Only an algorithm-tagged hash
is stored, together with a 16-character lookup prefix and the last four
characters for display.  The stored hash identifies its own algorithm:

* ``$argon2id$...`` -- Argon2id via ``argon2-cffi``
* ``$2b$...``       -- bcrypt via ``bcrypt``
* ``scrypt$<salt-hex>$<hash-hex>`` -- ``hashlib.scrypt``

New hashes use the first *installed* algorithm from the configured
preference order.  Strategy availability is probed once when the
:class:`KeyHasher` is constructed and never re-checked per call.

A stored hash is always verified with the algorithm named by its
tag.  If that algorithm is not installed the verification raises
:class:`HashAlgorithmUnavailable` instead of silently failing, so a missing
native dependency surfaces as an operational error rather than as a wave of
"invalid key" rejections.
"""

from __future__ import annotations

import hashlib
import hmac
import importlib.util
import logging
import secrets
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from meter_core.config import Settings

logger = logging.getLogger(__name__)

KEY_PREFIX_LITERAL = "kmx_live_"
PREFIX_LENGTH = 16


class HashAlgorithmUnavailable(RuntimeError):
    """A stored hash names an algorithm whose library is not installed."""

    def __init__(self, algorithm: str) -> None:
        super().__init__(f"Hash algorithm '{algorithm}' is required but not installed")
        self.algorithm = algorithm


@dataclass(frozen=True)
class GeneratedKey:
    """A freshly issued key.  ``plaintext`` must never be persisted."""

    plaintext: str
    prefix: str
    key_hash: str
    last4: str


def extract_prefix(plaintext: str | None) -> str | None:
    """Return the lookup prefix of *plaintext*, or ``None`` if it is too short."""
    if not plaintext:
        return None
    value = plaintext.strip()
    if len(value) < PREFIX_LENGTH:
        return None
    return value[:PREFIX_LENGTH]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class HashStrategy:
    """Base class for a single hashing algorithm."""

    name: str = ""

    @classmethod
    def is_available(cls) -> bool:
        raise NotImplementedError

    @classmethod
    def owns(cls, stored_hash: str) -> bool:
        """Return ``True`` if *stored_hash* carries this algorithm's tag."""
        raise NotImplementedError

    def hash(self, plaintext: str) -> str:
        raise NotImplementedError

    def verify(self, stored_hash: str, plaintext: str) -> bool:
        raise NotImplementedError


class Argon2idStrategy(HashStrategy):
    name = "argon2id"

    def __init__(self) -> None:
        from argon2 import PasswordHasher

        self._hasher = PasswordHasher()

    @classmethod
    def is_available(cls) -> bool:
        return importlib.util.find_spec("argon2") is not None

    @classmethod
    def owns(cls, stored_hash: str) -> bool:
        return stored_hash.startswith("$argon2")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, stored_hash: str, plaintext: str) -> bool:
        from argon2.exceptions import InvalidHashError, VerificationError

        try:
            return self._hasher.verify(stored_hash, plaintext)
        except (VerificationError, InvalidHashError):
            return False


class BcryptStrategy(HashStrategy):
    name = "bcrypt"

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds

    @classmethod
    def is_available(cls) -> bool:
        return importlib.util.find_spec("bcrypt") is not None

    @classmethod
    def owns(cls, stored_hash: str) -> bool:
        return stored_hash.startswith("$2")

    def hash(self, plaintext: str) -> str:
        import bcrypt

        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, stored_hash: str, plaintext: str) -> bool:
        import bcrypt

        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            # Malformed salt / truncated hash.
            return False


class ScryptStrategy(HashStrategy):
    """``hashlib.scrypt`` with a random 16-byte salt and a 64-byte digest."""

    name = "scrypt"

    _N = 16384
    _R = 8
    _P = 1
    _DKLEN = 64
    _SALT_BYTES = 16

    @classmethod
    def is_available(cls) -> bool:
        return hasattr(hashlib, "scrypt")

    @classmethod
    def owns(cls, stored_hash: str) -> bool:
        return stored_hash.startswith("scrypt$")

    def _derive(self, plaintext: str, salt: bytes) -> bytes:
        return hashlib.scrypt(
            plaintext.encode("utf-8"),
            salt=salt,
            n=self._N,
            r=self._R,
            p=self._P,
            dklen=self._DKLEN,
        )

    def hash(self, plaintext: str) -> str:
        salt = secrets.token_bytes(self._SALT_BYTES)
        return f"scrypt${salt.hex()}${self._derive(plaintext, salt).hex()}"

    def verify(self, stored_hash: str, plaintext: str) -> bool:
        parts = stored_hash.split("$")
        if len(parts) != 3:
            return False
        try:
            salt = bytes.fromhex(parts[1])
            expected = bytes.fromhex(parts[2])
        except ValueError:
            return False
        if not salt or not expected:
            return False
        actual = self._derive(plaintext, salt)
        return hmac.compare_digest(actual, expected)


_ALL_STRATEGIES: dict[str, type[HashStrategy]] = {
    Argon2idStrategy.name: Argon2idStrategy,
    BcryptStrategy.name: BcryptStrategy,
    ScryptStrategy.name: ScryptStrategy,
}

_DEFAULT_PREFERENCE = (Argon2idStrategy.name, BcryptStrategy.name, ScryptStrategy.name)


def _build_strategies(preference: Sequence[str], bcrypt_rounds: int) -> list[HashStrategy]:
    """Instantiate every installed strategy, in preference order."""
    built: list[HashStrategy] = []
    for name in preference:
        cls = _ALL_STRATEGIES.get(name)
        if cls is None:
            raise ValueError(f"Unknown hash algorithm: {name!r}")
        if not cls.is_available():
            logger.warning("Hash algorithm '%s' not installed; skipping", name)
            continue
        if cls is BcryptStrategy:
            built.append(BcryptStrategy(rounds=bcrypt_rounds))
        else:
            built.append(cls())
    return built


# ---------------------------------------------------------------------------
# Hasher facade
# ---------------------------------------------------------------------------


class KeyHasher:
    """Issue, hash and verify API keys.

    Parameters
    ----------
    strategies:
        Explicit strategy instances, first one used for new hashes.  When
        omitted every installed algorithm from *preference* is used.
    preference:
        Algorithm names in preference order (``argon2id``, ``bcrypt``,
        ``scrypt``).  Ignored when *strategies* is given.
    bcrypt_rounds:
        Cost factor for new bcrypt hashes.
    random_hex_range:
        Inclusive ``(min, max)`` number of random hex characters appended
        to the ``kmx_live_`` literal.
    """

    def __init__(
        self,
        strategies: Sequence[HashStrategy] | None = None,
        *,
        preference: Sequence[str] = _DEFAULT_PREFERENCE,
        bcrypt_rounds: int = 12,
        random_hex_range: tuple[int, int] = (32, 48),
    ) -> None:
        if strategies is None:
            strategies = _build_strategies(preference, bcrypt_rounds)
        if not strategies:
            raise HashAlgorithmUnavailable("|".join(preference))
        self._strategies: list[HashStrategy] = list(strategies)
        lo, hi = random_hex_range
        if lo < 8 or hi < lo:
            raise ValueError(f"Invalid random_hex_range: {random_hex_range!r}")
        self._hex_range = (lo, hi)
        logger.info(
            "KeyHasher initialised: preferred=%s available=%s",
            self.preferred_algorithm,
            [s.name for s in self._strategies],
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyHasher:
        return cls(
            preference=[a.value for a in settings.hash_preference],
            bcrypt_rounds=settings.bcrypt_rounds,
            random_hex_range=(settings.key_random_hex_min, settings.key_random_hex_max),
        )

    @property
    def preferred_algorithm(self) -> str:
        return self._strategies[0].name

    @property
    def available_algorithms(self) -> list[str]:
        return [s.name for s in self._strategies]

    def hash(self, plaintext: str) -> str:
        """Hash *plaintext* with the preferred installed algorithm."""
        return self._strategies[0].hash(plaintext)

    def verify(self, stored_hash: str | None, plaintext: str) -> bool:
        """Verify *plaintext* against a tagged *stored_hash*.

        Returns ``False`` for an empty hash or an unrecognised tag.

        Raises
        ------
        HashAlgorithmUnavailable
            If the hash's tag names an algorithm that is not installed.
        """
        if not stored_hash:
            return False
        for name, cls in _ALL_STRATEGIES.items():
            if not cls.owns(stored_hash):
                continue
            for strategy in self._strategies:
                if strategy.name == name:
                    return strategy.verify(stored_hash, plaintext)
            raise HashAlgorithmUnavailable(name)
        return False

    def generate(self) -> GeneratedKey:
        """Create a new random key and its stored representation."""
        lo, hi = self._hex_range
        # Whole bytes only, so the hex length is always even.
        nbytes = lo // 2 + secrets.randbelow(hi // 2 - lo // 2 + 1)
        plaintext = KEY_PREFIX_LITERAL + secrets.token_hex(nbytes)
        return GeneratedKey(
            plaintext=plaintext,
            prefix=plaintext[:PREFIX_LENGTH],
            key_hash=self.hash(plaintext),
            last4=plaintext[-4:],
        )
