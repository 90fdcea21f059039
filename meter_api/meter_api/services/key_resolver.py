"""Credential resolution: plaintext key to caller tier.

Resolution order per request:

1. No static tier keys configured at all → every caller is **owner**.
2. Missing credential → :class:`~meter_api.errors.InvalidCredential`.
3. Exact match against the static key sets → **public** or **owner**.
4. Prefix lookup in ``api_keys`` (newest ``updated_at`` wins).  Status and
   validity window are checked *before* the hash comparison so cheap
   rejections never pay for Argon2/bcrypt.
5. Hash verification → **customer**, otherwise ``InvalidCredential``.

The distinct ``NotYetActive`` / ``Expired`` outcomes only ever surface for
a row whose prefix matched; they deny access exactly like an invalid key.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from meter_core.keys.hasher import KeyHasher, extract_prefix
from meter_core.state.repository import ApiKeyRepository, normalize_status
from meter_core.state.tables import ApiKeyTable, PlanTable
from sqlalchemy.ext.asyncio import AsyncSession

from meter_api.errors import Expired, InvalidCredential, NotYetActive

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    OWNER = "owner"
    PUBLIC = "public"
    CUSTOMER = "customer"


@dataclass(frozen=True)
class TierKeys:
    """Statically configured owner and public keys."""

    owner_keys: frozenset[str] = frozenset()
    public_keys: frozenset[str] = frozenset()

    @classmethod
    def from_lists(cls, owner_keys: Iterable[str], public_keys: Iterable[str]) -> TierKeys:
        return cls(
            owner_keys=frozenset(k.strip() for k in owner_keys if k and k.strip()),
            public_keys=frozenset(k.strip() for k in public_keys if k and k.strip()),
        )

    @property
    def configured(self) -> bool:
        return bool(self.owner_keys or self.public_keys)

    def match(self, credential: str) -> Tier | None:
        if credential in self.public_keys:
            return Tier.PUBLIC
        if credential in self.owner_keys:
            return Tier.OWNER
        return None


@dataclass
class ResolvedCaller:
    """Outcome of a successful resolution, attached to ``request.state``."""

    tier: Tier
    credential: str | None = None
    key: ApiKeyTable | None = None
    plan: PlanTable | None = None

    @property
    def is_customer(self) -> bool:
        return self.tier is Tier.CUSTOMER

    @property
    def key_id(self) -> str | None:
        return self.key.id if self.key is not None else None


class KeyResolver:
    """Resolve plaintext credentials into a :class:`ResolvedCaller`.

    Parameters
    ----------
    tier_keys:
        Static owner/public keys.
    hasher:
        Hasher used to verify customer keys.
    clock:
        Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        tier_keys: TierKeys,
        hasher: KeyHasher,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tier_keys = tier_keys
        self._hasher = hasher
        self._clock = clock or (lambda: datetime.now(UTC))
        if not tier_keys.configured:
            logger.warning("No tier keys configured: every request is granted owner access")

    async def resolve(self, session: AsyncSession, credential: str | None) -> ResolvedCaller:
        """Resolve *credential* or raise a credential error.

        Raises
        ------
        InvalidCredential
            Missing credential, unknown key, inactive key or hash mismatch.
        NotYetActive
            The key's ``valid_from`` lies in the future.
        Expired
            The key's ``valid_until`` lies in the past.
        """
        if not self._tier_keys.configured:
            return ResolvedCaller(tier=Tier.OWNER, credential=credential)

        credential = credential.strip() if credential else None
        if not credential:
            raise InvalidCredential()

        static_tier = self._tier_keys.match(credential)
        if static_tier is not None:
            return ResolvedCaller(tier=static_tier, credential=credential)

        prefix = extract_prefix(credential)
        if prefix is None:
            raise InvalidCredential()

        record = await ApiKeyRepository(session).find_newest_by_prefix(prefix)
        if record is None:
            raise InvalidCredential()

        if normalize_status(record.status) != "active":
            logger.info("Rejected key prefix=%s: status=%s", prefix, record.status)
            raise InvalidCredential()

        now = self._clock()
        if record.valid_from is not None and record.valid_from > now:
            raise NotYetActive(details={"valid_from": record.valid_from.isoformat()})
        if record.valid_until is not None and record.valid_until < now:
            raise Expired(details={"valid_until": record.valid_until.isoformat()})

        if not self._hasher.verify(record.key_hash, credential):
            logger.info("Rejected key prefix=%s: hash mismatch", prefix)
            raise InvalidCredential()

        return ResolvedCaller(tier=Tier.CUSTOMER, credential=credential, key=record, plan=record.plan)
