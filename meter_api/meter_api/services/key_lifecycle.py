"""Customer key lifecycle: provision, activate, disable, rotate, purge.

Every public method opens its own session and runs inside exactly one
transaction (resolve plan → find existing → insert/update).  Any exception
rolls the transaction back before it reaches the caller.

Plaintext keys are returned exactly once, from provisioning of a new key
and from rotation.  Callers must hand them to the customer immediately;
they are never retrievable again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from meter_core.keys.hasher import KeyHasher
from meter_core.state.repository import ApiKeyRepository, PlanRepository, normalize_email
from meter_core.state.tables import ApiKeyTable, PlanTable, RequestLogTable, UsagePeriodTable
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_api.errors import (
    InvalidParameter,
    KeyNotFound,
    MissingIdentifier,
    PlanNotFound,
    UnsupportedEvent,
)

logger = logging.getLogger(__name__)

ACTIVATION_EVENTS: tuple[str, ...] = ("activated", "renewed", "active", "reactivated")
DISABLE_EVENTS: tuple[str, ...] = ("cancelled", "expired", "payment_failed", "paused", "disabled")


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeySelector:
    """Identity used to find a customer's key."""

    subscription_id: str | None = None
    email: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "subscription_id", (self.subscription_id or "").strip() or None)
        object.__setattr__(self, "email", normalize_email(self.email))

    @property
    def empty(self) -> bool:
        return self.subscription_id is None and self.email is None

    def require(self) -> None:
        if self.empty:
            raise MissingIdentifier()


@dataclass
class ProvisionResult:
    record: ApiKeyTable
    plaintext: str | None
    created: bool

    @property
    def action(self) -> str:
        return "created" if self.created else "updated"


@dataclass
class RotateResult:
    record: ApiKeyTable
    plaintext: str


@dataclass
class SubscriptionEvent:
    """Billing-system event delivered to the internal router."""

    event: str
    email: str | None = None
    name: str | None = None
    plan_id: int | None = None
    plan_slug: str | None = None
    subscription_id: str | None = None
    order_id: str | None = None
    subscription_status: str | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_lifetime: bool = False


@dataclass
class EventOutcome:
    action: str
    event: str
    provision: ProvisionResult | None = None
    affected: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


def parse_datetime_input(value: Any, field_name: str) -> datetime | None:
    """Parse an ISO-8601 date or datetime.  Naive values are taken as UTC.

    ``None`` and blank strings mean "not provided".

    Raises
    ------
    InvalidParameter
        If the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidParameter(f"{field_name} must be a valid ISO8601 date.") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def apply_valid_from_grace(valid_from: datetime | None, now: datetime, grace_seconds: int) -> datetime:
    """Pull a missing or barely-future ``valid_from`` back to ``now - grace``.

    A billing system and this service rarely agree on the clock to the
    second; without the grace a freshly activated key could answer
    "not active yet" for its first requests.
    """
    grace = timedelta(seconds=grace_seconds)
    if valid_from is None:
        return now - grace
    if valid_from > now and valid_from - now <= grace:
        return now - grace
    return valid_from


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class KeyLifecycle:
    """Mutations of customer keys, one transaction per call.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each operation opens.
    hasher:
        Issues new keys.
    valid_from_grace_seconds:
        Grace applied to ``valid_from`` on provisioning.
    clock:
        Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hasher: KeyHasher,
        valid_from_grace_seconds: int = 120,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._hasher = hasher
        self._grace_seconds = valid_from_grace_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    # -- helpers ------------------------------------------------------------

    async def _resolve_plan(
        self,
        session: AsyncSession,
        plan_id: int | None,
        plan_slug: str | None,
    ) -> PlanTable | None:
        repo = PlanRepository(session)
        if plan_id is not None:
            plan = await repo.get_by_id(plan_id)
            if plan is None:
                raise PlanNotFound(plan_id)
            return plan
        if plan_slug:
            plan = await repo.get_by_slug(plan_slug)
            if plan is None:
                raise PlanNotFound(plan_slug)
            return plan
        return None

    # -- operations ---------------------------------------------------------

    async def provision_or_activate(
        self,
        *,
        email: str | None = None,
        name: str | None = None,
        plan_id: int | None = None,
        plan_slug: str | None = None,
        subscription_id: str | None = None,
        order_id: str | None = None,
        subscription_status: str | None = None,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
    ) -> ProvisionResult:
        """Create a key for the identity, or reactivate its newest existing key.

        An existing key keeps its secret unless it has no hash at all
        (legacy plaintext rows); use :meth:`rotate` to issue a new secret.

        Raises
        ------
        MissingIdentifier
            Neither subscription id nor email given.
        PlanNotFound
            ``plan_id`` / ``plan_slug`` does not match a plan.
        InvalidParameter
            ``valid_until`` is not after ``valid_from``.
        """
        selector = KeySelector(subscription_id=subscription_id, email=email)
        selector.require()

        now = self._clock()
        effective_from = apply_valid_from_grace(valid_from, now, self._grace_seconds)
        if valid_until is not None and valid_until <= effective_from:
            raise InvalidParameter("valid_until must be after valid_from.")

        async with self._session_factory() as session, session.begin():
            plan = await self._resolve_plan(session, plan_id, plan_slug)
            repo = ApiKeyRepository(session)
            existing = await repo.find_for_identity(selector.subscription_id, selector.email)

            if existing is None:
                generated = self._hasher.generate()
                record = await repo.create(
                    key_prefix=generated.prefix,
                    key_hash=generated.key_hash,
                    key_last4=generated.last4,
                    status="active",
                    plan_id=plan.id if plan is not None else None,
                    customer_email=selector.email,
                    customer_name=name,
                    subscription_id=selector.subscription_id,
                    order_id=order_id,
                    subscription_status=subscription_status,
                    valid_from=effective_from,
                    valid_until=valid_until,
                )
                record.plan = plan
                logger.info(
                    "Provisioned key id=%s prefix=%s plan=%s",
                    record.id,
                    record.key_prefix,
                    plan.plan_slug if plan is not None else None,
                )
                return ProvisionResult(record=record, plaintext=generated.plaintext, created=True)

            plaintext: str | None = None
            if not existing.key_hash:
                generated = self._hasher.generate()
                existing.key_prefix = generated.prefix
                existing.key_hash = generated.key_hash
                existing.key_last4 = generated.last4
                plaintext = generated.plaintext
                logger.info("Upgraded legacy key id=%s to hashed storage", existing.id)

            existing.status = "active"
            existing.disabled_reason = None
            existing.license_key = None
            if plan is not None:
                existing.plan_id = plan.id
                existing.plan = plan
            existing.customer_email = selector.email or existing.customer_email
            existing.customer_name = name or existing.customer_name
            existing.subscription_id = selector.subscription_id or existing.subscription_id
            existing.order_id = order_id or existing.order_id
            existing.subscription_status = subscription_status or existing.subscription_status
            existing.valid_from = effective_from
            existing.valid_until = valid_until
            existing.updated_at = now
            await session.flush()
            logger.info("Reactivated key id=%s prefix=%s", existing.id, existing.key_prefix)
            return ProvisionResult(record=existing, plaintext=plaintext, created=False)

    async def disable(
        self,
        *,
        subscription_id: str | None = None,
        email: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Disable every key matching subscription id OR email.

        All historical rows of the identity are disabled, not only the newest.
        """
        selector = KeySelector(subscription_id=subscription_id, email=email)
        selector.require()
        async with self._session_factory() as session, session.begin():
            affected = await ApiKeyRepository(session).disable_matching(
                subscription_id=selector.subscription_id,
                email=selector.email,
                reason=reason,
            )
        logger.info(
            "Disabled %d key(s) subscription_id=%s email=%s reason=%s",
            affected,
            selector.subscription_id,
            selector.email,
            reason,
        )
        return affected

    async def rotate(
        self,
        *,
        subscription_id: str | None = None,
        email: str | None = None,
    ) -> RotateResult:
        """Issue a brand-new secret for the identity's newest key.

        Raises
        ------
        KeyNotFound
            No key matches the selector.
        """
        selector = KeySelector(subscription_id=subscription_id, email=email)
        selector.require()
        async with self._session_factory() as session, session.begin():
            record = await ApiKeyRepository(session).find_for_identity(selector.subscription_id, selector.email)
            if record is None:
                raise KeyNotFound("Key not found for rotation.")
            generated = self._hasher.generate()
            now = self._clock()
            record.key_prefix = generated.prefix
            record.key_hash = generated.key_hash
            record.key_last4 = generated.last4
            record.license_key = None
            record.rotated_at = now
            record.updated_at = now
            await session.flush()
        logger.info("Rotated key id=%s new_prefix=%s", record.id, record.key_prefix)
        return RotateResult(record=record, plaintext=generated.plaintext)

    async def set_enabled(
        self,
        *,
        enabled: bool,
        subscription_id: str | None = None,
        email: str | None = None,
    ) -> ApiKeyTable:
        """Enable or disable only the identity's newest key."""
        selector = KeySelector(subscription_id=subscription_id, email=email)
        selector.require()
        async with self._session_factory() as session, session.begin():
            record = await ApiKeyRepository(session).find_for_identity(selector.subscription_id, selector.email)
            if record is None:
                raise KeyNotFound("Key not found for toggle.")
            record.status = "active" if enabled else "disabled"
            record.disabled_reason = None if enabled else "manual"
            record.updated_at = self._clock()
            await session.flush()
        logger.info("Key id=%s %s", record.id, "enabled" if enabled else "disabled")
        return record

    async def purge_identity(
        self,
        *,
        subscription_id: str | None = None,
        email: str | None = None,
    ) -> dict[str, int]:
        """Hard-delete every key of an identity together with its usage and logs."""
        selector = KeySelector(subscription_id=subscription_id, email=email)
        selector.require()
        async with self._session_factory() as session, session.begin():
            key_ids = await ApiKeyRepository(session).ids_for_identity(selector.subscription_id, selector.email)
            counts = {"request_log": 0, "usage_periods": 0, "api_keys": 0}
            if not key_ids:
                return counts
            for table, label in (
                (RequestLogTable, "request_log"),
                (UsagePeriodTable, "usage_periods"),
            ):
                res = await session.execute(
                    delete(table)
                    .where(table.api_key_id.in_(key_ids))
                    .execution_options(synchronize_session=False)
                )
                counts[label] = res.rowcount or 0  # type: ignore[attr-defined]
            res = await session.execute(
                delete(ApiKeyTable).where(ApiKeyTable.id.in_(key_ids)).execution_options(synchronize_session=False)
            )
            counts["api_keys"] = res.rowcount or 0  # type: ignore[attr-defined]
        logger.warning(
            "Purged identity subscription_id=%s email=%s: %s",
            selector.subscription_id,
            selector.email,
            counts,
        )
        return counts

    async def apply_subscription_event(self, event: SubscriptionEvent) -> EventOutcome:
        """Route a billing event to provisioning or disabling.

        Raises
        ------
        UnsupportedEvent
            The event name is neither an activation nor a disable event.
        InvalidParameter
            Activation without a plan, or without ``valid_until`` for a
            non-lifetime subscription.
        """
        name = (event.event or "").strip().lower()

        if name in ACTIVATION_EVENTS:
            if event.plan_id is None and not event.plan_slug:
                raise InvalidParameter("plan_slug or plan_id is required for activation events.")
            if not event.is_lifetime and event.valid_until is None:
                raise InvalidParameter("valid_until is required for non-lifetime activation events.")
            result = await self.provision_or_activate(
                email=event.email,
                name=event.name,
                plan_id=event.plan_id,
                plan_slug=event.plan_slug,
                subscription_id=event.subscription_id,
                order_id=event.order_id,
                subscription_status=event.subscription_status,
                valid_from=event.valid_from,
                valid_until=event.valid_until,
            )
            return EventOutcome(action=result.action, event=name, provision=result, affected=1)

        if name in DISABLE_EVENTS:
            affected = await self.disable(
                subscription_id=event.subscription_id,
                email=event.email,
                reason=name,
            )
            return EventOutcome(action="disabled", event=name, affected=affected)

        raise UnsupportedEvent(details={"supported": [*ACTIVATION_EVENTS, *DISABLE_EVENTS]})
