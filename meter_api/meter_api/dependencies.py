"""FastAPI dependency injection for settings, sessions and gate services."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from fastapi import Depends, Header, Query, Request
from meter_core.config import Settings, load_settings
from meter_core.keys.hasher import KeyHasher
from meter_core.state.database import get_engine, session_factory_for
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from meter_api.config import APISettings, load_api_settings
from meter_api.errors import Unauthorized
from meter_api.services.admission import Admission, AdmissionGate
from meter_api.services.key_lifecycle import KeyLifecycle
from meter_api.services.key_resolver import KeyResolver, ResolvedCaller, TierKeys
from meter_api.services.public_limiter import PublicDailyLimiter
from meter_api.services.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = session_factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine_or_fail() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession``; commits on clean exit, rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Gate services
# ---------------------------------------------------------------------------

_hasher: KeyHasher | None = None
_resolver: KeyResolver | None = None
_lifecycle: KeyLifecycle | None = None
_ledger: QuotaLedger | None = None
_limiter: PublicDailyLimiter | None = None
_admission: AdmissionGate | None = None


def init_services(
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    core_settings: Settings | None = None,
) -> None:
    """Build the gate services that live for the whole process."""
    global _hasher, _resolver, _lifecycle, _ledger, _limiter, _admission  # noqa: PLW0603
    core_settings = core_settings or load_settings()
    _hasher = KeyHasher.from_settings(core_settings)
    _resolver = KeyResolver(TierKeys.from_lists(settings.owner_keys, settings.public_keys), _hasher)
    _lifecycle = KeyLifecycle(
        session_factory,
        _hasher,
        valid_from_grace_seconds=core_settings.valid_from_grace_seconds,
    )
    _ledger = QuotaLedger(session_factory)
    _limiter = PublicDailyLimiter(settings.public_daily_limits)
    _admission = AdmissionGate(settings, _ledger, _limiter)
    logger.info("Gate services initialised (%d public limit(s))", len(settings.public_daily_limits))


def dispose_services() -> None:
    global _hasher, _resolver, _lifecycle, _ledger, _limiter, _admission  # noqa: PLW0603
    _hasher = _resolver = _lifecycle = _ledger = _limiter = _admission = None


def _require(service: object | None, name: str) -> object:
    if service is None:
        raise RuntimeError(f"{name} has not been initialised. Ensure init_services() is called during startup.")
    return service


def get_key_resolver() -> KeyResolver:
    return _require(_resolver, "KeyResolver")  # type: ignore[return-value]


def get_key_lifecycle() -> KeyLifecycle:
    return _require(_lifecycle, "KeyLifecycle")  # type: ignore[return-value]


def get_quota_ledger() -> QuotaLedger:
    return _require(_ledger, "QuotaLedger")  # type: ignore[return-value]


def get_admission_gate() -> AdmissionGate:
    return _require(_admission, "AdmissionGate")  # type: ignore[return-value]


ResolverDep = Annotated[KeyResolver, Depends(get_key_resolver)]
LifecycleDep = Annotated[KeyLifecycle, Depends(get_key_lifecycle)]
LedgerDep = Annotated[QuotaLedger, Depends(get_quota_ledger)]
AdmissionDep = Annotated[AdmissionGate, Depends(get_admission_gate)]

# ---------------------------------------------------------------------------
# Caller resolution
# ---------------------------------------------------------------------------

_FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


async def _credential_from_request(request: Request, header_key: str | None, query_key: str | None) -> str | None:
    """Read the credential from ``X-Api-Key``, ``?key=`` or form field ``api_key``."""
    if header_key:
        return header_key
    if query_key:
        return query_key
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_CONTENT_TYPES):
        form = await request.form()
        value = form.get("api_key")
        if isinstance(value, str):
            return value
    return None


async def resolve_caller(
    request: Request,
    session: SessionDep,
    resolver: ResolverDep,
    x_api_key: Annotated[str | None, Header(alias="X-Api-Key")] = None,
    key: Annotated[str | None, Query()] = None,
) -> ResolvedCaller:
    """Resolve the request's credential and attach the caller to ``request.state``."""
    credential = await _credential_from_request(request, x_api_key, key)
    caller = await resolver.resolve(session, credential)
    request.state.caller = caller
    return caller


CallerDep = Annotated[ResolvedCaller, Depends(resolve_caller)]


def require_admission(endpoint: str, files_param: str = "files") -> Callable[..., object]:
    """Build a dependency that admits the caller to *endpoint*.

    The requested file count is read from the query parameter *files_param*
    and defaults to one.

    Usage::

        @router.post("/pdf", dependencies=[Depends(require_admission("pdf"))])
        async def convert_pdf(...): ...
    """

    async def _admit(request: Request, caller: CallerDep, gate: AdmissionDep) -> Admission:
        raw = request.query_params.get(files_param)
        try:
            requested = max(int(raw), 1) if raw else 1
        except ValueError:
            requested = 1
        ip = request.client.host if request.client else None
        admission = await gate.admit(caller, endpoint, requested_files=requested, ip=ip)
        request.state.admission = admission
        return admission

    return _admit


# ---------------------------------------------------------------------------
# Internal router authentication
# ---------------------------------------------------------------------------


def require_internal_token(
    settings: SettingsDep,
    x_internal_token: Annotated[str | None, Header(alias="X-Internal-Token")] = None,
) -> None:
    """Reject calls without the configured shared secret (constant-time compare)."""
    expected = settings.internal_token.get_secret_value() if settings.internal_token else ""
    if not expected:
        logger.warning("Internal call rejected: API_INTERNAL_TOKEN is not configured")
        raise Unauthorized()
    if not x_internal_token or not hmac.compare_digest(x_internal_token.encode(), expected.encode()):
        raise Unauthorized()
