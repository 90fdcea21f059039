"""Gate error taxonomy.

Every failure a caller can observe carries a stable machine-readable
``code`` and an HTTP status.  The FastAPI exception handler in
:mod:`meter_api.main` renders them with the envelope::

    {
        "status": "error",
        "code": "invalid_api_key",
        "message": "Your API key is missing or invalid.",
        "error": {"code": "...", "message": "...", "hint": "...", "details": {...}}
    }

``HashAlgorithmUnavailable`` lives in :mod:`meter_core.keys.hasher` and is
not a :class:`GateError`; it is rendered as a generic 500.
"""

from __future__ import annotations

from typing import Any

# Default human messages keyed by error code.  Also used by the quota
# ledger to fill in audit rows that carry a code but no message.
DEFAULT_ERROR_MESSAGES: dict[str, str] = {
    "invalid_api_key": "Your API key is missing or invalid.",
    "key_not_active_yet": "Your API key is not active yet.",
    "key_expired": "Your API key has expired.",
    "plan_not_found": "The requested plan does not exist.",
    "monthly_quota_exceeded": "Your monthly quota has been exhausted.",
    "endpoint_not_allowed": "Your plan does not allow using this endpoint.",
    "rate_limit_exceeded": "You have reached the daily limit for this endpoint.",
    "missing_identifier": "A subscription id or customer email is required.",
    "invalid_parameter": "One or more request parameters are invalid.",
    "not_found": "No matching API key was found.",
    "unsupported_event": "The subscription event is not supported.",
    "unauthorized": "Missing or invalid internal token.",
    "timeout": "The request took too long to complete.",
    "file_too_large": "The uploaded files exceed the allowed size.",
    "too_many_files": "Too many files were uploaded in one request.",
    "internal_error": "Something went wrong on the server.",
}

GENERIC_ERROR_MESSAGE = "The request could not be completed."


def default_message(code: str | None) -> str:
    """Return the stable default message for *code*."""
    if not code:
        return GENERIC_ERROR_MESSAGE
    return DEFAULT_ERROR_MESSAGES.get(code, GENERIC_ERROR_MESSAGE)


class GateError(Exception):
    """Base class for errors surfaced to API callers.

    Parameters
    ----------
    message:
        Human-readable message; defaults to the code's stock message.
    hint:
        Optional remediation hint for the caller.
    details:
        Optional structured context (JSON-serialisable).
    """

    code: str = "internal_error"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or default_message(self.code)
        self.hint = hint
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            error["hint"] = self.hint
        if self.details is not None:
            error["details"] = self.details
        return {
            "status": "error",
            "code": self.code,
            "message": self.message,
            "error": error,
        }


# ---------------------------------------------------------------------------
# Credential resolution
# ---------------------------------------------------------------------------


class InvalidCredential(GateError):
    code = "invalid_api_key"
    status_code = 401

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("hint", "Provide a valid API key in the X-Api-Key header or as ?key= in the query.")
        super().__init__(message, **kwargs)


class NotYetActive(GateError):
    code = "key_not_active_yet"
    status_code = 401


class Expired(GateError):
    code = "key_expired"
    status_code = 401


# ---------------------------------------------------------------------------
# Quota and admission
# ---------------------------------------------------------------------------


class QuotaExceeded(GateError):
    code = "monthly_quota_exceeded"
    status_code = 429

    def __init__(self, limit: int, used: int, remaining: int, requested: int) -> None:
        super().__init__(
            hint="Upgrade your plan or wait for the next billing period.",
            details={"limit": limit, "used": used, "remaining": remaining, "requested": requested},
        )
        self.limit = limit
        self.used = used
        self.remaining = remaining
        self.requested = requested


class EndpointNotAllowed(GateError):
    code = "endpoint_not_allowed"
    status_code = 403


class TooManyFiles(GateError):
    code = "too_many_files"
    status_code = 413

    def __init__(self, limit: int, requested: int) -> None:
        super().__init__(
            hint="Split the upload into smaller requests.",
            details={"limit": limit, "requested": requested},
        )
        self.limit = limit
        self.requested = requested


class DailyLimitReached(GateError):
    code = "rate_limit_exceeded"
    status_code = 429

    def __init__(self, endpoint: str, limit: int) -> None:
        super().__init__(
            hint="Use an API key with a paid plan for higher limits.",
            details={"endpoint": endpoint, "limit": limit},
        )
        self.endpoint = endpoint
        self.limit = limit


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class PlanNotFound(GateError):
    code = "plan_not_found"
    status_code = 400

    def __init__(self, plan_ref: str | int) -> None:
        super().__init__(f"Plan not found: {plan_ref}", details={"plan": plan_ref})
        self.plan_ref = plan_ref


class MissingIdentifier(GateError):
    code = "missing_identifier"
    status_code = 400


class InvalidParameter(GateError):
    code = "invalid_parameter"
    status_code = 400


class KeyNotFound(GateError):
    code = "not_found"
    status_code = 404


class UnsupportedEvent(GateError):
    code = "unsupported_event"
    status_code = 400


class Unauthorized(GateError):
    code = "unauthorized"
    status_code = 401
