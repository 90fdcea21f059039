"""Metering middleware -- charges admitted customer requests to their quota.

Any route that depends on :func:`~meter_api.dependencies.require_admission`
leaves the :class:`~meter_api.services.admission.Admission` on
``request.state``.  Once the route has produced its response this
middleware records the request in the quota ledger, whatever the outcome:
successful requests consume the admitted files, failed ones are counted as
errors and consume nothing.  The usage is charged to the period the quota
was checked against.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from meter_api.dependencies import get_quota_ledger

logger = logging.getLogger(__name__)


def _int_header(headers: Any, name: str) -> int:
    try:
        return max(int(headers.get(name) or 0), 0)
    except ValueError:
        return 0


class UsageRecordingMiddleware(BaseHTTPMiddleware):
    """Record one usage event for every admitted customer request.

    The ledger is resolved at request time because middleware instances are
    built in ``create_app()`` before the lifespan initialises the services.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            response = await call_next(request)
        except Exception:
            await self._record(request, 500, bytes_out=0)
            raise
        await self._record(request, response.status_code, bytes_out=_int_header(response.headers, "content-length"))
        return response

    async def _record(self, request: Request, status_code: int, *, bytes_out: int) -> None:
        admission = getattr(request.state, "admission", None)
        if admission is None or not admission.caller.is_customer:
            return
        try:
            ledger = get_quota_ledger()
        except RuntimeError:
            # Services not initialised (startup) or already disposed (shutdown).
            logger.debug("Quota ledger unavailable; usage for %s not recorded", request.url.path)
            return

        ok = status_code < 400
        error_code = None
        if not ok:
            error_code = getattr(request.state, "error_code", None) or (
                "internal_error" if status_code >= 500 else "request_failed"
            )
        user_agent = request.headers.get("user-agent")
        await ledger.record_and_log(
            admission.caller,
            endpoint=admission.endpoint,
            action=request.url.path.rstrip("/").rsplit("/", 1)[-1] or None,
            status="success" if ok else "error",
            files_processed=admission.requested_files if ok else 0,
            bytes_in=_int_header(request.headers, "content-length"),
            bytes_out=bytes_out,
            error_code=error_code,
            params=dict(request.query_params),
            ip=request.client.host if request.client else None,
            user_agent=user_agent,
            period=admission.period,
        )
