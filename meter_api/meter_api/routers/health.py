"""Liveness endpoint."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from meter_core.state.database import ping

from meter_api import __version__
from meter_api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    """Always 200; ``db`` reports whether the database answered."""
    result: dict[str, Any] = {"status": "healthy", "version": __version__, "db": "ok"}
    try:
        connection = await session.connection()
        if not await ping(connection):
            result["db"] = "degraded"
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result
