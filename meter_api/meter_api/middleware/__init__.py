"""Middleware components for the keymeter API."""

from __future__ import annotations

from meter_api.middleware.json_formatter import JSONFormatter, configure_structured_logging
from meter_api.middleware.logging import RequestLoggingMiddleware
from meter_api.middleware.metering import UsageRecordingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "UsageRecordingMiddleware",
    "configure_structured_logging",
]
