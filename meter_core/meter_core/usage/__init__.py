"""Usage period computation."""

from meter_core.usage.period import current_month, month_window, usage_period

__all__ = ["current_month", "month_window", "usage_period"]
