"""Rich rendering helpers for the keymeter CLI."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def display_job_result(console: Console, result: Any) -> None:
    """Render one reconciler run.

    Parameters
    ----------
    console:
        Rich console to write to.
    result:
        A :class:`~meter_api.jobs.base.JobResult`.
    """
    if not result.lock_acquired:
        console.print(f"[yellow]{result.job} skipped: lock busy (another instance is running it).[/yellow]")
        return

    table = Table(title=f"{result.job} ({result.duration_ms} ms)", expand=False)
    table.add_column("Stage", style="bold")
    table.add_column("Rows", justify="right")
    for stage, count in result.counts.items():
        table.add_row(stage, str(count))
    console.print(table)

    if result.error is not None:
        console.print(f"[red]{result.job} failed: {result.error}[/red]")


def display_key(console: Console, record: Any, title: str = "Key") -> None:
    table = Table(title=title, show_header=False, expand=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    plan = getattr(record, "plan", None)
    rows = [
        ("id", record.id),
        ("prefix", record.key_prefix),
        ("last4", record.key_last4),
        ("status", record.status),
        ("plan", plan.plan_slug if plan is not None else None),
        ("email", record.customer_email),
        ("subscription", record.subscription_id),
        ("valid_from", record.valid_from),
        ("valid_until", record.valid_until),
    ]
    for label, value in rows:
        table.add_row(label, _fmt(value))
    console.print(table)


def display_plan(console: Console, plan: Any) -> None:
    table = Table(title=f"Plan {plan.plan_slug}", show_header=False, expand=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for label in (
        "id",
        "name",
        "monthly_quota_files",
        "max_files_per_request",
        "max_total_upload_mb",
        "max_dimension_px",
        "timeout_seconds",
        "is_free",
        "allow_h2i",
        "allow_image",
        "allow_pdf",
        "allow_tools",
    ):
        table.add_row(label, _fmt(getattr(plan, label)))
    console.print(table)
