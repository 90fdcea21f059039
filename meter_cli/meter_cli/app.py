"""keymeter CLI application -- Typer-based operator interface.

Provides commands for running reconciler jobs once, provisioning,
disabling and rotating customer keys, seeding plans and creating the
schema.  Human-readable output goes to *stderr* via Rich; ``--json``
writes machine-readable results to *stdout* instead.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from meter_core.config import load_settings
from meter_core.keys.hasher import HashAlgorithmUnavailable, KeyHasher
from meter_core.state.database import create_tables, get_engine, session_factory_for
from meter_core.state.repository import PlanRepository
from meter_api.config import load_api_settings
from meter_api.errors import GateError
from meter_api.jobs import JOB_NAMES, build_job
from meter_api.services.key_lifecycle import KeyLifecycle, parse_datetime_input
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncEngine

from meter_cli.display import display_job_result, display_key, display_plan

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="keymeter",
    help="keymeter - API-key gate operator tools",
    no_args_is_help=True,
)
console = Console(stderr=True)

jobs_app = typer.Typer(name="jobs", help="Run reconciler jobs.", no_args_is_help=True)
keys_app = typer.Typer(name="keys", help="Manage customer API keys.", no_args_is_help=True)
plans_app = typer.Typer(name="plans", help="Manage plans.", no_args_is_help=True)
db_app = typer.Typer(name="db", help="Database maintenance.", no_args_is_help=True)
app.add_typer(jobs_app, name="jobs")
app.add_typer(keys_app, name="keys")
app.add_typer(plans_app, name="plans")
app.add_typer(db_app, name="db")

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL; defaults to API_DATABASE_URL / the local SQLite file.",
        envvar="API_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolved_database_url() -> str:
    return _database_url or load_api_settings().database_url


def _run_with_engine(work: Callable[[AsyncEngine], Awaitable[T]]) -> T:
    """Run *work* against a fresh engine and dispose it afterwards."""

    async def _main() -> T:
        engine = get_engine(_resolved_database_url())
        try:
            return await work(engine)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]{message}[/red]")
    return typer.Exit(code=3)


def _parse_date_option(value: str | None, label: str) -> Any:
    try:
        return parse_datetime_input(value, label)
    except GateError as exc:
        raise _fail(f"Invalid {label} date '{value}': {exc.message}") from exc


def _lifecycle(engine: AsyncEngine) -> KeyLifecycle:
    core = load_settings()
    return KeyLifecycle(
        session_factory_for(engine),
        KeyHasher.from_settings(core),
        valid_from_grace_seconds=core.valid_from_grace_seconds,
    )


def _run_lifecycle(work: Callable[[KeyLifecycle], Awaitable[T]]) -> T:
    async def _with_engine(engine: AsyncEngine) -> T:
        return await work(_lifecycle(engine))

    try:
        return _run_with_engine(_with_engine)
    except GateError as exc:
        raise _fail(f"{exc.code}: {exc.message}") from exc
    except HashAlgorithmUnavailable as exc:
        raise _fail(str(exc)) from exc


# ---------------------------------------------------------------------------
# db
# ---------------------------------------------------------------------------


@db_app.command("init")
def db_init() -> None:
    """Create every table that does not exist yet."""
    _run_with_engine(create_tables)
    if _json_output:
        _emit_json({"status": "ok"})
    else:
        console.print("[green]Database schema ready.[/green]")


# ---------------------------------------------------------------------------
# jobs
# ---------------------------------------------------------------------------


@jobs_app.command("run")
def jobs_run(
    name: str = typer.Argument(..., help=f"Job to run: {' | '.join(JOB_NAMES)}."),
    batch_size: int | None = typer.Option(None, "--batch-size", min=1, help="Override the batch size."),
    purge: bool | None = typer.Option(
        None,
        "--purge/--no-purge",
        help="Expiry only: also delete keys already disabled as expired.",
    ),
) -> None:
    """Run one reconciler job once, outside the schedule."""
    if name not in JOB_NAMES:
        raise _fail(f"Unknown job '{name}'. Choose one of: {', '.join(JOB_NAMES)}")

    overrides: dict[str, Any] = {}
    if batch_size is not None:
        if name == "retention":
            overrides.update(batch_request_log=batch_size, batch_usage=batch_size)
        else:
            overrides["batch_size"] = batch_size
    if purge is not None:
        if name != "expiry":
            raise _fail("--purge only applies to the expiry job.")
        overrides["purge_enabled"] = purge

    settings = load_api_settings()

    async def _work(engine: AsyncEngine) -> Any:
        return await build_job(name, engine, settings, **overrides).run_once()

    result = _run_with_engine(_work)

    if _json_output:
        _emit_json(result.to_dict())
    else:
        display_job_result(console, result)
    if result.error is not None:
        raise typer.Exit(code=3)


# ---------------------------------------------------------------------------
# keys
# ---------------------------------------------------------------------------


@keys_app.command("provision")
def keys_provision(
    email: str | None = typer.Option(None, "--email", help="Customer email."),
    subscription_id: str | None = typer.Option(None, "--subscription-id", help="Billing subscription id."),
    plan: str | None = typer.Option(None, "--plan", help="Plan slug."),
    name: str | None = typer.Option(None, "--name", help="Customer name."),
    valid_from: str | None = typer.Option(None, "--valid-from", help="ISO-8601 start (defaults to now)."),
    valid_until: str | None = typer.Option(None, "--valid-until", help="ISO-8601 end (omit for no expiry)."),
) -> None:
    """Create a key for a customer, or reactivate their newest key."""
    start = _parse_date_option(valid_from, "valid_from")
    end = _parse_date_option(valid_until, "valid_until")

    result = _run_lifecycle(
        lambda lifecycle: lifecycle.provision_or_activate(
            email=email,
            name=name,
            plan_slug=plan,
            subscription_id=subscription_id,
            valid_from=start,
            valid_until=end,
        )
    )
    if _json_output:
        _emit_json(
            {
                "action": result.action,
                "id": result.record.id,
                "key_prefix": result.record.key_prefix,
                "api_key": result.plaintext,
            }
        )
        return
    display_key(console, result.record, title=f"Key {result.action}")
    if result.plaintext:
        console.print(f"API key (shown once): [bold]{result.plaintext}[/bold]")
    else:
        console.print("[dim]Existing secret kept; use 'keys rotate' to issue a new one.[/dim]")


@keys_app.command("disable")
def keys_disable(
    email: str | None = typer.Option(None, "--email", help="Customer email."),
    subscription_id: str | None = typer.Option(None, "--subscription-id", help="Billing subscription id."),
    reason: str = typer.Option("manual", "--reason", help="Recorded as disabled_reason."),
) -> None:
    """Disable every key matching the subscription id or the email."""
    affected = _run_lifecycle(
        lambda lifecycle: lifecycle.disable(subscription_id=subscription_id, email=email, reason=reason)
    )
    if _json_output:
        _emit_json({"action": "disabled", "affected": affected})
    else:
        console.print(f"Disabled [bold]{affected}[/bold] key(s).")


@keys_app.command("rotate")
def keys_rotate(
    email: str | None = typer.Option(None, "--email", help="Customer email."),
    subscription_id: str | None = typer.Option(None, "--subscription-id", help="Billing subscription id."),
) -> None:
    """Issue a new secret for the customer's newest key."""
    result = _run_lifecycle(lambda lifecycle: lifecycle.rotate(subscription_id=subscription_id, email=email))
    if _json_output:
        _emit_json(
            {
                "action": "rotated",
                "id": result.record.id,
                "key_prefix": result.record.key_prefix,
                "api_key": result.plaintext,
            }
        )
        return
    display_key(console, result.record, title="Key rotated")
    console.print(f"API key (shown once): [bold]{result.plaintext}[/bold]")


# ---------------------------------------------------------------------------
# plans
# ---------------------------------------------------------------------------

_ENDPOINT_CHOICES = ("h2i", "image", "pdf", "tools")


@plans_app.command("upsert")
def plans_upsert(
    slug: str = typer.Argument(..., help="Plan slug, e.g. 'starter'."),
    name: str | None = typer.Option(None, "--name", help="Display name."),
    monthly_quota: int | None = typer.Option(None, "--monthly-quota", min=0, help="Files per period; 0 = unlimited."),
    max_files: int | None = typer.Option(None, "--max-files", min=1, help="Files per request."),
    max_total_mb: int | None = typer.Option(None, "--max-total-mb", min=1, help="Upload size per request."),
    max_dimension: int | None = typer.Option(None, "--max-dimension", min=1, help="Pixel cap per image."),
    timeout: int | None = typer.Option(None, "--timeout", min=1, help="Request timeout in seconds."),
    free: bool = typer.Option(False, "--free/--paid", help="Free plans count usage per calendar month."),
    billing_period: str | None = typer.Option(None, "--billing-period", help="Informational, e.g. 'monthly'."),
    deny: list[str] = typer.Option([], "--deny", help="Endpoint to close for this plan (repeatable)."),
) -> None:
    """Create or update a plan."""
    unknown = sorted(set(deny) - set(_ENDPOINT_CHOICES))
    if unknown:
        raise _fail(f"Unknown endpoint(s): {', '.join(unknown)}")

    fields: dict[str, Any] = {
        "name": name,
        "monthly_quota_files": monthly_quota or None,
        "max_files_per_request": max_files,
        "max_total_upload_mb": max_total_mb,
        "max_dimension_px": max_dimension,
        "timeout_seconds": timeout,
        "is_free": free,
        "billing_period": billing_period,
    }
    for endpoint in _ENDPOINT_CHOICES:
        fields[f"allow_{endpoint}"] = False if endpoint in deny else None

    async def _work(engine: AsyncEngine) -> Any:
        async with session_factory_for(engine)() as session, session.begin():
            return await PlanRepository(session).upsert(slug, **fields)

    plan = _run_with_engine(_work)
    if _json_output:
        _emit_json({"id": plan.id, "plan_slug": plan.plan_slug, **fields})
    else:
        display_plan(console, plan)
