"""
Root Typer application for the dcaspine CLI.

Commands import the scheduler lazily so ``--help`` stays fast and does not
need Redis or a database.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta

import typer

from dcaspine.cli.utils import (
    build_service,
    console,
    fail,
    load_settings,
    output_dict,
    output_rows,
)

app = typer.Typer(
    name="dcaspine",
    help="dcaspine - distributed DCA plan execution scheduler.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

DatabaseOpt = typer.Option(None, "--database", "-d", help="Database URL (overrides DCA_DATABASE_URL)")
LockBackendOpt = typer.Option(None, "--lock-backend", help="redis | database")
JsonOpt = typer.Option(False, "--json")


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("dca-spine")
        except PackageNotFoundError:
            from dcaspine import __version__ as v
        typer.echo(f"dcaspine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Overrides DCA_LOG_LEVEL"),
    console_logs: bool = typer.Option(False, "--console-logs", help="Human-readable log lines"),
) -> None:
    """dcaspine CLI - manage plans and run the execution scheduler."""
    from dcaspine.core.logging import configure_logging
    from dcaspine.core.settings import get_settings

    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=not console_logs and settings.log_format == "json",
        service=settings.service_name,
    )


# ── Database ─────────────────────────────────────────────────────────────


@app.command("init-db")
def init_db(database: str | None = DatabaseOpt) -> None:
    """Create the dca_plans, dca_execution_history and dca_locks tables."""
    from dcaspine.core.orm.session import create_all, create_dca_engine

    settings = load_settings(database)
    engine = create_dca_engine(settings.database_url, echo=settings.database_echo)
    create_all(engine)
    console.print(f"[green]Tables ready[/green] at {settings.database_url}")


# ── Plans ────────────────────────────────────────────────────────────────


@app.command("create-plan")
def create_plan(
    owner: str = typer.Option(..., "--owner", help="Owner id"),
    amount: int = typer.Option(..., "--amount", help="Amount per execution, smallest deposit units"),
    executions: int = typer.Option(..., "--executions", help="Total number of executions"),
    interval: str = typer.Option("WEEKLY", "--interval", help="DAILY | WEEKLY | BIWEEKLY | MONTHLY"),
    deposit_asset: str = typer.Option("USDC", "--deposit-asset"),
    target_asset: str = typer.Option("BTC", "--target-asset"),
    due_now: bool = typer.Option(False, "--due-now", help="Make the first execution due immediately"),
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Create an ACTIVE plan."""
    from dataclasses import asdict

    from dcaspine.core.models import Interval
    from dcaspine.scheduling.repository import PlanCreate

    try:
        interval_enum = Interval(interval.upper())
    except ValueError as e:
        raise fail(f"Unknown interval {interval!r}") from e

    settings = load_settings(database, "database")
    service = build_service(settings)
    plan = service.repository.create_plan(
        PlanCreate(
            owner_id=owner,
            deposit_asset=deposit_asset,
            target_asset=target_asset,
            amount_per_execution=amount,
            total_executions=executions,
            interval=interval_enum,
            first_execution_at=datetime.now(UTC) - timedelta(seconds=1) if due_now else None,
        )
    )
    output_dict(asdict(plan), as_json=json_out, title="Plan Created")


def _change_status(plan_id: str, status_name: str, database: str | None) -> None:
    from dcaspine.core.errors import InvalidStatusTransitionError
    from dcaspine.core.models import PlanStatus

    service = build_service(load_settings(database, "database"))
    try:
        plan = service.repository.set_status(plan_id, PlanStatus(status_name))
    except InvalidStatusTransitionError as e:
        raise fail(e.message) from e
    if plan is None:
        raise fail(f"Plan {plan_id} not found")


@app.command("resume")
def resume(plan_id: str = typer.Argument(..., help="Plan ID"), database: str | None = DatabaseOpt) -> None:
    """Set a PAUSED plan back to ACTIVE with a fresh retry budget."""
    _change_status(plan_id, "ACTIVE", database)
    console.print(f"[green]Resumed[/green] {plan_id}")


@app.command("cancel")
def cancel(plan_id: str = typer.Argument(..., help="Plan ID"), database: str | None = DatabaseOpt) -> None:
    """Cancel an ACTIVE or PAUSED plan; it will never be executed again."""
    _change_status(plan_id, "CANCELLED", database)
    console.print(f"[yellow]Cancelled[/yellow] {plan_id}")


@app.command("history")
def history(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Show the execution history of a plan."""
    service = build_service(load_settings(database, "database"))
    if service.repository.get_plan(plan_id) is None:
        raise fail(f"Plan {plan_id} not found")
    rows = [
        {
            "n": r.execution_number,
            "status": r.status.value,
            "amount_in": r.amount_in,
            "amount_out": r.amount_out,
            "price": r.price,
            "tx_hash": r.tx_hash,
            "attempts": r.attempt_count,
            "error": r.error_message,
        }
        for r in service.repository.list_executions(plan_id)
    ]
    output_rows(rows, as_json=json_out, title=f"Executions: {plan_id}")


# ── Execution ────────────────────────────────────────────────────────────


@app.command("execute")
def execute(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    database: str | None = DatabaseOpt,
    lock_backend: str | None = LockBackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Execute the next step of one plan now (still lock-guarded)."""
    from dcaspine.core.errors import PlanNotFoundError

    service = build_service(load_settings(database, lock_backend))
    try:
        result = asyncio.run(service.execute_now(plan_id))
    except PlanNotFoundError as e:
        raise fail(e.message) from e
    finally:
        service.engine.side_effects.flush(timeout=10)

    if result is None:
        console.print("[yellow]Plan is locked by another instance; nothing done.[/yellow]")
        raise typer.Exit(code=3)
    output_dict(result.to_dict(), as_json=json_out, title="Execution")
    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command("tick")
def tick(
    database: str | None = DatabaseOpt,
    lock_backend: str | None = LockBackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Run exactly one scheduler tick."""
    service = build_service(load_settings(database, lock_backend))
    summary = asyncio.run(service.tick())
    service.engine.side_effects.flush(timeout=10)
    output_dict(summary.to_dict(), as_json=json_out, title="Tick")


@app.command("run")
def run(
    database: str | None = DatabaseOpt,
    lock_backend: str | None = LockBackendOpt,
) -> None:
    """Run the scheduler until interrupted."""
    settings = load_settings(database, lock_backend)
    service = build_service(settings)

    console.print(
        f"[bold green]Starting dcaspine scheduler[/bold green] "
        f"(interval={settings.tick_interval_seconds}s, "
        f"scan lease={settings.scan_lock_ttl_seconds}s, locks={settings.lock_backend})"
    )
    service.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped by user[/yellow]")
    finally:
        service.stop()
        service.engine.side_effects.shutdown(wait=True)


@app.command("health")
def health(
    database: str | None = DatabaseOpt,
    lock_backend: str | None = LockBackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Show scheduler health (active plans, scan lock holder, stats)."""
    service = build_service(load_settings(database, lock_backend))
    data = service.health().to_dict()
    stats = data.pop("stats")
    data.pop("backend")
    output_dict({**data, **stats}, as_json=json_out, title="Scheduler Health")
