#!/usr/bin/env python3
"""CLI interface for the ledger reconciliation engine."""

import importlib.util
import json
import logging
import os
import platform
import sys
from datetime import date
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.engine import Engine

from recon.config import MatchSettings, load_settings
from recon.db import create_db_engine, create_schema
from recon.demo import (
    DEMO_ACCOUNT_ID,
    DEMO_BATCH_ID,
    DEMO_USER_ID,
    create_demo_engine,
    demo_client_factory,
    demo_settings,
    load_demo_fixtures,
)
from recon.engine import (
    advance_match_job,
    batch_summary,
    can_match,
    clear_matches,
    reconcile_account,
    reset_match_job,
)
from recon.errors import (
    NotEligibleError,
    NotFoundError,
    WriteBackError,
)
from recon.models import Ineligible, MatchProgress
from recon.orphans import find_orphans_by_batch
from recon.writeback import (
    PushRequest,
    ReplicateRequest,
    TransferRequest,
    push_transaction,
    push_transfer,
    replicate_transaction,
    suggest_mapping,
)

app = typer.Typer(
    name="ledger-recon",
    help="Ledger reconciliation - match imported bank lines against a remote ledger",
    no_args_is_help=True,
)

UserOption = Annotated[int, typer.Option("--user", help="Acting user id")]
BatchOption = Annotated[int, typer.Option("--batch", help="Import batch id")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output JSON")]


def _mark_success() -> str:
    """Return success indicator (emoji or plain text based on RECON_PLAIN env var)."""
    return "" if os.getenv("RECON_PLAIN") == "1" else "✅"


def _mark_error() -> str:
    """Return error indicator (emoji or plain text based on RECON_PLAIN env var)."""
    return "" if os.getenv("RECON_PLAIN") == "1" else "❌"


@app.callback()
def _load_env() -> None:
    # Skip dotenv loading in tests/CI for hermetic environments
    if os.getenv("RECON_SKIP_DOTENV") != "1":
        load_dotenv(override=False)
    logging.basicConfig(
        level=os.getenv("RECON_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s %(name)s: %(message)s",
    )


def _parse_date(value: str) -> date:
    """Parse date string in YYYY-MM-DD format."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        typer.echo(
            f"{_mark_error()} Invalid date format: {value}. Use YYYY-MM-DD", err=True
        )
        raise typer.Exit(1) from None


def _engine() -> Engine:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        typer.echo(f"{_mark_error()} DATABASE_URL not found in environment", err=True)
        raise typer.Exit(2)
    return create_db_engine(database_url)


def _settings() -> MatchSettings:
    try:
        return load_settings()
    except ValidationError as e:
        typer.echo(f"{_mark_error()} Invalid RECON_* settings: {e}", err=True)
        raise typer.Exit(2) from e


def _dump(data: Any) -> str:  # noqa: ANN401
    def _default(value: Any) -> Any:  # noqa: ANN401
        if hasattr(value, "model_dump"):
            return value.model_dump(mode="json")
        return str(value)

    return json.dumps(data, indent=2, default=_default, sort_keys=True)


def _echo_progress(progress: MatchProgress) -> None:
    mark = _mark_error() if progress.status == "error" else ""
    line = f"[{progress.status}] {progress.message}"
    typer.echo(f"{mark} {line}".strip(), err=progress.status == "error")


def _poll_match(
    engine: Engine,
    batch_id: int,
    user_id: int,
    settings: MatchSettings,
    **kwargs: Any,  # noqa: ANN401
) -> MatchProgress:
    """Advance the job one committed step at a time until it stops."""
    # pending + every page + matching, with a little slack
    max_steps = settings.api_max_pages + 3
    progress = MatchProgress(status="pending", message="Waiting to start")
    for _ in range(max_steps):
        with engine.begin() as conn:
            progress = advance_match_job(
                conn, batch_id, user_id, settings=settings, **kwargs
            )
        _echo_progress(progress)
        if progress.status in ("complete", "error"):
            break
    return progress


@app.command("init-db")
def init_db() -> None:
    """Initialize database schema from recon/schema.sql."""
    engine = _engine()
    try:
        with engine.begin() as conn:
            count = create_schema(conn)
        typer.echo(
            f"{_mark_success()} Database schema initialized successfully "
            f"({count} statements)"
        )
    except Exception as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e


@app.command("can-match")
def can_match_cmd(batch_id: BatchOption, user_id: UserOption) -> None:
    """Check whether a batch is ready for matching."""
    engine = _engine()
    with engine.connect() as conn:
        result = can_match(conn, batch_id, user_id)
    if isinstance(result, Ineligible):
        typer.echo(f"{_mark_error()} {result.reason}", err=True)
        raise typer.Exit(1)
    typer.echo(
        f"{_mark_success()} Batch {batch_id} can be matched against "
        f"{result.installation['name']}"
    )


@app.command("match")
def match(batch_id: BatchOption, user_id: UserOption) -> None:
    """Run the match job to completion, one remote page per step."""
    engine = _engine()
    settings = _settings()
    progress = _poll_match(engine, batch_id, user_id, settings)
    if progress.status != "complete":
        if progress.status != "error":
            typer.echo(f"{_mark_error()} Match job did not finish", err=True)
        raise typer.Exit(1)
    if progress.truncated:
        typer.echo(
            f"WARNING: fetch stopped at {settings.api_max_pages} pages; "
            "some remote transactions were not compared",
            err=True,
        )
    typer.echo(f"{_mark_success()} {progress.message}")


@app.command("match-step")
def match_step(
    batch_id: BatchOption, user_id: UserOption, json_out: JsonOption = False
) -> None:
    """Advance the match job by exactly one step."""
    engine = _engine()
    with engine.begin() as conn:
        progress = advance_match_job(conn, batch_id, user_id, settings=_settings())
    if json_out:
        typer.echo(_dump(progress))
    else:
        _echo_progress(progress)
    if progress.status == "error":
        raise typer.Exit(1)


@app.command("match-reset")
def match_reset(batch_id: BatchOption, user_id: UserOption) -> None:
    """Reset the match job to pending so the next step refetches from page 1."""
    engine = _engine()
    with engine.begin() as conn:
        found = reset_match_job(conn, batch_id, user_id)
    if not found:
        typer.echo(f"{_mark_error()} No match job for batch {batch_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{_mark_success()} Match job for batch {batch_id} reset")


@app.command("clear-matches")
def clear_matches_cmd(batch_id: BatchOption, user_id: UserOption) -> None:
    """Delete jobs and orphans for a batch and clear its match fields."""
    engine = _engine()
    with engine.begin() as conn:
        try:
            batch_summary(conn, batch_id, user_id)
        except NotFoundError as e:
            typer.echo(f"{_mark_error()} {e}", err=True)
            raise typer.Exit(1) from e
        cleared = clear_matches(conn, batch_id)
    typer.echo(f"{_mark_success()} Cleared matches on {cleared} transactions")


@app.command("orphans")
def orphans_cmd(
    batch_id: BatchOption, user_id: UserOption, json_out: JsonOption = False
) -> None:
    """List remote transactions with no imported counterpart."""
    engine = _engine()
    with engine.connect() as conn:
        try:
            batch_summary(conn, batch_id, user_id)
        except NotFoundError as e:
            typer.echo(f"{_mark_error()} {e}", err=True)
            raise typer.Exit(1) from e
        rows = find_orphans_by_batch(conn, batch_id)
    if json_out:
        typer.echo(_dump(rows))
        return
    if not rows:
        typer.echo("No orphans recorded for this batch.")
        return
    for row in rows:
        typer.echo(
            f"{row['transaction_date']}  {row['amount']:>12}  "
            f"{row['remote_number'] or row['remote_id']:<12} {row['description'] or ''}"
        )


@app.command("stats")
def stats(
    batch_id: BatchOption, user_id: UserOption, json_out: JsonOption = False
) -> None:
    """Show match counts by confidence, orphan count and job status."""
    engine = _engine()
    with engine.connect() as conn:
        try:
            summary = batch_summary(conn, batch_id, user_id)
        except NotFoundError as e:
            typer.echo(f"{_mark_error()} {e}", err=True)
            raise typer.Exit(1) from e
    if json_out:
        typer.echo(_dump(summary))
        return
    typer.echo(f"Batch {batch_id}: {summary['matched']} of {summary['total']} matched")
    typer.echo(
        f"  high={summary['high_confidence']} medium={summary['medium_confidence']} "
        f"low={summary['low_confidence']}"
    )
    typer.echo(f"  orphans={summary['orphans']} job={summary['job_status'] or '-'}")


@app.command("reconcile-account")
def reconcile_account_cmd(
    account_id: Annotated[int, typer.Option("--account", help="Local account id")],
    user_id: UserOption,
    json_out: JsonOption = False,
) -> None:
    """Compare every imported row of an account with the remote ledger."""
    engine = _engine()
    try:
        with engine.connect() as conn:
            result = reconcile_account(conn, account_id, user_id, settings=_settings())
    except (NotFoundError, NotEligibleError) as e:
        typer.echo(f"{_mark_error()} {e}", err=True)
        raise typer.Exit(1) from e
    except Exception as e:
        typer.echo(f"{_mark_error()} Reconciliation failed: {e}", err=True)
        raise typer.Exit(1) from e

    if json_out:
        typer.echo(_dump(result))
        return
    s = result["stats"]
    typer.echo(
        f"{_mark_success()} imported={s['total_imported']} matched={s['matched']} "
        f"missing={s['missing']} orphans={s['orphans']}"
    )
    if result["truncated"]:
        typer.echo("WARNING: remote fetch truncated at the page cap", err=True)


def _run_writeback(action: Any, *args: Any, **kwargs: Any) -> dict[str, Any]:  # noqa: ANN401
    engine = _engine()
    try:
        with engine.begin() as conn:
            return action(conn, *args, settings=_settings(), **kwargs)
    except (NotFoundError, NotEligibleError, WriteBackError) as e:
        typer.echo(f"{_mark_error()} {e}", err=True)
        raise typer.Exit(1) from e


def _request(model: Any, **values: Any) -> Any:  # noqa: ANN401
    try:
        return model.model_validate(values)
    except ValidationError as e:
        typer.echo(f"{_mark_error()} Invalid request: {e}", err=True)
        raise typer.Exit(1) from e


@app.command("push")
def push(  # noqa: PLR0913
    batch_id: BatchOption,
    transaction_id: Annotated[int, typer.Option("--txn", help="Imported transaction id")],
    user_id: UserOption,
    type_: Annotated[str, typer.Option("--type", help="income or expense")],
    amount: Annotated[str, typer.Option("--amount", help="Positive amount")],
    category_id: Annotated[int, typer.Option("--category-id")],
    payment_method: Annotated[str, typer.Option("--payment-method")],
    on: Annotated[str, typer.Option("--date", help="Date (YYYY-MM-DD)")],
    contact_id: Annotated[int | None, typer.Option("--contact-id")] = None,
    contact_name: Annotated[str | None, typer.Option("--contact")] = None,
    category_name: Annotated[str | None, typer.Option("--category")] = None,
    reference: Annotated[str, typer.Option("--reference")] = "",
) -> None:
    """Create an income/expense transaction remotely for an imported row."""
    request = _request(
        PushRequest,
        type=type_,
        date=_parse_date(on),
        amount=amount,
        category_id=category_id,
        category_name=category_name,
        payment_method=payment_method,
        contact_id=contact_id,
        contact_name=contact_name,
        reference=reference,
    )
    result = _run_writeback(push_transaction, batch_id, transaction_id, user_id, request)
    typer.echo(f"{_mark_success()} Pushed {result['number']} (remote id {result['remote_id']})")


@app.command("push-transfer")
def push_transfer_cmd(  # noqa: PLR0913
    batch_id: BatchOption,
    transaction_id: Annotated[int, typer.Option("--txn", help="Imported transaction id")],
    user_id: UserOption,
    amount: Annotated[str, typer.Option("--amount", help="Positive amount")],
    to_account_id: Annotated[int, typer.Option("--to-account", help="Remote account id")],
    payment_method: Annotated[str, typer.Option("--payment-method")],
    on: Annotated[str, typer.Option("--date", help="Date (YYYY-MM-DD)")],
    currency_rate: Annotated[str | None, typer.Option("--rate")] = None,
    reference: Annotated[str, typer.Option("--reference")] = "",
) -> None:
    """Create an account-to-account transfer remotely for an imported row."""
    request = _request(
        TransferRequest,
        date=_parse_date(on),
        amount=amount,
        to_account_id=to_account_id,
        payment_method=payment_method,
        currency_rate=currency_rate,
        reference=reference,
    )
    result = _run_writeback(push_transfer, batch_id, transaction_id, user_id, request)
    typer.echo(f"{_mark_success()} Pushed {result['number']} (remote id {result['remote_id']})")


@app.command("replicate")
def replicate(  # noqa: PLR0913
    transaction_id: Annotated[int, typer.Option("--txn", help="Imported transaction id")],
    user_id: UserOption,
    installation_id: Annotated[int, typer.Option("--installation")],
    account_id: Annotated[int, typer.Option("--account", help="Remote account id")],
    type_: Annotated[str, typer.Option("--type", help="income or expense")],
    amount: Annotated[str, typer.Option("--amount")],
    category_id: Annotated[int, typer.Option("--category-id")],
    payment_method: Annotated[str, typer.Option("--payment-method")],
    on: Annotated[str, typer.Option("--date", help="Date (YYYY-MM-DD)")],
    to_amount: Annotated[str | None, typer.Option("--to-amount")] = None,
    currency_rate: Annotated[str | None, typer.Option("--rate")] = None,
    contact_name: Annotated[str | None, typer.Option("--contact")] = None,
) -> None:
    """Copy an imported row into another entity's remote ledger."""
    request = _request(
        ReplicateRequest,
        installation_id=installation_id,
        account_id=account_id,
        type=type_,
        date=_parse_date(on),
        amount=amount,
        category_id=category_id,
        payment_method=payment_method,
        to_amount=to_amount,
        currency_rate=currency_rate,
        contact_name=contact_name,
    )
    result = _run_writeback(replicate_transaction, transaction_id, user_id, request)
    typer.echo(f"{_mark_success()} {result['message']} ({result['number']})")


@app.command("suggest")
def suggest(
    installation_id: Annotated[int, typer.Option("--installation")],
    user_id: UserOption,
    description: Annotated[str, typer.Option("--description")],
    json_out: JsonOption = False,
) -> None:
    """Show the remembered classification for a description, if any."""
    engine = _engine()
    with engine.connect() as conn:
        try:
            mapping = suggest_mapping(conn, installation_id, user_id, description)
        except NotFoundError as e:
            typer.echo(f"{_mark_error()} {e}", err=True)
            raise typer.Exit(1) from e
    if json_out:
        typer.echo(_dump(mapping))
        return
    if mapping is None:
        typer.echo("No suggestion for this description.")
        return
    typer.echo(
        f"{mapping['description_pattern']}: type={mapping['transaction_type']} "
        f"contact={mapping['contact_name'] or '-'} "
        f"category={mapping['category_name'] or '-'} "
        f"(used {mapping['usage_count']}x)"
    )


@app.command("demo")
def demo() -> None:
    """Run an offline demo: SQLite fixtures against an in-process ledger."""
    os.environ["RECON_NO_EGRESS"] = "1"  # Block all real HTTP calls

    try:
        typer.echo("🚀 Starting offline demo (SQLite + mock ledger)...")
        engine = create_demo_engine()
        with engine.begin() as conn:
            load_demo_fixtures(conn)
        typer.echo(f"{_mark_success()} Demo database initialized with fixtures")

        progress = _poll_match(
            engine,
            DEMO_BATCH_ID,
            DEMO_USER_ID,
            demo_settings(),
            client_factory=demo_client_factory,
        )
        if progress.status != "complete":
            typer.echo(f"{_mark_error()} Match: FAILED")
            raise typer.Exit(1)  # noqa: TRY301

        with engine.connect() as conn:
            summary = batch_summary(conn, DEMO_BATCH_ID, DEMO_USER_ID)
            account = reconcile_account(
                conn,
                DEMO_ACCOUNT_ID,
                DEMO_USER_ID,
                settings=demo_settings(),
                client_factory=demo_client_factory,
            )
        typer.echo(
            f"{_mark_success()} Match: {summary['matched']}/{summary['total']} "
            f"(high={summary['high_confidence']} medium={summary['medium_confidence']} "
            f"low={summary['low_confidence']}), orphans={summary['orphans']}"
        )
        s = account["stats"]
        typer.echo(
            f"{_mark_success()} Account: missing={s['missing']} orphans={s['orphans']}"
        )
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"{_mark_error()} Demo failed: {e}", err=True)
        raise typer.Exit(1) from e


def _check_dependency(module_name: str) -> bool:
    """Check if a module is available without importing it."""
    return importlib.util.find_spec(module_name) is not None


def _check_python_version() -> bool:
    """Check Python version requirement."""
    py_version = sys.version_info
    version_str = f"{py_version.major}.{py_version.minor}.{py_version.micro}"
    typer.echo(f"Python version: {version_str}")
    if py_version < (3, 11):
        typer.echo(f"{_mark_error()} Python 3.11+ required, found {version_str}")
        return False
    typer.echo(f"{_mark_success()} Python version OK")
    return True


def _check_database() -> bool:
    """Check database connection if configured."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        typer.echo("i  DATABASE_URL not set (OK for offline demo)")
        return True

    typer.echo(f"Database URL: {database_url[:20]}...")
    try:
        engine = create_db_engine(database_url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        typer.echo(f"{_mark_error()} Database connection failed: {e}")
        return False
    else:
        typer.echo(f"{_mark_success()} Database connection OK")
        return True


def _check_settings() -> bool:
    """Validate RECON_* settings."""
    try:
        settings = load_settings()
    except ValidationError as e:
        typer.echo(f"{_mark_error()} Invalid RECON_* settings: {e}")
        return False
    typer.echo(
        f"{_mark_success()} Settings OK (window={settings.match_window_days}d, "
        f"page_size={settings.api_page_size}, max_pages={settings.api_max_pages})"
    )
    return True


def _check_dependencies() -> bool:
    """Check Python package dependencies."""
    required = ("httpx", "pydantic", "sqlalchemy", "yaml")
    if all(_check_dependency(name) for name in required):
        typer.echo(f"{_mark_success()} Core dependencies available")
        success = True
    else:
        typer.echo(f"{_mark_error()} Missing core dependencies")
        success = False

    if _check_dependency("psycopg"):
        typer.echo(f"{_mark_success()} psycopg available (PostgreSQL support)")
    else:
        typer.echo("i  psycopg not available (SQLite only)")
    return success


@app.command("doctor")
def doctor() -> None:
    """Run preflight checks for dependencies and configuration."""
    typer.echo("🔍 Running system preflight checks...\n")
    typer.echo(f"Platform: {platform.system()} {platform.release()}")

    checks = [
        _check_python_version(),
        _check_settings(),
        _check_database(),
        _check_dependencies(),
    ]

    typer.echo()
    if all(checks):
        typer.echo(f"{_mark_success()} All checks passed! System ready for ledger-recon")
    else:
        typer.echo(f"{_mark_error()} Some checks failed. See errors above.")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
