# recon/engine.py
"""Reconciliation engine: eligibility, the chunked match job, account recon.

Each call to ``advance_match_job`` performs at most one remote call and one
state transition, so a web request or CLI poll loop can drive a long fetch
without holding a connection open to the remote ledger:

    pending -> fetching -> matching -> complete
                  \\____________\\______> error (until reset)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date
from typing import TYPE_CHECKING, Any

from recon import jobs, orphans, store
from recon.config import MatchSettings
from recon.connectors.ledger_client import LedgerClient, create_ledger_client
from recon.errors import NotEligibleError, NotFoundError
from recon.matcher import fetch_window, match_transactions, select_orphans
from recon.models import (
    Eligibility,
    Eligible,
    Ineligible,
    MatchJob,
    MatchProgress,
    RemotePage,
    RemoteTransaction,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)

ClientFactory = Callable[[dict[str, Any], MatchSettings], LedgerClient]


# --- Eligibility -------------------------------------------------------------


def _check_account(conn: Connection, account_id: int) -> Eligibility:
    account = store.get_account(conn, account_id)
    if account is None:
        return Ineligible(reason="Account not found")
    if not account.get("remote_account_id"):
        return Ineligible(reason="Account is not linked to a remote ledger account")
    installations = store.get_active_installations(conn, account["entity_id"])
    if not installations:
        return Ineligible(
            reason="No remote ledger installation configured for this entity"
        )
    if len(installations) > 1:
        return Ineligible(
            reason="Multiple active remote ledger installations configured for this entity"
        )
    return Eligible(account=account, installation=installations[0])


def can_match(conn: Connection, batch_id: int, user_id: int) -> Eligibility:
    """Decide whether a batch can be matched; read-only."""
    batch = store.get_batch_for_user(conn, batch_id, user_id)
    if batch is None:
        return Ineligible(reason="Batch not found")
    if batch["status"] != "completed":
        return Ineligible(reason="Batch must be completed before matching")
    result = _check_account(conn, batch["account_id"])
    if isinstance(result, Ineligible):
        return result
    return Eligible(
        batch=batch, account=result.account, installation=result.installation
    )


def can_reconcile_account(
    conn: Connection, account_id: int, user_id: int
) -> Eligibility:
    """Account-level variant of ``can_match``; the installation must be the user's."""
    result = _check_account(conn, account_id)
    if isinstance(result, Eligible) and result.installation["user_id"] != user_id:
        return Ineligible(reason="Account not found")
    return result


# --- Match job steps ---------------------------------------------------------


def _progress_from_job(job: MatchJob, orphan_count: int = 0) -> MatchProgress:
    if job.status == "complete":
        message = f"Matched {job.matched_count} of {job.total_transactions} transactions"
        if orphan_count:
            message += f" ({orphan_count} orphans found)"
    elif job.status == "error":
        message = job.error_message or "Unknown error"
    elif job.status == "pending":
        message = "Waiting to start"
    else:
        message = f"Fetched page {job.current_page} of {job.total_pages or '?'}"
    return MatchProgress(
        status=job.status,
        message=message,
        current_page=job.current_page,
        total_pages=job.total_pages,
        fetched_count=len(job.remote_transactions),
        matched=job.matched_count,
        total=job.total_transactions,
        orphans=orphan_count,
        truncated=job.truncated,
    )


def _fetch_page(
    eligible: Eligible,
    settings: MatchSettings,
    client_factory: ClientFactory,
    window: tuple[date, date],
    page: int,
) -> RemotePage:
    with client_factory(eligible.installation, settings) as client:
        return client.list_transactions(
            eligible.account["remote_account_id"],
            window[0].isoformat(),
            window[1].isoformat(),
            page,
            settings.api_page_size,
        )


def _fetch_outcome(
    conn: Connection,
    job: MatchJob,
    page_number: int,
    page: RemotePage,
    settings: MatchSettings,
    **window: date,
) -> MatchProgress:
    """Store a fetched page and move to matching when the fetch is over."""
    fetched = jobs.append_remote_transactions(conn, job.job_id, page.items)
    last_page = page_number >= page.total_pages
    at_cap = page_number >= settings.api_max_pages
    short_page = page.row_count < settings.api_page_size
    truncated = at_cap and not last_page and not short_page
    status = "matching" if (last_page or at_cap or short_page) else "fetching"
    jobs.update_progress(
        conn,
        job.job_id,
        status=status,
        current_page=page_number,
        total_pages=page.total_pages,
        truncated=truncated,
        **window,
    )
    if truncated:
        logger.warning(
            "Batch %s: remote reports %s pages, stopped at cap of %s",
            job.batch_id,
            page.total_pages,
            settings.api_max_pages,
        )
    if status == "matching":
        message = f"Fetched {fetched} transactions, now matching..."
    else:
        message = f"Fetching page {page_number} of {page.total_pages}..."
    return MatchProgress(
        status=status,
        message=message,
        current_page=page_number,
        total_pages=page.total_pages,
        fetched_count=fetched,
        truncated=truncated,
    )


def _start_job(
    conn: Connection,
    job: MatchJob,
    eligible: Eligible,
    settings: MatchSettings,
    client_factory: ClientFactory,
) -> MatchProgress:
    transactions = store.find_transactions_by_batch(conn, job.batch_id)
    if not transactions:
        orphans.delete_orphans_by_batch(conn, job.batch_id)
        jobs.mark_complete(conn, job.job_id, 0, 0)
        return MatchProgress(status="complete", message="No transactions to match")

    window = fetch_window(
        [t.transaction_date for t in transactions], settings.match_window_days
    )
    logger.info(
        "Batch %s: fetching remote account %s from %s to %s",
        job.batch_id,
        eligible.account["remote_account_id"],
        window[0],
        window[1],
    )
    page = _fetch_page(eligible, settings, client_factory, window, 1)
    return _fetch_outcome(
        conn, job, 1, page, settings, window_start=window[0], window_end=window[1]
    )


def _continue_fetch(
    conn: Connection,
    job: MatchJob,
    eligible: Eligible,
    settings: MatchSettings,
    client_factory: ClientFactory,
) -> MatchProgress:
    next_page = job.current_page + 1
    if next_page > (job.total_pages or 1) or next_page > settings.api_max_pages:
        jobs.update_progress(
            conn, job.job_id, status="matching", current_page=job.current_page
        )
        fetched = len(job.remote_transactions)
        return MatchProgress(
            status="matching",
            message=f"Fetched {fetched} transactions, now matching...",
            current_page=job.current_page,
            total_pages=job.total_pages,
            fetched_count=fetched,
            truncated=job.truncated,
        )

    if job.window_start is None or job.window_end is None:
        transactions = store.find_transactions_by_batch(conn, job.batch_id)
        window = fetch_window(
            [t.transaction_date for t in transactions], settings.match_window_days
        )
    else:
        window = (job.window_start, job.window_end)
    page = _fetch_page(eligible, settings, client_factory, window, next_page)
    return _fetch_outcome(conn, job, next_page, page, settings)


def _run_matching(
    conn: Connection, job: MatchJob, eligible: Eligible, settings: MatchSettings
) -> MatchProgress:
    transactions = store.find_transactions_by_batch(conn, job.batch_id)
    remote = jobs.get_remote_transactions(conn, job.job_id)
    result = match_transactions(
        transactions,
        remote,
        eligible.account.get("account_type") or "bank",
        settings.match_window_days,
    )

    store.clear_matches_by_batch(conn, job.batch_id)
    for match in result.matches:
        store.update_match(conn, match)

    orphan_count = 0
    if transactions:
        dates = [t.transaction_date for t in transactions]
        in_range = select_orphans(result.unclaimed, min(dates), max(dates))
        orphan_count = orphans.save_orphans(conn, job.batch_id, in_range)
    else:
        orphans.delete_orphans_by_batch(conn, job.batch_id)

    matched = len(result.matches)
    jobs.mark_complete(conn, job.job_id, matched, len(transactions))
    logger.info(
        "Batch %s: matched %s of %s, %s orphans",
        job.batch_id,
        matched,
        len(transactions),
        orphan_count,
    )
    message = f"Matched {matched} of {len(transactions)} transactions"
    if orphan_count:
        message += f" ({orphan_count} orphans found)"
    return MatchProgress(
        status="complete",
        message=message,
        current_page=job.current_page,
        total_pages=job.total_pages,
        fetched_count=len(remote),
        matched=matched,
        total=len(transactions),
        orphans=orphan_count,
        truncated=job.truncated,
    )


def advance_match_job(
    conn: Connection,
    batch_id: int,
    user_id: int,
    *,
    settings: MatchSettings | None = None,
    client_factory: ClientFactory = create_ledger_client,
) -> MatchProgress:
    """Advance the batch's match job by one step and report progress.

    Run inside a transaction (``engine.begin()``); the job row is locked
    for the duration of the step.
    """
    settings = settings or MatchSettings()
    eligibility = can_match(conn, batch_id, user_id)
    if isinstance(eligibility, Ineligible):
        return MatchProgress(status="error", message=eligibility.reason)

    job = jobs.find_or_create_job(conn, batch_id, user_id)
    job = jobs.lock_job(conn, job.job_id)

    if job.status in ("complete", "error"):
        return _progress_from_job(job, orphans.count_orphans_by_batch(conn, batch_id))

    try:
        if job.status == "pending":
            return _start_job(conn, job, eligibility, settings, client_factory)
        if job.status == "fetching":
            return _continue_fetch(conn, job, eligibility, settings, client_factory)
        return _run_matching(conn, job, eligibility, settings)
    except Exception as e:
        logger.exception("Match step failed for batch %s", batch_id)
        jobs.mark_error(conn, job.job_id, str(e))
        return MatchProgress(
            status="error",
            message=str(e),
            current_page=job.current_page,
            total_pages=job.total_pages,
        )


def get_job_status(
    conn: Connection, batch_id: int, user_id: int
) -> MatchProgress | None:
    job = jobs.find_job(conn, batch_id, user_id)
    if job is None:
        return None
    return _progress_from_job(job, orphans.count_orphans_by_batch(conn, batch_id))


def reset_match_job(conn: Connection, batch_id: int, user_id: int) -> bool:
    """Put the job back to pending; False when the batch never had a job."""
    job = jobs.find_job(conn, batch_id, user_id)
    if job is None:
        return False
    jobs.reset_job(conn, job.job_id)
    return True


def clear_matches(conn: Connection, batch_id: int) -> int:
    """Drop the batch's jobs and orphans and null its match fields."""
    jobs.delete_jobs_by_batch(conn, batch_id)
    orphans.delete_orphans_by_batch(conn, batch_id)
    return store.clear_matches_by_batch(conn, batch_id)


def batch_summary(conn: Connection, batch_id: int, user_id: int) -> dict[str, Any]:
    if store.get_batch_for_user(conn, batch_id, user_id) is None:
        msg = f"Batch {batch_id} not found"
        raise NotFoundError(msg)
    summary: dict[str, Any] = store.get_match_stats(conn, batch_id)
    summary["orphans"] = orphans.count_orphans_by_batch(conn, batch_id)
    job = jobs.find_job(conn, batch_id, user_id)
    summary["job_status"] = job.status if job else None
    summary["truncated"] = job.truncated if job else False
    return summary


# --- Whole-account reconciliation --------------------------------------------


def _require_account(conn: Connection, account_id: int, user_id: int) -> Eligible:
    result = can_reconcile_account(conn, account_id, user_id)
    if isinstance(result, Ineligible):
        if result.reason == "Account not found":
            raise NotFoundError(result.reason)
        raise NotEligibleError(result.reason)
    return result


def fetch_reconciliation_page(  # noqa: PLR0913
    conn: Connection,
    account_id: int,
    user_id: int,
    page: int,
    date_from: date | None = None,
    date_to: date | None = None,
    *,
    settings: MatchSettings | None = None,
    client_factory: ClientFactory = create_ledger_client,
) -> dict[str, Any]:
    """One page of remote rows for an account; dates default to its import range."""
    settings = settings or MatchSettings()
    eligible = _require_account(conn, account_id, user_id)
    if date_from is None or date_to is None:
        date_from, date_to = store.get_account_date_range(conn, account_id)
    if date_from is None or date_to is None:
        return {
            "status": "complete",
            "transactions": [],
            "current_page": 0,
            "total_pages": 0,
            "message": "No transactions to reconcile",
        }

    result = _fetch_page(eligible, settings, client_factory, (date_from, date_to), page)
    complete = page >= result.total_pages
    return {
        "status": "complete" if complete else "fetching",
        "transactions": result.items,
        "current_page": page,
        "total_pages": result.total_pages,
        "message": (
            f"Fetched all {result.total_pages} pages"
            if complete
            else f"Fetching page {page} of {result.total_pages}..."
        ),
    }


def reconcile_account(
    conn: Connection,
    account_id: int,
    user_id: int,
    *,
    settings: MatchSettings | None = None,
    client_factory: ClientFactory = create_ledger_client,
) -> dict[str, Any]:
    """Compare every imported row of an account with the remote ledger.

    Remote rows no imported transaction has claimed are reported as orphans.
    The combined list is ordered by date, imported rows first on a tie.
    """
    settings = settings or MatchSettings()
    eligible = _require_account(conn, account_id, user_id)
    imported = store.find_transactions_by_account(conn, account_id)
    date_from, date_to = store.get_account_date_range(conn, account_id)

    fetched: list[RemoteTransaction] = []
    truncated = False
    if date_from is not None and date_to is not None:
        page_number = 1
        while True:
            page = _fetch_page(
                eligible, settings, client_factory, (date_from, date_to), page_number
            )
            fetched.extend(page.items)
            if page_number >= page.total_pages:
                break
            if page.row_count < settings.api_page_size:
                break
            if page_number >= settings.api_max_pages:
                truncated = True
                break
            page_number += 1

    matched_ids = {
        t.matched_remote_id for t in imported if t.matched_remote_id is not None
    }
    seen: set[int] = set()
    orphan_rows: list[RemoteTransaction] = []
    for remote in fetched:
        if remote.id in matched_ids or remote.id in seen:
            continue
        seen.add(remote.id)
        orphan_rows.append(remote)

    combined: list[dict[str, Any]] = [
        {"source": "imported", "date": t.transaction_date, "transaction": t}
        for t in imported
    ]
    combined.extend(
        {"source": "remote", "date": r.date, "transaction": r} for r in orphan_rows
    )
    combined.sort(key=lambda row: (row["date"], row["source"] != "imported"))

    return {
        "account": eligible.account,
        "date_range": {"start": date_from, "end": date_to},
        "imported_transactions": imported,
        "orphan_transactions": orphan_rows,
        "combined": combined,
        "truncated": truncated,
        "stats": {
            "total_imported": len(imported),
            "matched": len(matched_ids),
            "missing": len(imported) - len(matched_ids),
            "orphans": len(orphan_rows),
        },
    }
