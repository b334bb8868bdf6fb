"""Match job state: one resumable row per (batch, user)."""

from __future__ import annotations

import json
from datetime import date
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from recon.db import as_date
from recon.models import JobStatus, MatchJob, RemoteTransaction

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection


def _canonical_json(remote: list[RemoteTransaction]) -> str:
    """Stable JSON for the accumulated rows (sorted keys, no spaces)."""
    return json.dumps(
        [r.model_dump(mode="json") for r in remote],
        sort_keys=True,
        separators=(",", ":"),
    )


def _row_to_job(row: Any) -> MatchJob:  # noqa: ANN401
    data = dict(row._mapping)  # noqa: SLF001
    data["window_start"] = as_date(data["window_start"])
    data["window_end"] = as_date(data["window_end"])
    data["truncated"] = bool(data["truncated"])
    data["remote_transactions"] = json.loads(data["remote_transactions"] or "[]")
    return MatchJob.model_validate(data)


def find_job(conn: Connection, batch_id: int, user_id: int) -> MatchJob | None:
    row = conn.execute(
        text("SELECT * FROM match_jobs WHERE batch_id = :bid AND user_id = :uid"),
        {"bid": batch_id, "uid": user_id},
    ).fetchone()
    return _row_to_job(row) if row else None


def find_or_create_job(conn: Connection, batch_id: int, user_id: int) -> MatchJob:
    """Return the job for (batch, user), creating a pending one if absent."""
    dialect = conn.dialect.name
    if dialect == "postgresql":
        conn.execute(
            text("""
                INSERT INTO match_jobs (batch_id, user_id)
                VALUES (:bid, :uid)
                ON CONFLICT (batch_id, user_id) DO NOTHING
            """),
            {"bid": batch_id, "uid": user_id},
        )
    else:
        conn.execute(
            text("""
                INSERT OR IGNORE INTO match_jobs (batch_id, user_id)
                VALUES (:bid, :uid)
            """),
            {"bid": batch_id, "uid": user_id},
        )
    job = find_job(conn, batch_id, user_id)
    if job is None:
        msg = f"Match job for batch {batch_id} could not be created"
        raise RuntimeError(msg)
    return job


def lock_job(conn: Connection, job_id: int) -> MatchJob:
    """Re-read a job holding a row lock for the rest of the transaction.

    SQLite has no row locks; its single-writer transaction serializes steps.
    """
    sql = "SELECT * FROM match_jobs WHERE job_id = :jid"
    if conn.dialect.name == "postgresql":
        sql += " FOR UPDATE"
    row = conn.execute(text(sql), {"jid": job_id}).fetchone()
    if row is None:
        msg = f"Match job {job_id} not found"
        raise LookupError(msg)
    return _row_to_job(row)


def update_progress(  # noqa: PLR0913
    conn: Connection,
    job_id: int,
    *,
    status: JobStatus,
    current_page: int,
    total_pages: int | None = None,
    window_start: date | None = None,
    window_end: date | None = None,
    truncated: bool | None = None,
) -> None:
    """Advance status and page counters; None leaves a column unchanged."""
    conn.execute(
        text("""
            UPDATE match_jobs
            SET status = :status,
                current_page = :current_page,
                total_pages = COALESCE(:total_pages, total_pages),
                window_start = COALESCE(:window_start, window_start),
                window_end = COALESCE(:window_end, window_end),
                truncated = COALESCE(:truncated, truncated)
            WHERE job_id = :jid
        """),
        {
            "jid": job_id,
            "status": status,
            "current_page": current_page,
            "total_pages": total_pages,
            "window_start": window_start.isoformat() if window_start else None,
            "window_end": window_end.isoformat() if window_end else None,
            "truncated": truncated,
        },
    )


def get_remote_transactions(conn: Connection, job_id: int) -> list[RemoteTransaction]:
    row = conn.execute(
        text("SELECT remote_transactions FROM match_jobs WHERE job_id = :jid"),
        {"jid": job_id},
    ).fetchone()
    if row is None:
        return []
    return [RemoteTransaction.model_validate(r) for r in json.loads(row[0] or "[]")]


def append_remote_transactions(
    conn: Connection, job_id: int, page: list[RemoteTransaction]
) -> int:
    """Append one fetched page to the stored rows; returns the new total."""
    stored = get_remote_transactions(conn, job_id)
    stored.extend(page)
    conn.execute(
        text("UPDATE match_jobs SET remote_transactions = :rows WHERE job_id = :jid"),
        {"jid": job_id, "rows": _canonical_json(stored)},
    )
    return len(stored)


def mark_complete(
    conn: Connection, job_id: int, matched_count: int, total_transactions: int
) -> None:
    conn.execute(
        text("""
            UPDATE match_jobs
            SET status = 'complete',
                matched_count = :matched,
                total_transactions = :total,
                error_message = NULL
            WHERE job_id = :jid
        """),
        {"jid": job_id, "matched": matched_count, "total": total_transactions},
    )


def mark_error(conn: Connection, job_id: int, message: str) -> None:
    conn.execute(
        text("""
            UPDATE match_jobs SET status = 'error', error_message = :message
            WHERE job_id = :jid
        """),
        {"jid": job_id, "message": message},
    )


def reset_job(conn: Connection, job_id: int) -> None:
    """Back to pending with every progress field cleared; refetch starts at page 1."""
    conn.execute(
        text("""
            UPDATE match_jobs
            SET status = 'pending',
                current_page = 0,
                total_pages = NULL,
                window_start = NULL,
                window_end = NULL,
                remote_transactions = '[]',
                matched_count = 0,
                total_transactions = 0,
                truncated = :truncated,
                error_message = NULL
            WHERE job_id = :jid
        """),
        {"jid": job_id, "truncated": False},
    )


def delete_jobs_by_batch(conn: Connection, batch_id: int) -> int:
    result = conn.execute(
        text("DELETE FROM match_jobs WHERE batch_id = :bid"), {"bid": batch_id}
    )
    return result.rowcount
