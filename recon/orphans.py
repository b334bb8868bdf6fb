"""Orphan recorder: remote rows with no local counterpart, kept per batch."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from recon.db import as_date, as_decimal

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from recon.models import RemoteTransaction


def save_orphans(
    conn: Connection, batch_id: int, orphans: list[RemoteTransaction]
) -> int:
    """Replace the batch's orphan set wholesale; returns the number stored.

    A remote id appearing twice (overlapping pages) is stored once.
    """
    delete_orphans_by_batch(conn, batch_id)
    seen: set[int] = set()
    for orphan in orphans:
        if orphan.id in seen:
            continue
        seen.add(orphan.id)
        conn.execute(
            text("""
                INSERT INTO orphan_transactions (
                    batch_id, remote_id, remote_number, transaction_date, amount,
                    type, description, reference, contact, category, currency_code
                )
                VALUES (
                    :batch_id, :remote_id, :remote_number, :date, :amount,
                    :type, :description, :reference, :contact, :category,
                    :currency_code
                )
            """),
            {
                "batch_id": batch_id,
                "remote_id": orphan.id,
                "remote_number": orphan.number,
                "date": orphan.date.isoformat(),
                "amount": orphan.amount,
                "type": orphan.type,
                "description": orphan.description,
                "reference": orphan.reference,
                "contact": orphan.contact,
                "category": orphan.category,
                "currency_code": orphan.currency_code,
            },
        )
    return len(seen)


def find_orphans_by_batch(conn: Connection, batch_id: int) -> list[dict[str, Any]]:
    rows = conn.execute(
        text("""
            SELECT * FROM orphan_transactions
            WHERE batch_id = :bid
            ORDER BY transaction_date, remote_id
        """),
        {"bid": batch_id},
    ).fetchall()
    orphans = []
    for row in rows:
        data = dict(row._mapping)  # noqa: SLF001
        data["transaction_date"] = as_date(data["transaction_date"])
        data["amount"] = as_decimal(data["amount"])
        orphans.append(data)
    return orphans


def delete_orphans_by_batch(conn: Connection, batch_id: int) -> int:
    result = conn.execute(
        text("DELETE FROM orphan_transactions WHERE batch_id = :bid"),
        {"bid": batch_id},
    )
    return result.rowcount


def count_orphans_by_batch(conn: Connection, batch_id: int) -> int:
    return int(
        conn.execute(
            text("SELECT COUNT(*) FROM orphan_transactions WHERE batch_id = :bid"),
            {"bid": batch_id},
        ).scalar_one()
    )
