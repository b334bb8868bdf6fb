# recon/store.py
"""Imported transaction store and the batch/account/installation lookups."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from recon.db import as_date, as_decimal
from recon.models import ImportedTransaction, Match

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

_TXN_COLUMNS = """
    transaction_id, batch_id, transaction_date, transaction_currency,
    transaction_amount, description, bank_ref, status,
    matched_remote_id, matched_remote_number, matched_remote_date,
    matched_remote_amount, matched_remote_description, matched_remote_contact,
    matched_remote_category, match_confidence, pushed_number, pushed_at,
    replicated_remote_id, replicated_number, replicated_to_entity_id,
    replicated_at
"""


def _row_to_transaction(row: Any) -> ImportedTransaction:  # noqa: ANN401
    data = dict(row._mapping)  # noqa: SLF001
    data["transaction_date"] = as_date(data["transaction_date"])
    data["matched_remote_date"] = as_date(data["matched_remote_date"])
    data["transaction_amount"] = as_decimal(data["transaction_amount"])
    data["matched_remote_amount"] = as_decimal(data["matched_remote_amount"])
    data["description"] = data["description"] or ""
    data["bank_ref"] = data["bank_ref"] or ""
    return ImportedTransaction.model_validate(data)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# --- Batch / account / installation lookups -------------------------------


def get_batch(conn: Connection, batch_id: int) -> dict[str, Any] | None:
    row = conn.execute(
        text("SELECT * FROM import_batches WHERE batch_id = :bid"), {"bid": batch_id}
    ).fetchone()
    return dict(row._mapping) if row else None  # noqa: SLF001


def get_batch_for_user(
    conn: Connection, batch_id: int, user_id: int
) -> dict[str, Any] | None:
    """Fetch a batch only if it belongs to the user."""
    row = conn.execute(
        text(
            "SELECT * FROM import_batches WHERE batch_id = :bid AND user_id = :uid"
        ),
        {"bid": batch_id, "uid": user_id},
    ).fetchone()
    return dict(row._mapping) if row else None  # noqa: SLF001


def get_account(conn: Connection, account_id: int) -> dict[str, Any] | None:
    row = conn.execute(
        text("SELECT * FROM accounts WHERE account_id = :aid"), {"aid": account_id}
    ).fetchone()
    return dict(row._mapping) if row else None  # noqa: SLF001


def get_active_installations(conn: Connection, entity_id: int) -> list[dict[str, Any]]:
    """Return the active remote installations configured for an entity."""
    rows = conn.execute(
        text("""
            SELECT * FROM installations
            WHERE entity_id = :eid AND is_active = :active
            ORDER BY installation_id
        """),
        {"eid": entity_id, "active": True},
    ).fetchall()
    return [dict(r._mapping) for r in rows]  # noqa: SLF001


def get_installation_for_user(
    conn: Connection, installation_id: int, user_id: int
) -> dict[str, Any] | None:
    row = conn.execute(
        text("""
            SELECT * FROM installations
            WHERE installation_id = :iid AND user_id = :uid
        """),
        {"iid": installation_id, "uid": user_id},
    ).fetchone()
    return dict(row._mapping) if row else None  # noqa: SLF001


# --- Imported transactions -------------------------------------------------


def get_transaction(conn: Connection, transaction_id: int) -> ImportedTransaction | None:
    row = conn.execute(
        text(f"SELECT {_TXN_COLUMNS} FROM import_transactions "  # noqa: S608
             "WHERE transaction_id = :tid"),
        {"tid": transaction_id},
    ).fetchone()
    return _row_to_transaction(row) if row else None


def find_transactions_by_batch(
    conn: Connection, batch_id: int
) -> list[ImportedTransaction]:
    """All imported transactions of a batch in ascending id order."""
    rows = conn.execute(
        text(f"SELECT {_TXN_COLUMNS} FROM import_transactions "  # noqa: S608
             "WHERE batch_id = :bid ORDER BY transaction_id"),
        {"bid": batch_id},
    ).fetchall()
    return [_row_to_transaction(r) for r in rows]


def find_transactions_by_account(
    conn: Connection, account_id: int
) -> list[ImportedTransaction]:
    """All imported transactions across the account's batches, by date then id."""
    cols = ", ".join(f"t.{c.strip()}" for c in _TXN_COLUMNS.split(","))
    rows = conn.execute(
        text(f"""
            SELECT {cols}
            FROM import_transactions t
            JOIN import_batches b ON b.batch_id = t.batch_id
            WHERE b.account_id = :aid
            ORDER BY t.transaction_date, t.transaction_id
        """),  # noqa: S608
        {"aid": account_id},
    ).fetchall()
    return [_row_to_transaction(r) for r in rows]


def get_account_date_range(
    conn: Connection, account_id: int
) -> tuple[date | None, date | None]:
    row = conn.execute(
        text("""
            SELECT MIN(t.transaction_date), MAX(t.transaction_date)
            FROM import_transactions t
            JOIN import_batches b ON b.batch_id = t.batch_id
            WHERE b.account_id = :aid
        """),
        {"aid": account_id},
    ).fetchone()
    if row is None:
        return None, None
    return as_date(row[0]), as_date(row[1])


def update_match(conn: Connection, match: Match) -> None:
    """Write the matched fields and mark the transaction processed."""
    conn.execute(
        text("""
            UPDATE import_transactions
            SET matched_remote_id = :remote_id,
                matched_remote_number = :remote_number,
                matched_remote_date = :remote_date,
                matched_remote_amount = :amount,
                matched_remote_description = :description,
                matched_remote_contact = :contact,
                matched_remote_category = :category,
                match_confidence = :confidence,
                status = 'processed'
            WHERE transaction_id = :tid
        """),
        {
            "tid": match.transaction_id,
            "remote_id": match.remote_id,
            "remote_number": match.remote_number,
            "remote_date": match.remote_date.isoformat(),
            "amount": match.display_amount,
            "description": match.description,
            "contact": match.contact or None,
            "category": match.category or None,
            "confidence": match.confidence,
        },
    )


def clear_matches_by_batch(conn: Connection, batch_id: int) -> int:
    """Null every matched field for the batch; returns rows touched."""
    result = conn.execute(
        text("""
            UPDATE import_transactions
            SET matched_remote_id = NULL,
                matched_remote_number = NULL,
                matched_remote_date = NULL,
                matched_remote_amount = NULL,
                matched_remote_description = NULL,
                matched_remote_contact = NULL,
                matched_remote_category = NULL,
                match_confidence = NULL
            WHERE batch_id = :bid
        """),
        {"bid": batch_id},
    )
    return result.rowcount


def update_status(conn: Connection, transaction_id: int, status: str) -> None:
    conn.execute(
        text("UPDATE import_transactions SET status = :status WHERE transaction_id = :tid"),
        {"tid": transaction_id, "status": status},
    )


def update_push_status(conn: Connection, transaction_id: int, number: str) -> None:
    conn.execute(
        text("""
            UPDATE import_transactions
            SET pushed_number = :number, pushed_at = :pushed_at
            WHERE transaction_id = :tid
        """),
        {"tid": transaction_id, "number": number, "pushed_at": _now_iso()},
    )


def update_replication_status(
    conn: Connection,
    transaction_id: int,
    *,
    remote_id: int,
    number: str,
    entity_id: int | None,
) -> None:
    """Record a replication outcome, separate from the match fields."""
    conn.execute(
        text("""
            UPDATE import_transactions
            SET replicated_remote_id = :remote_id,
                replicated_number = :number,
                replicated_to_entity_id = :entity_id,
                replicated_at = :replicated_at
            WHERE transaction_id = :tid
        """),
        {
            "tid": transaction_id,
            "remote_id": remote_id,
            "number": number,
            "entity_id": entity_id,
            "replicated_at": _now_iso(),
        },
    )


def get_match_stats(conn: Connection, batch_id: int) -> dict[str, int]:
    """Match counts for a batch, split by confidence tier."""
    row = conn.execute(
        text("""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN matched_remote_id IS NOT NULL THEN 1 ELSE 0 END),
                SUM(CASE WHEN match_confidence = 'high' THEN 1 ELSE 0 END),
                SUM(CASE WHEN match_confidence = 'medium' THEN 1 ELSE 0 END),
                SUM(CASE WHEN match_confidence = 'low' THEN 1 ELSE 0 END)
            FROM import_transactions
            WHERE batch_id = :bid
        """),
        {"bid": batch_id},
    ).fetchone()
    values = [int(v or 0) for v in row] if row else [0] * 5
    return {
        "total": values[0],
        "matched": values[1],
        "high_confidence": values[2],
        "medium_confidence": values[3],
        "low_confidence": values[4],
    }


def insert_transactions(
    conn: Connection, batch_id: int, transactions: list[dict[str, Any]]
) -> int:
    """Insert parsed statement lines for a batch (used by fixtures and demos)."""
    for txn in transactions:
        conn.execute(
            text("""
                INSERT INTO import_transactions (
                    batch_id, transaction_date, bank_ref, description,
                    transaction_currency, transaction_amount
                )
                VALUES (:batch_id, :date, :bank_ref, :description, :currency, :amount)
            """),
            {
                "batch_id": batch_id,
                "date": str(txn["transaction_date"]),
                "bank_ref": txn.get("bank_ref"),
                "description": txn.get("description"),
                "currency": txn.get("transaction_currency", "USD"),
                "amount": Decimal(str(txn["transaction_amount"])),
            },
        )
    return len(transactions)
