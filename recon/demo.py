"""Demo data loader and in-process remote ledger for offline demonstrations."""

from __future__ import annotations

import json
import os
import re
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy import text

from recon.config import MatchSettings
from recon.connectors.ledger_client import LedgerClient, LedgerCredentials
from recon.db import create_db_engine, create_schema
from recon.store import insert_transactions

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine

DEMO_USER_ID = 1
DEMO_BATCH_ID = 1
DEMO_ACCOUNT_ID = 1
DEMO_REMOTE_ACCOUNT_ID = 7

DEMO_IMPORTED: list[dict[str, Any]] = [
    {"transaction_date": "2024-03-04", "transaction_amount": "-45.00",
     "description": "AMAZON MKTPLACE PMTS"},
    {"transaction_date": "2024-03-05", "transaction_amount": "2500.00",
     "description": "PAYROLL ACME CORP", "bank_ref": "PR0305"},
    {"transaction_date": "2024-03-07", "transaction_amount": "-12.50",
     "description": "SQ *BLUE BOTTLE COFFEE"},
    {"transaction_date": "2024-03-10", "transaction_amount": "-89.99",
     "description": "PAYPAL *SPOTIFY"},
    {"transaction_date": "2024-03-12", "transaction_amount": "-200.00",
     "description": "TRANSFER TO SAVINGS"},
    {"transaction_date": "2024-03-15", "transaction_amount": "-60.00",
     "description": "SHELL OIL 5542"},
]

DEMO_REMOTE: list[dict[str, Any]] = [
    {"id": 101, "number": "EXP-101", "paid_at": "2024-03-04 00:00:00",
     "amount": 45.00, "type": "expense", "description": "Amazon Marketplace",
     "category": {"name": "Supplies"}},
    {"id": 102, "number": "INC-102", "paid_at": "2024-03-05 00:00:00",
     "amount": 2500.00, "type": "income", "description": "Payroll Acme",
     "reference": "PR0305-ACH", "contact": {"name": "Acme Corp"},
     "category": {"name": "Salary"}},
    {"id": 103, "number": "EXP-103", "paid_at": "2024-03-08 00:00:00",
     "amount": 12.50, "type": "expense", "description": "Blue Bottle Coffee",
     "category": {"name": "Meals"}},
    {"id": 104, "number": "EXP-104", "paid_at": "2024-03-10 00:00:00",
     "amount": 89.99, "type": "expense", "description": "Spotify",
     "category": {"name": "Subscriptions"}},
    {"id": 105, "number": "TRF-105", "paid_at": "2024-03-12 00:00:00",
     "amount": 200.00, "type": "expense-transfer",
     "description": "Transfer to savings"},
    {"id": 106, "number": "EXP-106", "paid_at": "2024-03-11 00:00:00",
     "amount": 310.00, "type": "expense", "description": "Office rent",
     "category": {"name": "Rent"}},
]

_SEARCH_RE = re.compile(
    r"account_id:(?P<account>\d+) paid_at>=(?P<start>\S+) paid_at<=(?P<end>\S+)"
)


def demo_settings() -> MatchSettings:
    """Small pages so the demo walks through several fetch steps."""
    return MatchSettings(api_page_size=2)


def _handle(request: httpx.Request, rows: list[dict[str, Any]]) -> httpx.Response:
    if request.method == "POST":
        created = json.loads(request.content or b"{}")
        new_id = 900 + len(rows)
        rows.append({"id": new_id, **created})
        return httpx.Response(201, json={"data": {"id": new_id}})

    params = request.url.params
    match = _SEARCH_RE.search(params.get("search", ""))
    if match is None:
        return httpx.Response(422, json={"message": "Invalid search expression"})
    start = date.fromisoformat(match["start"])
    end = date.fromisoformat(match["end"])
    in_window = [
        r for r in rows
        if "paid_at" in r and start <= date.fromisoformat(r["paid_at"][:10]) <= end
    ]
    limit = int(params.get("limit", "50"))
    page = int(params.get("page", "1"))
    last_page = max(1, -(-len(in_window) // limit))
    chunk = in_window[(page - 1) * limit : page * limit]
    return httpx.Response(
        200,
        json={
            "data": chunk,
            "meta": {"current_page": page, "last_page": last_page,
                     "total": len(in_window)},
        },
    )


def demo_transport() -> httpx.MockTransport:
    """Serve DEMO_REMOTE through the ledger's list/create endpoints."""
    rows = [dict(r) for r in DEMO_REMOTE]
    return httpx.MockTransport(lambda request: _handle(request, rows))


def demo_client_factory(
    installation: dict[str, Any], settings: MatchSettings
) -> LedgerClient:
    credentials = LedgerCredentials(
        base_url=installation["base_url"],
        email=installation["api_email"],
        password=installation["api_password"],
        company_id=installation.get("company_id") or 1,
    )
    return LedgerClient(
        credentials, timeout=settings.api_timeout, transport=demo_transport()
    )


def create_demo_engine() -> Engine:
    """Create an in-memory SQLite engine with the schema applied."""
    os.environ["TZ"] = "UTC"
    engine = create_db_engine("sqlite://")
    with engine.begin() as conn:
        create_schema(conn)
    return engine


def load_demo_fixtures(conn: Connection) -> None:
    """Load one linked bank account with a completed March 2024 batch."""
    conn.execute(
        text("INSERT INTO entities (entity_id, entity_name) VALUES (1, 'Demo Co')")
    )
    conn.execute(
        text("""
            INSERT INTO installations (
                installation_id, user_id, entity_id, name, base_url,
                api_email, api_password, company_id, is_active
            )
            VALUES (1, :uid, 1, 'Demo Ledger', 'https://ledger.demo.invalid',
                    'demo@example.com', 'demo', 1, :active)
        """),
        {"uid": DEMO_USER_ID, "active": True},
    )
    conn.execute(
        text("""
            INSERT INTO accounts (
                account_id, entity_id, account_name, account_type, currency,
                remote_account_id, remote_account_name
            )
            VALUES (:aid, 1, 'Demo Checking', 'bank', 'USD', :rid, 'Checking')
        """),
        {"aid": DEMO_ACCOUNT_ID, "rid": DEMO_REMOTE_ACCOUNT_ID},
    )
    conn.execute(
        text("""
            INSERT INTO import_batches (batch_id, account_id, user_id, batch_name, status)
            VALUES (:bid, :aid, :uid, 'March 2024 statement', 'completed')
        """),
        {"bid": DEMO_BATCH_ID, "aid": DEMO_ACCOUNT_ID, "uid": DEMO_USER_ID},
    )
    insert_transactions(
        conn,
        DEMO_BATCH_ID,
        [{**t, "transaction_amount": Decimal(t["transaction_amount"])}
         for t in DEMO_IMPORTED],
    )
