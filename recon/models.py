"""Typed records exchanged between the store, the matcher and the ledger client."""

from __future__ import annotations

import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

AccountType = Literal["bank", "credit_card"]
Confidence = Literal["high", "medium", "low"]
JobStatus = Literal["pending", "fetching", "matching", "complete", "error"]


class RemoteTransaction(BaseModel):
    """A ledger transaction pulled from the remote API."""

    id: int
    number: str = ""
    date: dt.date
    amount: Decimal
    type: str
    description: str = ""
    reference: str = ""
    contact: str = ""
    category: str = ""
    currency_code: str = "USD"

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> RemoteTransaction:
        """Build from a raw API row; contact/category arrive as nested objects."""
        contact = raw.get("contact")
        category = raw.get("category")
        return cls(
            id=raw["id"],
            number=raw.get("number") or "",
            date=dt.date.fromisoformat(str(raw["paid_at"])[:10]),
            amount=Decimal(str(raw["amount"])),
            type=raw["type"],
            description=raw.get("description") or "",
            reference=raw.get("reference") or "",
            contact=(contact.get("name") or "") if isinstance(contact, dict) else "",
            category=(category.get("name") or "") if isinstance(category, dict) else "",
            currency_code=raw.get("currency_code") or "USD",
        )


class RemotePage(BaseModel):
    """One page of remote rows; row_count counts rows as returned, before filtering."""

    items: list[RemoteTransaction]
    row_count: int = 0
    current_page: int
    total_pages: int
    total_count: int


class ImportedTransaction(BaseModel):
    """A parsed bank-statement line awaiting reconciliation."""

    transaction_id: int
    batch_id: int
    transaction_date: date
    transaction_currency: str = "USD"
    transaction_amount: Decimal
    description: str = ""
    bank_ref: str = ""
    status: str = "pending"
    matched_remote_id: int | None = None
    matched_remote_number: str | None = None
    matched_remote_date: date | None = None
    matched_remote_amount: Decimal | None = None
    matched_remote_description: str | None = None
    matched_remote_contact: str | None = None
    matched_remote_category: str | None = None
    match_confidence: Confidence | None = None
    pushed_number: str | None = None
    pushed_at: str | None = None
    replicated_remote_id: int | None = None
    replicated_number: str | None = None
    replicated_to_entity_id: int | None = None
    replicated_at: str | None = None


class Match(BaseModel):
    """Outcome of claiming one remote transaction for one imported transaction."""

    transaction_id: int
    remote_id: int
    remote_number: str
    remote_date: date
    display_amount: Decimal
    description: str
    contact: str
    category: str
    confidence: Confidence
    score: int
    day_offset: int


class Eligible(BaseModel):
    eligible: Literal[True] = True
    batch: dict[str, Any] | None = None
    account: dict[str, Any]
    installation: dict[str, Any]


class Ineligible(BaseModel):
    eligible: Literal[False] = False
    reason: str


Eligibility = Eligible | Ineligible


class MatchProgress(BaseModel):
    """Progress payload returned by each match-job step, suitable for polling."""

    status: JobStatus
    message: str
    current_page: int = 0
    total_pages: int | None = None
    fetched_count: int = 0
    matched: int = 0
    total: int = 0
    orphans: int = 0
    truncated: bool = False


class MatchJob(BaseModel):
    job_id: int
    batch_id: int
    user_id: int
    status: JobStatus
    current_page: int = 0
    total_pages: int | None = None
    window_start: date | None = None
    window_end: date | None = None
    remote_transactions: list[RemoteTransaction] = Field(default_factory=list)
    matched_count: int = 0
    total_transactions: int = 0
    truncated: bool = False
    error_message: str | None = None
