"""Multi-pass date/amount/type matcher between imported and remote transactions.

Pure functions only: no database or network access. The engine feeds in the
batch's imported transactions and the accumulated remote rows, then persists
whatever comes back.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from difflib import SequenceMatcher

from pydantic import BaseModel, Field

from recon.models import (
    AccountType,
    Confidence,
    ImportedTransaction,
    Match,
    RemoteTransaction,
)

AMOUNT_TOLERANCE = Decimal("0.02")
BASE_SCORE = 100
REFERENCE_BONUS = 50
SIMILARITY_THRESHOLD = 50


class MatchResult(BaseModel):
    matches: list[Match] = Field(default_factory=list)
    unclaimed: list[RemoteTransaction] = Field(default_factory=list)


def normalize_type(remote_type: str) -> str:
    """Fold transfer variants onto their base type ('expense-transfer' -> 'expense')."""
    if remote_type.endswith("-transfer"):
        return remote_type.removesuffix("-transfer")
    return remote_type


def expected_remote_type(amount: Decimal, account_type: AccountType) -> str:
    # bank: negative is money out; credit card: positive is a charge
    if account_type == "credit_card":
        return "expense" if amount >= 0 else "income"
    return "expense" if amount < 0 else "income"


def signed_amount(magnitude: Decimal, kind: str, account_type: AccountType) -> Decimal:
    """Sign a magnitude the way the account's own statements show it."""
    magnitude = abs(magnitude)
    kind = normalize_type(kind)
    if account_type == "credit_card":
        return -magnitude if kind == "income" else magnitude
    return -magnitude if kind == "expense" else magnitude


def display_amount(remote: RemoteTransaction, account_type: AccountType) -> Decimal:
    return signed_amount(remote.amount, remote.type, account_type)


def confidence_for_offset(day_offset: int) -> Confidence:
    if day_offset == 0:
        return "high"
    if day_offset <= 2:  # noqa: PLR2004
        return "medium"
    return "low"


def description_similarity(a: str, b: str) -> float:
    """Percentage similarity (0-100) of two descriptions, case-insensitive."""
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a.lower(), b.lower()).ratio() * 100


def find_match_at_offset(
    imported: ImportedTransaction,
    pool: list[RemoteTransaction],
    day_offset: int,
    account_type: AccountType,
) -> Match | None:
    """Best candidate in ``pool`` dated exactly ``day_offset`` days away.

    Only a strictly higher score replaces the current best, so equal scores
    keep the earliest candidate in fetch order.
    """
    expected = expected_remote_type(imported.transaction_amount, account_type)
    target = abs(imported.transaction_amount)
    bank_ref = imported.bank_ref.lower()

    best: Match | None = None
    best_score = 0
    for remote in pool:
        if abs(abs(remote.amount) - target) >= AMOUNT_TOLERANCE:
            continue
        if normalize_type(remote.type) != expected:
            continue
        if abs((imported.transaction_date - remote.date).days) != day_offset:
            continue

        score = BASE_SCORE
        confidence = confidence_for_offset(day_offset)
        similarity = description_similarity(imported.description, remote.description)
        if similarity > SIMILARITY_THRESHOLD:
            score += int(similarity)
        if bank_ref and remote.reference and bank_ref in remote.reference.lower():
            score += REFERENCE_BONUS
            confidence = "high"

        if score > best_score:
            best_score = score
            best = Match(
                transaction_id=imported.transaction_id,
                remote_id=remote.id,
                remote_number=remote.number,
                remote_date=remote.date,
                display_amount=display_amount(remote, account_type),
                description=remote.description,
                contact=remote.contact,
                category=remote.category,
                confidence=confidence,
                score=score,
                day_offset=day_offset,
            )
    return best


def match_transactions(
    imported: list[ImportedTransaction],
    remote: list[RemoteTransaction],
    account_type: AccountType,
    window_days: int,
) -> MatchResult:
    """Claim remote rows for imported rows, tightest date offset first.

    Every imported transaction is tried at offset 0 before any is tried at
    offset 1, and so on up to ``window_days``. A claimed remote row leaves the
    pool immediately; a claimed imported row is skipped in later passes.
    """
    pool = list(remote)
    ordered = sorted(imported, key=lambda t: t.transaction_id)
    claimed: set[int] = set()
    result = MatchResult()

    for offset in range(window_days + 1):
        for txn in ordered:
            if txn.transaction_id in claimed or not pool:
                continue
            match = find_match_at_offset(txn, pool, offset, account_type)
            if match is None:
                continue
            claimed.add(txn.transaction_id)
            pool = [r for r in pool if r.id != match.remote_id]
            result.matches.append(match)

    result.unclaimed = pool
    return result


def select_orphans(
    unclaimed: list[RemoteTransaction], min_date: date, max_date: date
) -> list[RemoteTransaction]:
    """Unclaimed rows inside the imported date range; padding-only rows drop out."""
    return [r for r in unclaimed if min_date <= r.date <= max_date]


def fetch_window(dates: list[date], window_days: int) -> tuple[date, date]:
    """Remote fetch window: imported range padded by the match window both ways."""
    pad = timedelta(days=window_days)
    return min(dates) - pad, max(dates) + pad
