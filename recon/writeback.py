# recon/writeback.py
"""Write-back executor: push, transfer and replicate imported rows remotely.

Remote numbers are derived from the local transaction id (``IMP-TRA-{id}``,
``IMP-TRF-{id}``), and a transaction that already carries a pushed number is
refused before any remote call.
"""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from recon import mappings, store
from recon.config import MatchSettings
from recon.connectors.ledger_client import ApiError, create_ledger_client
from recon.engine import ClientFactory, can_match
from recon.errors import (
    DuplicatePushError,
    NotEligibleError,
    NotFoundError,
    WriteBackError,
)
from recon.matcher import signed_amount
from recon.models import Eligible, ImportedTransaction, Ineligible, Match

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)

PUSH_PREFIX = "IMP-TRA-"
TRANSFER_PREFIX = "IMP-TRF-"


class PushRequest(BaseModel):
    type: Literal["income", "expense"]
    date: dt.date
    amount: Decimal = Field(gt=0)
    category_id: int = Field(gt=0)
    category_name: str | None = None
    payment_method: str = Field(min_length=1)
    contact_id: int | None = None
    contact_name: str | None = None
    reference: str = ""
    currency_code: str | None = None


class TransferRequest(BaseModel):
    date: dt.date
    amount: Decimal = Field(gt=0)
    to_account_id: int = Field(gt=0)
    from_account_id: int | None = None
    payment_method: str = Field(min_length=1)
    reference: str = ""
    currency_rate: Decimal | None = Field(default=None, gt=0)


class ReplicateRequest(BaseModel):
    installation_id: int
    account_id: int = Field(gt=0)
    type: Literal["income", "expense"]
    date: dt.date
    amount: Decimal = Field(gt=0)
    category_id: int = Field(gt=0)
    category_name: str | None = None
    payment_method: str = Field(min_length=1)
    contact_id: int | None = None
    contact_name: str | None = None
    description: str | None = None
    to_amount: Decimal | None = Field(default=None, gt=0)
    currency_rate: Decimal | None = Field(default=None, gt=0)
    currency_code: str | None = None


def _require_batch(conn: Connection, batch_id: int, user_id: int) -> Eligible:
    eligibility = can_match(conn, batch_id, user_id)
    if isinstance(eligibility, Ineligible):
        if eligibility.reason == "Batch not found":
            raise NotFoundError(eligibility.reason)
        raise NotEligibleError(eligibility.reason)
    return eligibility


def _require_transaction(
    conn: Connection, transaction_id: int, batch_id: int | None = None
) -> ImportedTransaction:
    txn = store.get_transaction(conn, transaction_id)
    if txn is None or (batch_id is not None and txn.batch_id != batch_id):
        msg = "Transaction not found"
        raise NotFoundError(msg)
    return txn


def _refuse_duplicate(txn: ImportedTransaction) -> None:
    if txn.pushed_number:
        msg = (
            f"Transaction {txn.transaction_id} was already pushed "
            f"as {txn.pushed_number}"
        )
        raise DuplicatePushError(msg)


def _remember(conn: Connection, save: Callable[[], Any]) -> None:
    """Run a mapping-cache write; a failure is logged, never raised."""
    try:
        if conn.dialect.name == "postgresql":
            # keep a failed statement from aborting the caller's transaction
            with conn.begin_nested():
                save()
        else:
            save()
    except Exception:
        logger.warning("Failed to save mapping", exc_info=True)


def push_transaction(  # noqa: PLR0913
    conn: Connection,
    batch_id: int,
    transaction_id: int,
    user_id: int,
    request: PushRequest,
    *,
    settings: MatchSettings | None = None,
    client_factory: ClientFactory = create_ledger_client,
) -> dict[str, Any]:
    """Create an income/expense transaction remotely for an unmatched import."""
    settings = settings or MatchSettings()
    eligible = _require_batch(conn, batch_id, user_id)
    txn = _require_transaction(conn, transaction_id, batch_id)
    _refuse_duplicate(txn)

    account = eligible.account
    number = f"{PUSH_PREFIX}{transaction_id}"
    payload: dict[str, Any] = {
        "type": request.type,
        "number": number,
        "account_id": account["remote_account_id"],
        "paid_at": f"{request.date.isoformat()} 00:00:00",
        "amount": float(request.amount),
        "currency_code": request.currency_code
        or txn.transaction_currency
        or account.get("currency")
        or "USD",
        "currency_rate": 1.0,
        "description": txn.description,
        "reference": request.reference,
        "category_id": request.category_id,
        "payment_method": request.payment_method,
    }
    if request.contact_id:
        payload["contact_id"] = request.contact_id
    elif request.contact_name:
        payload["contact_name"] = request.contact_name

    try:
        with client_factory(eligible.installation, settings) as client:
            remote_id = client.create_transaction(payload)
    except ApiError as e:
        msg = f"Failed to push transaction {transaction_id}: {e}"
        raise WriteBackError(msg) from e

    store.update_match(
        conn,
        Match(
            transaction_id=transaction_id,
            remote_id=remote_id,
            remote_number=number,
            remote_date=request.date,
            display_amount=signed_amount(
                request.amount, request.type, account.get("account_type") or "bank"
            ),
            description=txn.description,
            contact=request.contact_name or "",
            category=request.category_name or "",
            confidence="high",
            score=0,
            day_offset=0,
        ),
    )
    store.update_push_status(conn, transaction_id, number)
    logger.info("Pushed transaction %s as remote %s", transaction_id, remote_id)

    if txn.description:
        _remember(
            conn,
            lambda: mappings.save_transaction_mapping(
                conn,
                eligible.installation["installation_id"],
                txn.description,
                transaction_type=request.type,
                contact_id=request.contact_id,
                contact_name=request.contact_name,
                category_id=request.category_id,
                category_name=request.category_name,
                payment_method=request.payment_method,
            ),
        )

    return {
        "remote_id": remote_id,
        "number": number,
        "message": "Transaction created in remote ledger",
    }


def push_transfer(  # noqa: PLR0913
    conn: Connection,
    batch_id: int,
    transaction_id: int,
    user_id: int,
    request: TransferRequest,
    *,
    settings: MatchSettings | None = None,
    client_factory: ClientFactory = create_ledger_client,
) -> dict[str, Any]:
    """Create an account-to-account transfer remotely for an imported row."""
    settings = settings or MatchSettings()
    eligible = _require_batch(conn, batch_id, user_id)
    txn = _require_transaction(conn, transaction_id, batch_id)
    _refuse_duplicate(txn)

    number = f"{TRANSFER_PREFIX}{transaction_id}"
    payload: dict[str, Any] = {
        "from_account_id": request.from_account_id
        or eligible.account["remote_account_id"],
        "to_account_id": request.to_account_id,
        "amount": float(request.amount),
        "transferred_at": request.date.isoformat(),
        "payment_method": request.payment_method,
        "description": txn.description,
        "reference": request.reference,
    }
    if request.currency_rate is not None:
        payload["from_account_rate"] = 1.0
        payload["to_account_rate"] = float(request.currency_rate)

    try:
        with client_factory(eligible.installation, settings) as client:
            remote_id = client.create_transfer(payload)
    except ApiError as e:
        msg = f"Failed to push transfer {transaction_id}: {e}"
        raise WriteBackError(msg) from e

    local_amount = request.amount if txn.transaction_amount >= 0 else -request.amount
    store.update_match(
        conn,
        Match(
            transaction_id=transaction_id,
            remote_id=remote_id,
            remote_number=number,
            remote_date=request.date,
            display_amount=local_amount,
            description=txn.description,
            contact="Transfer",
            category="Transfer",
            confidence="high",
            score=0,
            day_offset=0,
        ),
    )
    store.update_push_status(conn, transaction_id, number)
    logger.info("Pushed transfer %s as remote %s", transaction_id, remote_id)

    if txn.description:
        _remember(
            conn,
            lambda: mappings.save_transaction_mapping(
                conn,
                eligible.installation["installation_id"],
                txn.description,
                transaction_type="transfer",
                payment_method=request.payment_method,
                transfer_to_account_id=request.to_account_id,
            ),
        )

    return {
        "remote_id": remote_id,
        "number": number,
        "message": "Transfer created in remote ledger",
    }


def _source_installation_id(conn: Connection, batch_id: int) -> int | None:
    batch = store.get_batch(conn, batch_id)
    if batch is None:
        return None
    account = store.get_account(conn, batch["account_id"])
    if account is None:
        return None
    active = store.get_active_installations(conn, account["entity_id"])
    return active[0]["installation_id"] if len(active) == 1 else None


def replicate_transaction(
    conn: Connection,
    transaction_id: int,
    user_id: int,
    request: ReplicateRequest,
    *,
    settings: MatchSettings | None = None,
    client_factory: ClientFactory = create_ledger_client,
) -> dict[str, Any]:
    """Copy an imported row into another entity's remote ledger.

    The source row's own match fields are left alone; the outcome is kept in
    its replication fields.
    """
    settings = settings or MatchSettings()
    txn = _require_transaction(conn, transaction_id)
    if store.get_batch_for_user(conn, txn.batch_id, user_id) is None:
        msg = "Transaction not found"
        raise NotFoundError(msg)
    installation = store.get_installation_for_user(
        conn, request.installation_id, user_id
    )
    if installation is None:
        msg = "Installation not found"
        raise NotFoundError(msg)
    if txn.replicated_remote_id is not None:
        msg = (
            f"Transaction {transaction_id} was already replicated "
            f"as {txn.replicated_number}"
        )
        raise DuplicatePushError(msg)

    number = f"{PUSH_PREFIX}{transaction_id}"
    converted = request.currency_rate is not None and request.to_amount is not None
    amount = request.to_amount if converted else request.amount
    payload: dict[str, Any] = {
        "type": request.type,
        "number": number,
        "account_id": request.account_id,
        "paid_at": f"{request.date.isoformat()} 00:00:00",
        "amount": float(amount),
        "currency_code": request.currency_code or txn.transaction_currency,
        "currency_rate": float(request.currency_rate) if request.currency_rate else 1.0,
        "description": request.description or txn.description,
        "category_id": request.category_id,
        "payment_method": request.payment_method,
    }
    if request.contact_id:
        payload["contact_id"] = request.contact_id
    elif request.contact_name:
        payload["contact_name"] = request.contact_name

    try:
        with client_factory(installation, settings) as client:
            remote_id = client.create_transaction(payload)
    except ApiError as e:
        msg = f"Failed to replicate transaction {transaction_id}: {e}"
        raise WriteBackError(msg) from e

    store.update_replication_status(
        conn,
        transaction_id,
        remote_id=remote_id,
        number=number,
        entity_id=installation.get("entity_id"),
    )
    logger.info(
        "Replicated transaction %s to installation %s as remote %s",
        transaction_id,
        installation["installation_id"],
        remote_id,
    )

    source_id = _source_installation_id(conn, txn.batch_id)
    if source_id is not None and txn.description:
        _remember(
            conn,
            lambda: mappings.save_replication_mapping(
                conn,
                source_id,
                installation["installation_id"],
                txn.description,
                transaction_type=request.type,
                contact_id=request.contact_id,
                contact_name=request.contact_name,
                category_id=request.category_id,
                category_name=request.category_name,
                account_id=request.account_id,
                payment_method=request.payment_method,
            ),
        )

    return {
        "remote_id": remote_id,
        "number": number,
        "message": f"Transaction replicated to {installation['name']}",
    }


def suggest_mapping(
    conn: Connection, installation_id: int, user_id: int, description: str
) -> dict[str, Any] | None:
    """Most likely classification for a description, from earlier pushes."""
    if store.get_installation_for_user(conn, installation_id, user_id) is None:
        msg = "Installation not found"
        raise NotFoundError(msg)
    return mappings.find_best_transaction_mapping(conn, installation_id, description)
